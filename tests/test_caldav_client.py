"""
Unit tests for the CalDAV adapter's payload helpers and change-feed mapping.

The caldav calendar object is replaced by a small stand-in so no server is
needed.
"""

from datetime import datetime
from datetime import timezone

import pytest
from caldav.lib import error

from eds_harmonize.caldav_client import CalDAVRemoteStore
from eds_harmonize.caldav_client import event_from_ical
from eds_harmonize.caldav_client import prepare_payload
from eds_harmonize.caldav_client import strip_attachments
from eds_harmonize.models import TransportError
from eds_harmonize.sync.utils import EPOCH
from eds_harmonize.sync.utils import attachment_id
from tests.conftest import REMOTE_CAL_ID
from tests.conftest import make_vcalendar
from tests.conftest import make_vevent

OBJ = f"{REMOTE_CAL_ID}event.ics"


def _with_attachments(uid: str, *urls: str) -> str:
    vevent = make_vevent(uid).replace(
        "END:VEVENT", "".join(f"ATTACH:{u}\r\n" for u in urls) + "END:VEVENT"
    )
    return make_vcalendar(vevent)


class TestEventFromIcal:
    def test_basic_fields(self):
        data = make_vcalendar(make_vevent("U1", last_modified="20260305T120000Z"))

        obj = event_from_ical(REMOTE_CAL_ID, OBJ, data, '"etag-1"')

        assert obj.id == OBJ
        assert obj.collection_id == REMOTE_CAL_ID
        assert obj.uuid == "U1"
        assert obj.fingerprint == '"etag-1"'
        assert obj.modified_on == datetime(2026, 3, 5, 12, 0, tzinfo=timezone.utc)
        assert obj.data == data

    def test_content_hash_without_etag(self):
        data = make_vcalendar(make_vevent("U1"))
        a = event_from_ical(REMOTE_CAL_ID, OBJ, data, None)
        b = event_from_ical(REMOTE_CAL_ID, OBJ, data.replace("Test Event", "Other"), None)
        assert a.fingerprint and a.fingerprint != b.fingerprint

    def test_attachments(self):
        data = _with_attachments("U1", "https://f.example.com/a.pdf", "https://f.example.com/b.pdf")
        obj = event_from_ical(REMOTE_CAL_ID, OBJ, data, None)
        assert obj.attachments == (
            attachment_id(OBJ, "https://f.example.com/a.pdf"),
            attachment_id(OBJ, "https://f.example.com/b.pdf"),
        )

    def test_bare_vevent_is_accepted(self):
        obj = event_from_ical(REMOTE_CAL_ID, OBJ, make_vevent("U2"), None)
        assert obj.uuid == "U2"

    def test_no_vevent(self):
        data = make_vcalendar("BEGIN:VTODO\r\nUID:T1\r\nEND:VTODO\r\n")
        obj = event_from_ical(REMOTE_CAL_ID, OBJ, data, None)
        assert obj.uuid is None
        assert obj.modified_on == EPOCH

    def test_unparseable_data_raises_transport_error(self):
        with pytest.raises(TransportError):
            event_from_ical(
                REMOTE_CAL_ID, OBJ, "BEGIN:VCALENDAR\r\nGARBAGE LINE\r\nEND:VCALENDAR\r\n", None
            )


class TestPayloads:
    def test_uid_is_forced(self):
        out = prepare_payload(make_vcalendar(make_vevent("old-uid")), "new-uid")
        assert "UID:new-uid" in out
        assert "old-uid" not in out

    def test_uid_kept_without_override(self):
        out = prepare_payload(make_vevent("keep-me"))
        assert out.startswith("BEGIN:VCALENDAR")
        assert "UID:keep-me" in out

    def test_strip_selected_attachments(self):
        data = _with_attachments("U1", "https://f.example.com/a.pdf", "https://f.example.com/b.pdf")
        out = strip_attachments(data, OBJ, {attachment_id(OBJ, "https://f.example.com/a.pdf")})
        assert "a.pdf" not in out
        assert "b.pdf" in out


# ---------------------------------------------------------------------------
# Change feed
# ---------------------------------------------------------------------------


class _Resource:
    def __init__(self, url: str, data: str | None):
        self.url = url
        self.data = data


class _SyncResult(list):
    def __init__(self, items, sync_token):
        super().__init__(items)
        self.sync_token = sync_token


class _Rejected(error.DAVError):
    pass


class _Calendar:
    def __init__(self, items, reject_tokens=False):
        self.items = items
        self.reject_tokens = reject_tokens
        self.requested: list[str | None] = []

    def objects_by_sync_token(self, sync_token=None, load_objects=False):
        self.requested.append(sync_token)
        if sync_token and self.reject_tokens:
            raise _Rejected()
        return _SyncResult(self.items, "token-2")


def _remote(calendar) -> CalDAVRemoteStore:
    store = CalDAVRemoteStore(client=None)
    store._calendars[REMOTE_CAL_ID] = calendar
    return store


class TestFetchChanges:
    def test_first_enumeration_reports_additions(self):
        calendar = _Calendar([_Resource(OBJ, make_vcalendar(make_vevent("U1")))])

        changes = _remote(calendar).fetch_changes(REMOTE_CAL_ID, "")

        assert changes.added == [OBJ]
        assert changes.modified == changes.deleted == []
        assert changes.next_token == "token-2"
        assert calendar.requested == [None]

    def test_incremental_changes_and_deletions(self):
        gone = f"{REMOTE_CAL_ID}gone.ics"
        calendar = _Calendar(
            [_Resource(OBJ, make_vcalendar(make_vevent("U1"))), _Resource(gone, None)]
        )

        changes = _remote(calendar).fetch_changes(REMOTE_CAL_ID, "token-1")

        assert changes.modified == [OBJ]
        assert changes.deleted == [gone]

    def test_non_event_resources_are_skipped(self):
        todo = make_vcalendar("BEGIN:VTODO\r\nUID:T1\r\nEND:VTODO\r\n")
        calendar = _Calendar([_Resource(OBJ, todo)])

        assert _remote(calendar).fetch_changes(REMOTE_CAL_ID, "").added == []

    def test_rejected_token_falls_back_to_full_enumeration(self):
        calendar = _Calendar(
            [_Resource(OBJ, make_vcalendar(make_vevent("U1")))], reject_tokens=True
        )

        changes = _remote(calendar).fetch_changes(REMOTE_CAL_ID, "stale")

        assert calendar.requested == ["stale", None]
        assert changes.added == [OBJ]

    def test_failed_full_enumeration_raises(self):
        class _Down(_Calendar):
            def objects_by_sync_token(self, sync_token=None, load_objects=False):
                raise ConnectionError("server down")

        with pytest.raises(TransportError):
            _remote(_Down([])).fetch_changes(REMOTE_CAL_ID, "")


class TestUUIDIndex:
    def test_unparseable_resources_are_skipped(self):
        class _Listing:
            def events(self):
                return [
                    _Resource(OBJ, make_vcalendar(make_vevent("U1"))),
                    _Resource(
                        f"{REMOTE_CAL_ID}bad.ics",
                        "BEGIN:VCALENDAR\r\nGARBAGE LINE\r\nEND:VCALENDAR\r\n",
                    ),
                    _Resource(f"{REMOTE_CAL_ID}empty.ics", None),
                ]

        assert _remote(_Listing()).fetch_collection_uuid_index(REMOTE_CAL_ID) == [(OBJ, "U1")]
