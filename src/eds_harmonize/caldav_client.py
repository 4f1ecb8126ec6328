"""
CalDAV remote store adapter.

Collections are addressed by calendar URL and objects by resource URL. The
change feed uses RFC 6578 sync tokens; a resource whose data comes back empty
from a sync report has been deleted.
"""

import hashlib
import logging
from datetime import date
from datetime import datetime
from datetime import timezone

import caldav
from caldav.elements import dav
from caldav.lib import error
from icalendar import Calendar

from eds_harmonize.models import ChangeSet
from eds_harmonize.models import Collection
from eds_harmonize.models import EventObject
from eds_harmonize.models import TransportError
from eds_harmonize.sync.utils import EPOCH
from eds_harmonize.sync.utils import attachment_id
from eds_harmonize.sync.utils import split_attachment_id
from eds_harmonize.sync.utils import wrap_vcalendar

logger = logging.getLogger(__name__)

# requests / niquests connection failures derive from OSError.
_TRANSPORT_ERRORS = (error.DAVError, OSError)


def _as_list(value) -> list:
    if value is None:
        return []
    return list(value) if isinstance(value, list) else [value]


def _to_datetime(value) -> datetime | None:
    dt = getattr(value, "dt", None)
    if isinstance(dt, datetime):
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    if isinstance(dt, date):
        return datetime(dt.year, dt.month, dt.day, tzinfo=timezone.utc)
    return None


def _attachment_value(attach) -> str:
    raw = attach.to_ical() if hasattr(attach, "to_ical") else str(attach)
    return raw.decode("utf-8") if isinstance(raw, bytes) else raw


def parse_calendar(data: str) -> Calendar:
    """Parse VCALENDAR text, wrapping a bare VEVENT first.

    icalendar rejects malformed content lines with ValueError; that surfaces
    as a TransportError so only the object carrying the data is skipped.
    """
    try:
        cal = Calendar.from_ical(data)
        if cal.name != "VCALENDAR":
            cal = Calendar.from_ical(wrap_vcalendar([data]))
    except ValueError as e:
        raise TransportError(f"Unparseable iCalendar data: {e}") from e
    return cal


def _master(cal: Calendar):
    events = list(cal.walk("VEVENT"))
    if not events:
        return None
    return next((e for e in events if "RECURRENCE-ID" not in e), events[0])


def event_from_ical(collection_id: str, object_id: str, data: str, etag: str | None) -> EventObject:
    """Build a snapshot from a CalDAV resource body and its ETag."""
    cal = parse_calendar(data)
    master = _master(cal)
    uid = None
    modified = None
    attachments: tuple[str, ...] = ()
    if master is not None:
        uid = str(master.get("UID")) if master.get("UID") else None
        modified = _to_datetime(master.get("LAST-MODIFIED")) or _to_datetime(
            master.get("DTSTAMP")
        )
        attachments = tuple(
            attachment_id(object_id, _attachment_value(a))
            for a in _as_list(master.get("ATTACH"))
        )
    return EventObject(
        id=object_id,
        collection_id=collection_id,
        uuid=uid,
        fingerprint=etag or hashlib.sha256(data.encode("utf-8")).hexdigest(),
        modified_on=modified or EPOCH,
        attachments=attachments,
        data=data,
    )


def prepare_payload(data: str, uid: str | None = None) -> str:
    """Normalize outgoing data to a VCALENDAR, forcing the UID when given."""
    cal = parse_calendar(data)
    if uid:
        for comp in cal.walk("VEVENT"):
            if "UID" in comp:
                del comp["UID"]
            comp.add("UID", uid)
    return cal.to_ical().decode("utf-8")


def strip_attachments(data: str, object_id: str, att_ids: set[str]) -> str:
    """Remove the ATTACH properties whose ids are listed."""
    cal = parse_calendar(data)
    for comp in cal.walk("VEVENT"):
        attaches = _as_list(comp.get("ATTACH"))
        if not attaches:
            continue
        keep = [a for a in attaches if attachment_id(object_id, _attachment_value(a)) not in att_ids]
        del comp["ATTACH"]
        for a in keep:
            comp.add("ATTACH", a, encode=False)
    return cal.to_ical().decode("utf-8")


def _parent_url(object_id: str) -> str:
    return object_id.rstrip("/").rsplit("/", 1)[0] + "/"


class CalDAVRemoteStore:
    """Remote store adapter over a CalDAV server."""

    def __init__(self, client: caldav.DAVClient):
        self.client = client
        self._calendars: dict[str, caldav.Calendar] = {}

    @classmethod
    def connect(cls, url: str, username: str = "", password: str = "") -> "CalDAVRemoteStore":
        client = caldav.DAVClient(url=url, username=username or None, password=password or None)
        return cls(client)

    def _calendar(self, collection_id: str) -> caldav.Calendar:
        calendar = self._calendars.get(collection_id)
        if calendar is None:
            calendar = self.client.calendar(url=collection_id)
            self._calendars[collection_id] = calendar
        return calendar

    def _load(self, collection_id: str, object_id: str):
        """Fetch the raw caldav resource, or None when it is gone."""
        try:
            event = self._calendar(collection_id).event_by_url(object_id)
            if event.data is None:
                event.load()
        except error.NotFoundError:
            return None
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"Failed to fetch {object_id}: {e}") from e
        return event

    def _snapshot(self, collection_id: str, event) -> EventObject:
        etag = event.props.get(dav.GetEtag.tag)
        return event_from_ical(collection_id, str(event.url), event.data, etag)

    def _save(self, event, object_id: str):
        try:
            event.save()
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"Failed to save {object_id}: {e}") from e

    def _read_back(self, collection_id: str, object_id: str) -> EventObject:
        saved = self.fetch_item(collection_id, object_id)
        if saved is None:
            raise TransportError(f"Saved object {object_id} could not be read back")
        return saved

    def fetch_collection(self, collection_id: str) -> Collection | None:
        try:
            name = self._calendar(collection_id).get_display_name()
        except error.NotFoundError:
            return None
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"Failed to resolve calendar {collection_id}: {e}") from e
        return Collection(id=collection_id, name=name or "")

    def fetch_changes(self, collection_id: str, token: str) -> ChangeSet:
        calendar = self._calendar(collection_id)
        try:
            objects = calendar.objects_by_sync_token(sync_token=token or None, load_objects=True)
        except _TRANSPORT_ERRORS as e:
            if not token:
                raise TransportError(f"Failed to enumerate {collection_id}: {e}") from e
            logger.warning(f"Sync token for {collection_id} rejected ({e}); enumerating fully")
            token = ""
            try:
                objects = calendar.objects_by_sync_token(sync_token=None, load_objects=True)
            except _TRANSPORT_ERRORS as e2:
                raise TransportError(f"Failed to enumerate {collection_id}: {e2}") from e2

        changes = ChangeSet(next_token=str(objects.sync_token or ""))
        for obj in objects:
            object_id = str(obj.url)
            if obj.data is None:
                changes.deleted.append(object_id)
            elif "BEGIN:VEVENT" not in obj.data:
                continue
            elif token:
                changes.modified.append(object_id)
            else:
                changes.added.append(object_id)
        return changes

    def fetch_item(self, collection_id: str, object_id: str) -> EventObject | None:
        event = self._load(collection_id, object_id)
        if event is None:
            return None
        return self._snapshot(collection_id, event)

    def fetch_collection_uuid_index(self, collection_id: str) -> list[tuple[str, str]]:
        try:
            events = self._calendar(collection_id).events()
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"Failed to list {collection_id}: {e}") from e
        index = []
        for event in events:
            if not event.data:
                continue
            try:
                master = _master(parse_calendar(event.data))
            except TransportError as e:
                logger.warning(f"Skipping {event.url} in UID index: {e}")
                continue
            if master is not None and master.get("UID"):
                index.append((str(event.url), str(master.get("UID"))))
        return index

    def create_item(self, collection_id: str, obj: EventObject) -> EventObject:
        payload = prepare_payload(obj.data, obj.uuid)
        try:
            event = self._calendar(collection_id).save_event(payload)
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"Failed to create object from {obj.id}: {e}") from e
        return self._read_back(collection_id, str(event.url))

    def update_item(self, collection_id: str, object_id: str, obj: EventObject) -> EventObject:
        event = self._load(collection_id, object_id)
        if event is None:
            raise TransportError(f"Cannot update {object_id}: object is gone")
        existing = _master(parse_calendar(event.data))
        uid = str(existing.get("UID")) if existing is not None and existing.get("UID") else obj.uuid
        event.data = prepare_payload(obj.data, uid)
        self._save(event, object_id)
        return self._read_back(collection_id, object_id)

    def update_item_uuid(self, collection_id: str, object_id: str, object_uuid: str) -> EventObject:
        event = self._load(collection_id, object_id)
        if event is None:
            raise TransportError(f"Cannot set UID on {object_id}: object is gone")
        event.data = prepare_payload(event.data, object_uuid)
        self._save(event, object_id)
        return self._read_back(collection_id, object_id)

    def delete_item(self, collection_id: str, object_id: str) -> bool:
        event = self._load(collection_id, object_id)
        if event is None:
            return False
        try:
            event.delete()
        except error.NotFoundError:
            return False
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"Failed to delete {object_id}: {e}") from e
        return True

    def delete_item_attachments(self, attachment_ids: list[str]):
        by_object: dict[str, set[str]] = {}
        for att_id in attachment_ids:
            object_id, _ = split_attachment_id(att_id)
            by_object.setdefault(object_id, set()).add(att_id)

        for object_id, att_ids in by_object.items():
            event = self._load(_parent_url(object_id), object_id)
            if event is None:
                continue
            event.data = strip_attachments(event.data, object_id, att_ids)
            self._save(event, object_id)

    def list_calendars(self) -> list[tuple[str, str]]:
        """Return (display name, url) for every calendar of the principal."""
        try:
            calendars = self.client.principal().calendars()
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"Failed to list calendars: {e}") from e
        return [(calendar.name or "(unnamed)", str(calendar.url)) for calendar in calendars]
