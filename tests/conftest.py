"""
Shared pytest fixtures and iCal helpers.
"""

from datetime import timedelta

import pytest

from eds_harmonize.db import CorrelationStore
from eds_harmonize.models import CollectionCorrelation
from eds_harmonize.models import Prevalence
from eds_harmonize.sync.engine import HarmonizationEngine
from tests.fake_client import T0
from tests.fake_client import FakeLocalStore
from tests.fake_client import FakeRemoteStore

USER_ID = "alice"
LOCAL_CAL_ID = "local-calendar-test"
REMOTE_CAL_ID = "https://dav.example.com/calendars/alice/work/"


def make_vevent(uid: str, summary: str = "Test Event", last_modified: str | None = None) -> str:
    """Return a minimal, valid VEVENT iCal string (no VCALENDAR wrapper)."""
    lines = [
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"SUMMARY:{summary}",
        "DTSTART:20260301T100000Z",
        "DTEND:20260301T110000Z",
        "DTSTAMP:20260224T000000Z",
    ]
    if last_modified:
        lines.append(f"LAST-MODIFIED:{last_modified}")
    lines.append("END:VEVENT")
    return "\r\n".join(lines) + "\r\n"


def make_vcalendar(*vevents: str) -> str:
    """Wrap VEVENT strings into a VCALENDAR document."""
    body = "".join(vevents)
    return f"BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//test//EN\r\n{body}END:VCALENDAR\r\n"


def at(minutes: int):
    """A modification time `minutes` after the fakes' base time."""
    return T0 + timedelta(minutes=minutes)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def store(db_path):
    with CorrelationStore(db_path) as s:
        yield s


@pytest.fixture
def pairing(store):
    return store.create_collection(
        CollectionCorrelation(
            user_id=USER_ID,
            local_collection_id=LOCAL_CAL_ID,
            remote_collection_id=REMOTE_CAL_ID,
        )
    )


@pytest.fixture
def local():
    return FakeLocalStore(LOCAL_CAL_ID)


@pytest.fixture
def remote():
    return FakeRemoteStore(REMOTE_CAL_ID)


@pytest.fixture
def engine(local, remote, store):
    return HarmonizationEngine(local, remote, store, Prevalence.CHRONOLOGY)
