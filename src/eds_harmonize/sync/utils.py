"""
Stateless iCalendar text helpers shared by the store adapters.
"""

import hashlib
import re
from datetime import datetime
from datetime import timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

PRODID = "-//eds-harmonize//EN"

# Matches LAST-MODIFIED / DTSTAMP values in basic UTC or floating form
# (LAST-MODIFIED:20260301T100000Z). Only the first VEVENT's value is used.
_LAST_MODIFIED_RE = re.compile(r"^LAST-MODIFIED[^:\n]*:(\d{8}T\d{6})Z?", re.MULTILINE)
_DTSTAMP_RE = re.compile(r"^DTSTAMP[^:\n]*:(\d{8}T\d{6})Z?", re.MULTILINE)

# ATTACH lines carry either a URI or inline base64 data after the colon.
_ATTACH_RE = re.compile(r"^ATTACH[^:\n]*:(.*)$", re.MULTILINE)

# TZID parameters referenced from DTSTART/DTEND/EXDATE/RECURRENCE-ID.
_TZID_RE = re.compile(r";TZID=\"?([^\":;]+)\"?[;:]")


def unfold(ical: str) -> str:
    """Undo RFC 5545 line folding so each property sits on one line."""
    return re.sub(r"\r?\n[ \t]", "", ical).replace("\r\n", "\n")


def parse_ical_datetime(value: str) -> datetime:
    """Parse a basic-format iCalendar DATE-TIME; floating times are taken as UTC."""
    return datetime.strptime(value, "%Y%m%dT%H%M%S").replace(tzinfo=timezone.utc)


def modified_on(ical: str) -> datetime:
    """Return the object's LAST-MODIFIED, falling back to DTSTAMP, then the epoch."""
    text = unfold(ical)
    for pattern in (_LAST_MODIFIED_RE, _DTSTAMP_RE):
        m = pattern.search(text)
        if m:
            try:
                return parse_ical_datetime(m.group(1))
            except ValueError:
                continue
    return EPOCH


def attachment_id(object_id: str, value: str) -> str:
    """Stable id for one attachment of one object."""
    digest = hashlib.sha1(value.strip().encode("utf-8")).hexdigest()[:16]
    return f"{object_id}#{digest}"


def split_attachment_id(att_id: str) -> tuple[str, str]:
    """Inverse of attachment_id: (object id, digest)."""
    object_id, _, digest = att_id.rpartition("#")
    return object_id, digest


def attachment_ids(object_id: str, ical: str) -> tuple[str, ...]:
    """Ids of every ATTACH property in the object, in document order."""
    return tuple(attachment_id(object_id, m.group(1)) for m in _ATTACH_RE.finditer(unfold(ical)))


def referenced_tzids(ical: str) -> set[str]:
    return set(_TZID_RE.findall(unfold(ical)))


def combine_fingerprints(component_hashes: list[str]) -> str:
    """Fold the hashes of an object's components into one order-independent fingerprint."""
    joined = "\n".join(sorted(component_hashes))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def wrap_vcalendar(components: list[str], timezones: list[str] | None = None) -> str:
    """Wrap bare VEVENT (and VTIMEZONE) blocks into a VCALENDAR document."""
    parts = ["BEGIN:VCALENDAR\r\n", "VERSION:2.0\r\n", f"PRODID:{PRODID}\r\n"]
    for block in list(timezones or []) + list(components):
        block = block.strip("\r\n").replace("\r\n", "\n").replace("\n", "\r\n")
        parts.append(block + "\r\n")
    parts.append("END:VCALENDAR\r\n")
    return "".join(parts)
