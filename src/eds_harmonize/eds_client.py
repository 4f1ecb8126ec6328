"""
Evolution Data Server calendar connectivity wrapper and local store adapter.
"""

import hashlib
import logging
import uuid

import gi

gi.require_version("EDataServer", "1.2")
gi.require_version("ECal", "2.0")
gi.require_version("ICalGLib", "3.0")
from gi.repository import ECal
from gi.repository import EDataServer
from gi.repository import GLib
from gi.repository import ICalGLib

from eds_harmonize.db import ChangeJournal
from eds_harmonize.models import ChangeSet
from eds_harmonize.models import Collection
from eds_harmonize.models import EventObject
from eds_harmonize.models import TransportError
from eds_harmonize.sync.utils import attachment_ids
from eds_harmonize.sync.utils import combine_fingerprints
from eds_harmonize.sync.utils import modified_on
from eds_harmonize.sync.utils import referenced_tzids
from eds_harmonize.sync.utils import wrap_vcalendar

logger = logging.getLogger(__name__)

# E_CAL_CLIENT_ERROR_OBJECT_NOT_FOUND = 1  (from e-cal-client-error-quark)
_EDS_NOT_FOUND_CODE = 1
_EDS_CLIENT_ERROR_DOMAIN = "e-cal-client-error-quark"


def is_not_found_error(e: Exception) -> bool:
    """Return True when EDS reports that a calendar object does not exist."""
    if isinstance(e, GLib.Error):
        domain = e.domain or ""
        if e.code == _EDS_NOT_FOUND_CODE and _EDS_CLIENT_ERROR_DOMAIN in domain:
            return True
    return "object not found" in str(e).lower()


def _parse_ical(data: str) -> ICalGLib.Component:
    """Parse iCalendar text; libical reports garbage as None or GLib.Error."""
    try:
        comp = ICalGLib.Component.new_from_string(data)
    except GLib.Error as e:
        raise TransportError(f"Unparseable iCalendar data: {e.message}") from e
    if comp is None:
        raise TransportError("Unparseable iCalendar data")
    return comp


def compute_hash(ical_string: str) -> str:
    """
    Generate SHA256 hash of iCal content for change detection.

    Normalizes the content by removing volatile server-added properties
    to prevent false change detection.
    """
    comp = _parse_ical(ical_string)

    # Properties that servers often add/modify and should be ignored for change detection
    volatile_props = [
        ICalGLib.PropertyKind.DTSTAMP_PROPERTY,
        ICalGLib.PropertyKind.LASTMODIFIED_PROPERTY,
        ICalGLib.PropertyKind.CREATED_PROPERTY,
        ICalGLib.PropertyKind.SEQUENCE_PROPERTY,
    ]
    for prop_kind in volatile_props:
        prop = comp.get_first_property(prop_kind)
        while prop:
            comp.remove_property(prop)
            prop = comp.get_first_property(prop_kind)

    return hashlib.sha256(comp.as_ical_string().encode("utf-8")).hexdigest()


def parse_component(obj) -> ICalGLib.Component:
    """Handle both string and native Component objects from EDS API."""
    if isinstance(obj, str):
        return _parse_ical(obj)
    return obj


def _is_detached_instance(comp: ICalGLib.Component) -> bool:
    return comp.get_first_property(ICalGLib.PropertyKind.RECURRENCEID_PROPERTY) is not None


def _split_calendar(data: str) -> tuple[list[ICalGLib.Component], list[ICalGLib.Component]]:
    """Return (VEVENTs, VTIMEZONEs) from VCALENDAR or bare VEVENT text."""
    comp = _parse_ical(data)
    if comp.isa() != ICalGLib.ComponentKind.VCALENDAR_COMPONENT:
        return [comp], []

    events = []
    child = comp.get_first_component(ICalGLib.ComponentKind.VEVENT_COMPONENT)
    while child:
        events.append(child.clone())
        child = comp.get_next_component(ICalGLib.ComponentKind.VEVENT_COMPONENT)
    zones = []
    child = comp.get_first_component(ICalGLib.ComponentKind.VTIMEZONE_COMPONENT)
    while child:
        zones.append(child.clone())
        child = comp.get_next_component(ICalGLib.ComponentKind.VTIMEZONE_COMPONENT)
    return events, zones


class EDSCalendarClient:
    """Wrapper for Evolution Data Server calendar operations."""

    def __init__(self, registry: EDataServer.SourceRegistry, calendar_uid: str):
        self.registry = registry
        self.calendar_uid = calendar_uid
        self.client: ECal.Client | None = None

    def connect(self, timeout: int = 10):
        """Connect to the specified calendar in EDS."""
        source = self.registry.ref_source(self.calendar_uid)
        if not source:
            raise TransportError(f"Calendar with UID '{self.calendar_uid}' not found in EDS")

        try:
            self.client = ECal.Client.connect_sync(
                source, ECal.ClientSourceType.EVENTS, timeout, None
            )
        except GLib.Error as e:
            raise TransportError(
                f"Failed to connect to calendar {self.calendar_uid}: {e.message}"
            ) from e

    def _require(self) -> ECal.Client:
        if not self.client:
            raise TransportError("Client not connected")
        return self.client

    def get_all_events(self) -> list[ICalGLib.Component]:
        """Retrieve all event components (masters and detached instances)."""
        try:
            # "#t" (boolean true) is the correct sexp for "all events".
            _, objects = self._require().get_object_list_sync("#t", None)
        except GLib.Error as e:
            raise TransportError(f"Failed to fetch events: {e.message}") from e
        return [parse_component(obj) for obj in objects]

    def get_components(self, uid: str) -> list[ICalGLib.Component]:
        """All components sharing one UID; empty when the event does not exist."""
        escaped = uid.replace("\\", "\\\\").replace('"', '\\"')
        try:
            _, objects = self._require().get_object_list_sync(f'(uid? "{escaped}")', None)
        except GLib.Error as e:
            if is_not_found_error(e):
                return []
            raise TransportError(f"Failed to fetch event {uid}: {e.message}") from e
        return [parse_component(obj) for obj in objects]

    def get_timezone_ical(self, tzid: str) -> str | None:
        try:
            _, zone = self._require().get_timezone_sync(tzid, None)
        except GLib.Error:
            return None
        if zone is None:
            return None
        comp = zone.get_component()
        return comp.as_ical_string() if comp else None

    def add_timezone(self, vtimezone: ICalGLib.Component):
        zone = ICalGLib.Timezone.new()
        zone.set_component(vtimezone)
        try:
            self._require().add_timezone_sync(zone, None)
        except GLib.Error as e:
            raise TransportError(f"Failed to add timezone: {e.message}") from e

    def create_event(self, component: ICalGLib.Component) -> str | None:
        """Create a new event in the calendar."""
        try:
            success, out_uid = self._require().create_object_sync(
                component, ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise TransportError(f"Failed to create event: {e.message}") from e
        if not success:
            raise TransportError("Failed to create event")
        return out_uid

    def modify_event(self, component: ICalGLib.Component, mod: ECal.ObjModType):
        """Modify an existing event (or one detached instance) in the calendar."""
        try:
            success = self._require().modify_object_sync(
                component, mod, ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise TransportError(f"Failed to modify event: {e.message}") from e
        if not success:
            raise TransportError("Failed to modify event")

    def remove_event(self, uid: str) -> bool:
        """Remove an event and all its instances; False if it did not exist."""
        try:
            success = self._require().remove_object_sync(
                uid,
                None,  # rid (recurrence-id)
                ECal.ObjModType.ALL,
                ECal.OperationFlags.NONE,
                None,  # cancellable
            )
        except GLib.Error as e:
            if is_not_found_error(e):
                return False
            raise TransportError(f"Failed to remove event {uid}: {e.message}") from e
        return bool(success)


class EDSLocalStore:
    """Local store adapter over EDS calendars.

    Object ids are iCalendar UIDs, so ``find_item_by_uuid`` is a plain fetch.
    The change feed is derived from the ``ChangeJournal`` snapshots.
    """

    def __init__(self, registry: EDataServer.SourceRegistry, journal: ChangeJournal):
        self.registry = registry
        self.journal = journal
        self._clients: dict[str, EDSCalendarClient] = {}

    @classmethod
    def from_registry(cls, journal: ChangeJournal) -> "EDSLocalStore":
        try:
            registry = EDataServer.SourceRegistry.new_sync(None)
        except GLib.Error as e:
            raise TransportError(f"EDS registry unreachable: {e.message}") from e
        return cls(registry, journal)

    def _client(self, collection_id: str) -> EDSCalendarClient:
        client = self._clients.get(collection_id)
        if client is None:
            client = EDSCalendarClient(self.registry, collection_id)
            client.connect()
            self._clients[collection_id] = client
        return client

    def _snapshot(
        self, client: EDSCalendarClient, collection_id: str, uid: str, components: list
    ) -> EventObject:
        master = next((c for c in components if not _is_detached_instance(c)), components[0])
        blocks = [c.as_ical_string() for c in components]
        zones = []
        for tzid in sorted(set().union(*(referenced_tzids(b) for b in blocks))):
            zone = client.get_timezone_ical(tzid)
            if zone:
                zones.append(zone)
        master_ical = master.as_ical_string()
        return EventObject(
            id=uid,
            collection_id=collection_id,
            uuid=uid,
            fingerprint=combine_fingerprints([compute_hash(b) for b in blocks]),
            modified_on=modified_on(master_ical),
            attachments=attachment_ids(uid, master_ical),
            data=wrap_vcalendar(blocks, zones),
        )

    def fetch_collection(self, collection_id: str) -> Collection | None:
        source = self.registry.ref_source(collection_id)
        if source is None or not source.has_extension(EDataServer.SOURCE_EXTENSION_CALENDAR):
            return None
        return Collection(id=source.get_uid(), name=source.get_display_name() or "")

    def fetch_changes(self, collection_id: str, token: str) -> ChangeSet:
        components: dict[str, list[str]] = {}
        for comp in self._client(collection_id).get_all_events():
            uid = comp.get_uid()
            if uid:
                components.setdefault(uid, []).append(compute_hash(comp.as_ical_string()))
        current = {uid: combine_fingerprints(hashes) for uid, hashes in components.items()}
        return self.journal.diff(collection_id, token, current)

    def fetch_item(self, collection_id: str, object_id: str) -> EventObject | None:
        client = self._client(collection_id)
        components = client.get_components(object_id)
        if not components:
            return None
        return self._snapshot(client, collection_id, object_id, components)

    def find_item_by_uuid(self, collection_id: str, object_uuid: str) -> EventObject | None:
        return self.fetch_item(collection_id, object_uuid)

    def create_item(self, collection_id: str, obj: EventObject) -> EventObject:
        client = self._client(collection_id)
        events, zones = _split_calendar(obj.data)
        if not events:
            raise TransportError(f"Object {obj.id} carries no VEVENT")
        uid = obj.uuid or events[0].get_uid() or str(uuid.uuid4())
        for zone in zones:
            client.add_timezone(zone)
        for comp in events:
            comp.set_uid(uid)

        masters = [c for c in events if not _is_detached_instance(c)]
        detached = [c for c in events if _is_detached_instance(c)]
        created_uid = client.create_event(masters[0] if masters else detached.pop(0)) or uid
        for comp in detached:
            comp.set_uid(created_uid)
            client.modify_event(comp, ECal.ObjModType.THIS)

        created = self.fetch_item(collection_id, created_uid)
        if created is None:
            raise TransportError(f"Created event {created_uid} could not be read back")
        return created

    def update_item(self, collection_id: str, object_id: str, obj: EventObject) -> EventObject:
        client = self._client(collection_id)
        events, zones = _split_calendar(obj.data)
        for zone in zones:
            client.add_timezone(zone)
        # Masters first so detached instances attach to the new series.
        for comp in sorted(events, key=_is_detached_instance):
            comp.set_uid(object_id)
            mod = ECal.ObjModType.THIS if _is_detached_instance(comp) else ECal.ObjModType.ALL
            client.modify_event(comp, mod)

        updated = self.fetch_item(collection_id, object_id)
        if updated is None:
            raise TransportError(f"Updated event {object_id} could not be read back")
        return updated

    def delete_item(self, collection_id: str, object_id: str) -> bool:
        return self._client(collection_id).remove_event(object_id)


def list_calendar_sources(registry: EDataServer.SourceRegistry) -> list[tuple[str, str, str, str]]:
    """Return (display name, account, mode, uid) for every EDS calendar."""
    entries = []
    for source in registry.list_sources(EDataServer.SOURCE_EXTENSION_CALENDAR):
        name = source.get_display_name() or "(unnamed)"
        uid = source.get_uid() or ""
        account = ""
        parent = source.get_parent()
        if parent:
            parent_source = registry.ref_source(parent)
            if parent_source:
                account = parent_source.get_display_name() or ""
        try:
            client = ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, 5, None)
            mode = "Read-write" if not client.is_readonly() else "Read-only"
        except GLib.Error:
            mode = "Unknown"
        entries.append((name, account, mode, uid))
    return entries
