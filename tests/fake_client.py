"""
In-memory fake store adapters for testing.

Duck-type-compatible stand-ins for EDSLocalStore and CalDAVRemoteStore.  No EDS
daemon or CalDAV server is required. Objects live in a plain dict and every
write (ours or the engine's) lands in a change log, so the engine sees its own
writes echoed back on the next enumeration just like with a real backend.
"""

import itertools
import uuid
from datetime import datetime
from datetime import timezone

from eds_harmonize.models import ChangeSet
from eds_harmonize.models import Collection
from eds_harmonize.models import EventObject
from eds_harmonize.models import TransportError

T0 = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


class _FakeStore:
    """Shared object table, change log and call log."""

    def __init__(self, collection_id: str, prefix: str):
        self.collection_ids = {collection_id}
        self.prefix = prefix
        self._objects: dict[str, EventObject] = {}
        # (kind, object_id) in write order; a token is an index into it.
        self._log: list[tuple[str, str]] = []
        self._fingerprints = itertools.count(1)
        self.calls: list[tuple[str, str]] = []
        self.fail_ids: set[str] = set()
        self.fail_changes = False

    # ------------------------------------------------------------------ #
    # Internal helpers                                                      #
    # ------------------------------------------------------------------ #

    def _fingerprint(self) -> str:
        return f"{self.prefix}-fp{next(self._fingerprints)}"

    def _check(self, *object_ids: str):
        for object_id in object_ids:
            if object_id in self.fail_ids:
                raise TransportError(f"Simulated failure for {object_id}")

    def _store(self, obj: EventObject, kind: str) -> EventObject:
        self._objects[obj.id] = obj
        self._log.append((kind, obj.id))
        return obj

    # ------------------------------------------------------------------ #
    # Store adapter interface                                               #
    # ------------------------------------------------------------------ #

    def fetch_collection(self, collection_id: str) -> Collection | None:
        if collection_id not in self.collection_ids:
            return None
        return Collection(id=collection_id, name=f"{self.prefix} calendar")

    def fetch_changes(self, collection_id: str, token: str) -> ChangeSet:
        if self.fail_changes:
            raise TransportError(f"Simulated enumeration failure for {collection_id}")
        changes = ChangeSet(next_token=str(len(self._log)))
        if not token:
            changes.added = sorted(
                oid for oid, obj in self._objects.items() if obj.collection_id == collection_id
            )
            return changes

        first_kind: dict[str, str] = {}
        for kind, object_id in self._log[int(token) :]:
            first_kind.setdefault(object_id, kind)
        for object_id, kind in first_kind.items():
            if object_id not in self._objects:
                if kind != "added":
                    changes.deleted.append(object_id)
            elif kind == "added":
                changes.added.append(object_id)
            else:
                changes.modified.append(object_id)
        return changes

    def fetch_item(self, collection_id: str, object_id: str) -> EventObject | None:
        obj = self._objects.get(object_id)
        if obj is None or obj.collection_id != collection_id:
            return None
        return obj

    def delete_item(self, collection_id: str, object_id: str) -> bool:
        self._check(object_id)
        self.calls.append(("delete", object_id))
        if self._objects.pop(object_id, None) is None:
            return False
        self._log.append(("deleted", object_id))
        return True

    # ------------------------------------------------------------------ #
    # Test helpers                                                          #
    # ------------------------------------------------------------------ #

    def put(
        self,
        object_id: str,
        data: str = "",
        object_uuid: str | None = None,
        modified_on: datetime = T0,
        attachments: tuple[str, ...] = (),
        collection_id: str | None = None,
    ) -> EventObject:
        """Simulate a user creating or editing an object on this side."""
        kind = "modified" if object_id in self._objects else "added"
        return self._store(
            EventObject(
                id=object_id,
                collection_id=collection_id or next(iter(self.collection_ids)),
                uuid=object_uuid,
                fingerprint=self._fingerprint(),
                modified_on=modified_on,
                attachments=attachments,
                data=data or f"SUMMARY:{object_id}",
            ),
            kind,
        )

    def remove(self, object_id: str):
        """Simulate a user deleting an object on this side."""
        del self._objects[object_id]
        self._log.append(("deleted", object_id))

    def get(self, object_id: str) -> EventObject | None:
        return self._objects.get(object_id)

    def all(self) -> list[EventObject]:
        return list(self._objects.values())

    @property
    def object_count(self) -> int:
        return len(self._objects)

    @property
    def mutations(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] != "uuid_index"]

    def reset_calls(self):
        """Clear the call log between passes."""
        self.calls.clear()


class FakeLocalStore(_FakeStore):
    """Local side: object ids are the objects' uuids, as in EDS."""

    def __init__(self, collection_id: str):
        super().__init__(collection_id, "local")

    def put(self, object_id: str, data: str = "", **kwargs) -> EventObject:
        kwargs.setdefault("object_uuid", object_id)
        return super().put(object_id, data, **kwargs)

    def trash(self, object_id: str):
        """Simulate a move to the trash: the object reappears under a tombstone
        id, and its original id is never reported as deleted."""
        obj = self._objects.pop(object_id)
        self.put(f"{object_id}-deleted", obj.data)

    def find_item_by_uuid(self, collection_id: str, object_uuid: str) -> EventObject | None:
        return self.fetch_item(collection_id, object_uuid)

    def create_item(self, collection_id: str, obj: EventObject) -> EventObject:
        self._check(obj.id)
        object_id = obj.uuid or str(uuid.uuid4())
        self.calls.append(("create", object_id))
        return self._store(
            EventObject(
                id=object_id,
                collection_id=collection_id,
                uuid=object_id,
                fingerprint=self._fingerprint(),
                modified_on=obj.modified_on,
                attachments=tuple(f"{object_id}#{i}" for i in range(len(obj.attachments))),
                data=obj.data,
            ),
            "added",
        )

    def update_item(self, collection_id: str, object_id: str, obj: EventObject) -> EventObject:
        self._check(object_id, obj.id)
        self.calls.append(("update", object_id))
        return self._store(
            EventObject(
                id=object_id,
                collection_id=collection_id,
                uuid=object_id,
                fingerprint=self._fingerprint(),
                modified_on=obj.modified_on,
                attachments=tuple(f"{object_id}#{i}" for i in range(len(obj.attachments))),
                data=obj.data,
            ),
            "modified",
        )


class FakeRemoteStore(_FakeStore):
    """Remote side: server-assigned resource ids, uuids carried in the data."""

    def __init__(self, collection_id: str):
        super().__init__(collection_id, "remote")
        self._resources = itertools.count(1)

    def fetch_collection_uuid_index(self, collection_id: str) -> list[tuple[str, str]]:
        self.calls.append(("uuid_index", collection_id))
        return [
            (obj.id, obj.uuid)
            for obj in self._objects.values()
            if obj.collection_id == collection_id and obj.uuid
        ]

    def create_item(self, collection_id: str, obj: EventObject) -> EventObject:
        self._check(obj.id)
        object_id = f"{collection_id}res-{next(self._resources)}.ics"
        self.calls.append(("create", object_id))
        return self._store(
            EventObject(
                id=object_id,
                collection_id=collection_id,
                uuid=obj.uuid,
                fingerprint=self._fingerprint(),
                modified_on=obj.modified_on,
                attachments=tuple(f"{object_id}#{i}" for i in range(len(obj.attachments))),
                data=obj.data,
            ),
            "added",
        )

    def update_item(self, collection_id: str, object_id: str, obj: EventObject) -> EventObject:
        self._check(object_id, obj.id)
        existing = self._objects.get(object_id)
        if existing is None:
            raise TransportError(f"Cannot update {object_id}: object is gone")
        self.calls.append(("update", object_id))
        return self._store(
            EventObject(
                id=object_id,
                collection_id=collection_id,
                uuid=existing.uuid or obj.uuid,
                fingerprint=self._fingerprint(),
                modified_on=obj.modified_on,
                attachments=tuple(f"{object_id}#{i}" for i in range(len(obj.attachments))),
                data=obj.data,
            ),
            "modified",
        )

    def update_item_uuid(self, collection_id: str, object_id: str, object_uuid: str) -> EventObject:
        self._check(object_id)
        existing = self._objects[object_id]
        self.calls.append(("update_uuid", object_id))
        return self._store(
            EventObject(
                id=object_id,
                collection_id=collection_id,
                uuid=object_uuid,
                fingerprint=self._fingerprint(),
                modified_on=existing.modified_on,
                attachments=existing.attachments,
                data=existing.data,
            ),
            "modified",
        )

    def delete_item_attachments(self, attachment_ids: list[str]):
        for att_id in attachment_ids:
            object_id = att_id.rpartition("#")[0]
            self._check(object_id)
            self.calls.append(("delete_attachment", att_id))
            existing = self._objects.get(object_id)
            if existing is None:
                continue
            self._store(
                EventObject(
                    id=object_id,
                    collection_id=existing.collection_id,
                    uuid=existing.uuid,
                    fingerprint=self._fingerprint(),
                    modified_on=existing.modified_on,
                    attachments=tuple(a for a in existing.attachments if a != att_id),
                    data=existing.data,
                ),
                "modified",
            )
