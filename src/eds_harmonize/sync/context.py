"""
State that lives for exactly one harmonization pass.
"""

import logging
import threading
import time

from eds_harmonize.models import HarmonizationCancelled

logger = logging.getLogger(__name__)


class UUIDIndex:
    """uuid → object id lookup for one remote collection."""

    def __init__(self, collection_id: str, entries: list[tuple[str, str]]):
        self.collection_id = collection_id
        self._by_uuid: dict[str, str] = {}
        for object_id, object_uuid in entries:
            if object_uuid:
                # First one wins when a server holds duplicate UIDs.
                self._by_uuid.setdefault(object_uuid, object_id)

    @classmethod
    def load(cls, remote, collection_id: str) -> "UUIDIndex":
        entries = remote.fetch_collection_uuid_index(collection_id)
        logger.debug(f"Loaded UUID index for {collection_id}: {len(entries)} object(s)")
        return cls(collection_id, entries)

    def lookup(self, object_uuid: str) -> str | None:
        return self._by_uuid.get(object_uuid)

    def __len__(self) -> int:
        return len(self._by_uuid)


class PassContext:
    """Per-pass cache and cancellation checkpoint, threaded through every reconciliation."""

    def __init__(
        self,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ):
        self.cancel = cancel
        self.deadline = time.monotonic() + timeout if timeout else None
        self._uuid_indexes: dict[str, UUIDIndex] = {}

    def remote_uuid_index(self, remote, collection_id: str) -> UUIDIndex:
        """Return the UUID index of a remote collection, loading it on first use."""
        index = self._uuid_indexes.get(collection_id)
        if index is None:
            index = UUIDIndex.load(remote, collection_id)
            self._uuid_indexes[collection_id] = index
        return index

    def check(self):
        """Raise HarmonizationCancelled once the pass was cancelled or timed out."""
        if self.cancel is not None and self.cancel.is_set():
            raise HarmonizationCancelled("Harmonization pass cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise HarmonizationCancelled("Harmonization pass exceeded its timeout")
