"""
Queue deletions for objects moved to the local trash.

A trashed object disappears from its collection under a renamed id, which the
change feed may report as an addition. The listener turns the notification
into a pending delete that the next pass handles like any other local deletion.
"""

import logging
import sqlite3
from dataclasses import dataclass

from eds_harmonize.db import CorrelationStore
from eds_harmonize.models import EVENT_TYPE
from eds_harmonize.models import TOMBSTONE_MARKER
from eds_harmonize.models import HarmonizeError
from eds_harmonize.models import PendingAction

logger = logging.getLogger(__name__)

PRINCIPAL_PREFIX = "principals/users/"

# Component kinds we correlate, keyed by iCalendar component name.
_COMPONENT_TYPES = {"VEVENT": EVENT_TYPE}


@dataclass
class TrashNotification:
    """A "moved to trash" notification for one calendar object."""

    principal_uri: str
    collection_id: str
    object_uri: str
    component: str


class TrashListener:
    def __init__(self, store: CorrelationStore):
        self.store = store

    def handle(self, notification: TrashNotification) -> PendingAction | None:
        """Enqueue a delete for a correlated object; never raises."""
        try:
            return self._handle(notification)
        except (HarmonizeError, sqlite3.Error) as e:
            logger.warning(f"Could not queue deletion for {notification.object_uri}: {e}")
            return None

    def _handle(self, notification: TrashNotification) -> PendingAction | None:
        type_ = _COMPONENT_TYPES.get(notification.component.upper())
        if type_ is None:
            return None

        user_id = notification.principal_uri.removeprefix(PRINCIPAL_PREFIX)
        collection_id = str(notification.collection_id)
        object_id = notification.object_uri.replace(TOMBSTONE_MARKER, "")

        if self.store.find_by_local(user_id, type_, object_id, collection_id) is None:
            logger.debug(f"Trashed object {object_id} has no correlation; nothing to queue")
            return None

        action = self.store.enqueue_action(
            PendingAction(
                user_id=user_id,
                type=type_,
                local_collection_id=collection_id,
                local_object_id=object_id,
            )
        )
        logger.info(f"Queued remote deletion for trashed object {object_id}")
        return action
