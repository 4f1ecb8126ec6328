"""
Per-object reconciliation between the local and the remote store.

Every entry point fetches fresh snapshots, consults the correlation table,
applies at most one create or one push/pull pair, then records the final
fingerprints of both sides. A correlation row is only ever written after the
store mutation it describes has succeeded.
"""

import dataclasses
import logging
import uuid

from eds_harmonize.db import CorrelationStore
from eds_harmonize.models import EVENT_TYPE
from eds_harmonize.models import TOMBSTONE_MARKER
from eds_harmonize.models import Correlation
from eds_harmonize.models import EventObject
from eds_harmonize.models import Outcome
from eds_harmonize.models import Prevalence
from eds_harmonize.sync.context import PassContext
from eds_harmonize.sync.resolver import PULL_ONLY
from eds_harmonize.sync.resolver import PUSH_ONLY
from eds_harmonize.sync.resolver import Decision
from eds_harmonize.sync.resolver import decide

logger = logging.getLogger(__name__)


class ObjectReconciler:
    """Decides and applies the counterpart mutation for one changed object."""

    def __init__(self, local, remote, store: CorrelationStore, prevalence: Prevalence):
        self.local = local
        self.remote = remote
        self.store = store
        self.prevalence = prevalence

    # ------------------------------------------------------------------ #
    # Local side                                                          #
    # ------------------------------------------------------------------ #

    def reconcile_local_changed(
        self,
        ctx: PassContext,
        user_id: str,
        local_collection_id: str,
        local_object_id: str,
        remote_collection_id: str,
        affiliation_id: str,
    ) -> Outcome:
        """Harmonize a locally added or modified object."""
        if TOMBSTONE_MARKER in local_object_id:
            logger.debug(f"Skipping trashed local object {local_object_id}")
            return Outcome.NO_ACTION

        lo = self.local.fetch_item(local_collection_id, local_object_id)
        if lo is None:
            return Outcome.NO_ACTION

        ci = self.store.find_by_local(user_id, EVENT_TYPE, local_object_id, local_collection_id)
        # Nothing changed since we last recorded it (usually our own write).
        if ci is not None and ci.local_fingerprint == lo.fingerprint:
            return Outcome.NO_ACTION

        ro = None
        if ci is not None and ci.remote_object_id:
            ro = self.remote.fetch_item(remote_collection_id, ci.remote_object_id)
        if ro is None and lo.uuid:
            index = ctx.remote_uuid_index(self.remote, remote_collection_id)
            remote_object_id = index.lookup(lo.uuid)
            if remote_object_id is not None:
                ro = self.remote.fetch_item(remote_collection_id, remote_object_id)

        if ro is None:
            ro = self.remote.create_item(remote_collection_id, lo)
            logger.debug(f"Created remote {ro.id} from local {lo.id}")
            outcome = Outcome.REMOTE_CREATED
        else:
            if ci is None or ro.fingerprint != ci.remote_fingerprint:
                decision = decide(self.prevalence, lo.modified_on, ro.modified_on)
            else:
                decision = PUSH_ONLY
            lo, ro, pushed, pulled = self._apply(
                decision, local_collection_id, remote_collection_id, lo, ro
            )
            if pushed:
                outcome = Outcome.REMOTE_UPDATED
            elif pulled:
                outcome = Outcome.LOCAL_UPDATED
            else:
                outcome = Outcome.NO_ACTION

        self._upsert(ci, user_id, affiliation_id, local_collection_id, remote_collection_id, lo, ro)
        return outcome

    def reconcile_local_deleted(
        self, ctx: PassContext, user_id: str, local_collection_id: str, local_object_id: str
    ) -> Outcome:
        """Propagate a local deletion to the remote counterpart."""
        ci = self.store.find_by_local(user_id, EVENT_TYPE, local_object_id, local_collection_id)
        if ci is None:
            return Outcome.NO_ACTION
        self.remote.delete_item(ci.remote_collection_id, ci.remote_object_id)
        self.store.delete(ci)
        logger.debug(f"Deleted remote {ci.remote_object_id} (local {local_object_id} deleted)")
        return Outcome.REMOTE_DELETED

    # ------------------------------------------------------------------ #
    # Remote side                                                         #
    # ------------------------------------------------------------------ #

    def reconcile_remote_changed(
        self,
        ctx: PassContext,
        user_id: str,
        remote_collection_id: str,
        remote_object_id: str,
        local_collection_id: str,
        affiliation_id: str,
    ) -> Outcome:
        """Harmonize a remotely created or updated object."""
        ro = self.remote.fetch_item(remote_collection_id, remote_object_id)
        if ro is None:
            return Outcome.NO_ACTION

        ci = self.store.find_by_remote(user_id, EVENT_TYPE, remote_object_id, remote_collection_id)
        if ci is not None and ci.remote_fingerprint == ro.fingerprint:
            return Outcome.NO_ACTION

        lo = None
        if ci is not None and ci.local_object_id:
            lo = self.local.fetch_item(local_collection_id, ci.local_object_id)
        if lo is None and ro.uuid:
            lo = self.local.find_item_by_uuid(local_collection_id, ro.uuid)

        if lo is None:
            source = ro if ro.uuid else dataclasses.replace(ro, uuid=str(uuid.uuid4()))
            lo = self.local.create_item(local_collection_id, source)
            logger.debug(f"Created local {lo.id} from remote {ro.id}")
            if not ro.uuid:
                # Give the remote object the uuid we minted so later passes can
                # match it without a correlation.
                updated = self.remote.update_item_uuid(remote_collection_id, ro.id, lo.uuid)
                if updated is not None:
                    ro = dataclasses.replace(ro, uuid=lo.uuid, fingerprint=updated.fingerprint)
            outcome = Outcome.LOCAL_CREATED
        else:
            if ci is None or lo.fingerprint != ci.local_fingerprint:
                decision = decide(self.prevalence, lo.modified_on, ro.modified_on)
            else:
                decision = PULL_ONLY
            lo, ro, pushed, pulled = self._apply(
                decision, local_collection_id, remote_collection_id, lo, ro, pull_first=True
            )
            if pulled:
                outcome = Outcome.LOCAL_UPDATED
            elif pushed:
                outcome = Outcome.REMOTE_UPDATED
            else:
                outcome = Outcome.NO_ACTION

        self._upsert(ci, user_id, affiliation_id, local_collection_id, remote_collection_id, lo, ro)
        return outcome

    def reconcile_remote_deleted(
        self, ctx: PassContext, user_id: str, remote_collection_id: str, remote_object_id: str
    ) -> Outcome:
        """Propagate a remote deletion to the local counterpart."""
        ci = self.store.find_by_remote(user_id, EVENT_TYPE, remote_object_id, remote_collection_id)
        if ci is None:
            return Outcome.NO_ACTION
        self.local.delete_item(ci.local_collection_id, ci.local_object_id)
        self.store.delete(ci)
        logger.debug(f"Deleted local {ci.local_object_id} (remote {remote_object_id} deleted)")
        return Outcome.LOCAL_DELETED

    # ------------------------------------------------------------------ #
    # Helpers                                                             #
    # ------------------------------------------------------------------ #

    def _push(self, remote_collection_id: str, lo: EventObject, ro: EventObject) -> EventObject:
        # The remote store has no partial update: drop its attachments, then
        # replace the whole object, attachments included.
        if ro.attachments:
            self.remote.delete_item_attachments(list(ro.attachments))
        return self.remote.update_item(remote_collection_id, ro.id, lo)

    def _pull(self, local_collection_id: str, lo: EventObject, ro: EventObject) -> EventObject:
        return self.local.update_item(local_collection_id, lo.id, ro)

    def _apply(
        self,
        decision: Decision,
        local_collection_id: str,
        remote_collection_id: str,
        lo: EventObject,
        ro: EventObject,
        pull_first: bool = False,
    ) -> tuple[EventObject, EventObject, bool, bool]:
        """Carry out a decision; returns the final snapshots and what was done."""
        pushed = pulled = False
        if pull_first and decision.pull_remote:
            lo = self._pull(local_collection_id, lo, ro)
            pulled = True
        if decision.push_local:
            ro = self._push(remote_collection_id, lo, ro)
            pushed = True
        if not pull_first and decision.pull_remote:
            lo = self._pull(local_collection_id, lo, ro)
            pulled = True
        if not (pushed or pulled):
            logger.debug(
                f"No action for {lo.id} <-> {ro.id}: "
                f"equal modification times under {self.prevalence.value} policy"
            )
        return lo, ro, pushed, pulled

    def _upsert(
        self,
        ci: Correlation | None,
        user_id: str,
        affiliation_id: str,
        local_collection_id: str,
        remote_collection_id: str,
        lo: EventObject,
        ro: EventObject,
    ):
        """Record the final ids and fingerprints of both sides."""
        if ci is not None:
            ci.local_collection_id = local_collection_id
            ci.local_object_id = lo.id
            ci.local_fingerprint = lo.fingerprint
            ci.remote_collection_id = remote_collection_id
            ci.remote_object_id = ro.id
            ci.remote_fingerprint = ro.fingerprint
            self.store.update(ci)
        else:
            self.store.create(
                Correlation(
                    type=EVENT_TYPE,
                    user_id=user_id,
                    affiliation_id=affiliation_id,
                    local_collection_id=local_collection_id,
                    local_object_id=lo.id,
                    local_fingerprint=lo.fingerprint,
                    remote_collection_id=remote_collection_id,
                    remote_object_id=ro.id,
                    remote_fingerprint=ro.fingerprint,
                )
            )
