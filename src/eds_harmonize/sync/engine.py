"""
One harmonization pass over a single pairing.
"""

import logging
import threading

from eds_harmonize.db import CorrelationStore
from eds_harmonize.models import EVENT_TYPE
from eds_harmonize.models import CollectionCorrelation
from eds_harmonize.models import CorrelationConflictError
from eds_harmonize.models import HarmonizationStatistics
from eds_harmonize.models import Outcome
from eds_harmonize.models import Prevalence
from eds_harmonize.models import TransportError
from eds_harmonize.sync.context import PassContext
from eds_harmonize.sync.reconcile import ObjectReconciler

logger = logging.getLogger(__name__)

# Lease lifetime when the pass itself has no timeout.
DEFAULT_LEASE_TTL = 3600.0


class HarmonizationEngine:
    """Drives both change feeds of a pairing through the object reconciler.

    ``local`` and ``remote`` are store adapters. Both provide
    ``fetch_collection``, ``fetch_changes``, ``fetch_item``, ``create_item``,
    ``update_item`` and ``delete_item``; the local one also
    ``find_item_by_uuid``, the remote one ``fetch_collection_uuid_index``,
    ``delete_item_attachments`` and ``update_item_uuid``. Missing objects and
    collections come back as ``None``; I/O failures raise ``TransportError``.
    """

    def __init__(
        self,
        local,
        remote,
        store: CorrelationStore,
        prevalence: Prevalence = Prevalence.CHRONOLOGY,
    ):
        self.local = local
        self.remote = remote
        self.store = store
        self.reconciler = ObjectReconciler(local, remote, store, prevalence)

    def run(
        self,
        pairing: CollectionCorrelation,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> HarmonizationStatistics:
        """Execute one pass; at most one pass per pairing runs at a time."""
        ttl = timeout + 60.0 if timeout else DEFAULT_LEASE_TTL
        with self.store.lease(pairing.affiliation_id, ttl):
            return self._run(pairing, PassContext(cancel=cancel, timeout=timeout))

    def _run(self, pairing: CollectionCorrelation, ctx: PassContext) -> HarmonizationStatistics:
        stats = HarmonizationStatistics()
        user_id = pairing.user_id
        aid = pairing.affiliation_id
        lcid = pairing.local_collection_id
        rcid = pairing.remote_collection_id

        if not lcid or not rcid:
            self._drop_pairing(pairing, "missing local or remote collection id")
            return stats

        local_collection = self.local.fetch_collection(lcid)
        if local_collection is None or local_collection.id != lcid:
            self._drop_pairing(pairing, "local collection is gone")
            return stats

        remote_collection = self.remote.fetch_collection(rcid)
        if remote_collection is None or remote_collection.id != rcid:
            self._drop_pairing(pairing, "remote collection is gone")
            return stats

        # -- Local → remote --------------------------------------------------
        ctx.check()
        changes = self.local.fetch_changes(lcid, pairing.local_resume_token)
        logger.info(
            f"Local changes for pairing {aid}: {len(changes.added)} added, "
            f"{len(changes.modified)} modified, {len(changes.deleted)} deleted"
        )
        for loid in changes.added + changes.modified:
            ctx.check()
            self._attempt(
                stats,
                f"local {loid}",
                self.reconciler.reconcile_local_changed,
                ctx,
                user_id,
                lcid,
                loid,
                rcid,
                aid,
            )

        queued = self.store.pending_deletes(user_id, EVENT_TYPE, lcid)
        deleted = list(dict.fromkeys(changes.deleted + [a.local_object_id for a in queued]))
        failed: set[str] = set()
        for loid in deleted:
            ctx.check()
            if not self._attempt(
                stats,
                f"local deletion {loid}",
                self.reconciler.reconcile_local_deleted,
                ctx,
                user_id,
                lcid,
                loid,
            ):
                failed.add(loid)

        ctx.check()
        pairing.local_resume_token = changes.next_token
        self.store.update_collection(pairing)
        # Failed trash deletions stay queued for the next pass.
        self.store.consume_actions([a.id for a in queued if a.local_object_id not in failed])

        # -- Remote → local --------------------------------------------------
        ctx.check()
        changes = self.remote.fetch_changes(rcid, pairing.remote_resume_token)
        logger.info(
            f"Remote changes for pairing {aid}: {len(changes.added)} created, "
            f"{len(changes.modified)} updated, {len(changes.deleted)} deleted"
        )
        for roid in changes.added + changes.modified:
            ctx.check()
            self._attempt(
                stats,
                f"remote {roid}",
                self.reconciler.reconcile_remote_changed,
                ctx,
                user_id,
                rcid,
                roid,
                lcid,
                aid,
            )
        for roid in changes.deleted:
            ctx.check()
            self._attempt(
                stats,
                f"remote deletion {roid}",
                self.reconciler.reconcile_remote_deleted,
                ctx,
                user_id,
                rcid,
                roid,
            )

        ctx.check()
        pairing.remote_resume_token = changes.next_token
        self.store.update_collection(pairing)

        logger.info(
            f"Pairing {aid} harmonized: {stats.total} change(s), {stats.failures} failure(s)"
        )
        return stats

    def _attempt(self, stats: HarmonizationStatistics, label: str, operation, *args) -> bool:
        """Run one reconciliation; a failure aborts only this object.

        Returns False when the object failed.
        """
        try:
            outcome = operation(*args)
        except (TransportError, CorrelationConflictError) as e:
            logger.error(f"Failed to harmonize {label}: {e}")
            stats.failures += 1
            return False
        if outcome is not Outcome.NO_ACTION:
            logger.debug(f"Harmonized {label}: {outcome.name}")
        stats.record(outcome)
        return True

    def _drop_pairing(self, pairing: CollectionCorrelation, reason: str):
        removed = self.store.remove_pairing(pairing)
        logger.info(
            f"Deleted pairing {pairing.affiliation_id} for {pairing.user_id} "
            f"and {removed} correlation(s): {reason}"
        )
