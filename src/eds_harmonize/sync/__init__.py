"""
CalendarHarmonizer: wires the store adapters to the engine and runs every pairing.
"""

import logging
import threading
from dataclasses import dataclass

from eds_harmonize.db import ChangeJournal
from eds_harmonize.db import CorrelationStore
from eds_harmonize.models import CollectionCorrelation
from eds_harmonize.models import HarmonizationStatistics
from eds_harmonize.models import HarmonizeConfig
from eds_harmonize.models import HarmonizeError
from eds_harmonize.sync.engine import HarmonizationEngine


@dataclass
class PairingResult:
    """Outcome of one pairing's pass: statistics, or the error that aborted it."""

    pairing: CollectionCorrelation
    stats: HarmonizationStatistics | None = None
    error: str | None = None


class CalendarHarmonizer:
    """Main harmonization entry point."""

    def __init__(self, config: HarmonizeConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

    def run(
        self, affiliation_id: str | None = None, cancel: threading.Event | None = None
    ) -> list[PairingResult]:
        """Run one pass for every pairing of the configured user (or just one)."""
        from eds_harmonize.caldav_client import CalDAVRemoteStore
        from eds_harmonize.eds_client import EDSLocalStore

        results = []
        with CorrelationStore(self.config.state_db_path) as store:
            pairings = store.list_collections(self.config.user_id)
            if affiliation_id is not None:
                pairings = [p for p in pairings if p.affiliation_id == affiliation_id]
            if not pairings:
                self.logger.info("No pairings to harmonize")
                return results

            self.logger.info("Connecting to Evolution Data Server...")
            local = EDSLocalStore.from_registry(ChangeJournal(store.conn))
            self.logger.info(f"Connecting to CalDAV server {self.config.remote_url}...")
            remote = CalDAVRemoteStore.connect(
                self.config.remote_url,
                self.config.remote_username,
                self.config.remote_password,
            )
            engine = HarmonizationEngine(local, remote, store, self.config.prevalence)

            for pairing in pairings:
                self.logger.info(
                    f"Harmonizing pairing {pairing.affiliation_id}: "
                    f"{pairing.local_collection_id} <-> {pairing.remote_collection_id}"
                )
                try:
                    stats = engine.run(pairing, cancel=cancel, timeout=self.config.pass_timeout)
                except HarmonizeError as e:
                    # Fatal for this pairing only; its tokens stay where they were.
                    self.logger.error(f"Pass for pairing {pairing.affiliation_id} aborted: {e}")
                    results.append(PairingResult(pairing, error=str(e)))
                    continue
                results.append(PairingResult(pairing, stats=stats))
        return results
