"""
Pure data models: no EDS, CalDAV or sqlite imports.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from enum import Enum
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/eds-harmonize-state.db"
DEFAULT_CONFIG = Path.home() / ".config/eds-harmonize.conf"

# Correlation type for calendar events.
EVENT_TYPE = "EO"

# Change feeds sometimes report a trashed object under its trash name
# ("<uri>-deleted") as if it had been added.
TOMBSTONE_MARKER = "-deleted"


class HarmonizeError(Exception):
    """Base exception for harmonization errors."""

    pass


class TransportError(HarmonizeError):
    """A store adapter failed to talk to its backend."""

    pass


class ConfigError(HarmonizeError):
    """Configuration is missing or invalid."""

    pass


class CorrelationConflictError(HarmonizeError):
    """A correlation write would link an object that is already linked."""

    pass


class LeaseUnavailableError(HarmonizeError):
    """Another pass currently holds the lease for this pairing."""

    pass


class HarmonizationCancelled(HarmonizeError):
    """The pass was cancelled or ran past its deadline."""

    pass


class Prevalence(Enum):
    """Which side's edit survives a conflict."""

    LOCAL = "local"
    REMOTE = "remote"
    CHRONOLOGY = "chronology"

    @classmethod
    def parse(cls, value: str) -> "Prevalence":
        try:
            return cls(value.strip().lower())
        except ValueError:
            choices = ", ".join(p.value for p in cls)
            raise ConfigError(f"Invalid prevalence '{value}' (expected one of: {choices})") from None


class Outcome(Enum):
    """What a single reconciliation did."""

    NO_ACTION = "NA"
    LOCAL_CREATED = "LC"
    LOCAL_UPDATED = "LU"
    LOCAL_DELETED = "LD"
    REMOTE_CREATED = "RC"
    REMOTE_UPDATED = "RU"
    REMOTE_DELETED = "RD"


@dataclass(frozen=True)
class EventObject:
    """Snapshot of one calendar object as returned by a store adapter."""

    id: str
    collection_id: str
    fingerprint: str
    modified_on: datetime
    data: str
    uuid: str | None = None
    attachments: tuple[str, ...] = ()


@dataclass(frozen=True)
class Collection:
    """A resolved calendar collection."""

    id: str
    name: str = ""


@dataclass
class ChangeSet:
    """Incremental changes of one collection since a resume token."""

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    next_token: str = ""


@dataclass
class Correlation:
    """Identity link between a local object and its remote counterpart."""

    type: str
    user_id: str
    affiliation_id: str
    local_collection_id: str
    local_object_id: str
    local_fingerprint: str
    remote_collection_id: str
    remote_object_id: str
    remote_fingerprint: str
    id: int | None = None


@dataclass
class CollectionCorrelation:
    """A local collection paired with a remote collection."""

    user_id: str
    local_collection_id: str
    remote_collection_id: str
    local_resume_token: str = ""
    remote_resume_token: str = ""
    affiliation_id: str | None = None


@dataclass
class PendingAction:
    """A queued local deletion waiting for the next pass."""

    user_id: str
    type: str
    local_collection_id: str
    local_object_id: str
    action: str = "D"
    origin: str = "L"
    created_on: int = 0
    id: int | None = None


@dataclass
class HarmonizationStatistics:
    """Statistics for one harmonization pass."""

    remote_created: int = 0
    remote_updated: int = 0
    local_created: int = 0
    local_updated: int = 0
    local_deleted: int = 0
    remote_deleted: int = 0
    failures: int = 0

    def record(self, outcome: Outcome):
        """Count a reconciliation outcome."""
        match outcome:
            case Outcome.NO_ACTION:
                pass
            case Outcome.LOCAL_CREATED:
                self.local_created += 1
            case Outcome.LOCAL_UPDATED:
                self.local_updated += 1
            case Outcome.LOCAL_DELETED:
                self.local_deleted += 1
            case Outcome.REMOTE_CREATED:
                self.remote_created += 1
            case Outcome.REMOTE_UPDATED:
                self.remote_updated += 1
            case Outcome.REMOTE_DELETED:
                self.remote_deleted += 1
            case _:
                raise ValueError(f"Unknown outcome: {outcome!r}")

    @property
    def total(self) -> int:
        return (
            self.remote_created
            + self.remote_updated
            + self.local_created
            + self.local_updated
            + self.local_deleted
            + self.remote_deleted
        )


@dataclass
class HarmonizeConfig:
    """Configuration for a harmonization run."""

    user_id: str
    remote_url: str
    state_db_path: Path
    remote_username: str = ""
    remote_password: str = ""
    prevalence: Prevalence = Prevalence.CHRONOLOGY
    pass_timeout: float | None = 300.0
    verbose: bool = False
