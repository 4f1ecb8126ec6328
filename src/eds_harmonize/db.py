"""
SQLite persistence for correlations, pairings, leases and the local change journal.
"""

import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path

from eds_harmonize.models import ChangeSet
from eds_harmonize.models import CollectionCorrelation
from eds_harmonize.models import Correlation
from eds_harmonize.models import CorrelationConflictError
from eds_harmonize.models import LeaseUnavailableError
from eds_harmonize.models import PendingAction

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS collection_correlations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        local_collection_id TEXT NOT NULL,
        remote_collection_id TEXT NOT NULL,
        local_resume_token TEXT NOT NULL DEFAULT '',
        remote_resume_token TEXT NOT NULL DEFAULT '',
        created_at INTEGER NOT NULL,
        last_sync_at INTEGER NOT NULL,
        UNIQUE(user_id, local_collection_id, remote_collection_id)
    );
    CREATE TABLE IF NOT EXISTS correlations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL,
        user_id TEXT NOT NULL,
        affiliation_id TEXT NOT NULL,
        local_collection_id TEXT NOT NULL,
        local_object_id TEXT NOT NULL,
        local_fingerprint TEXT NOT NULL,
        remote_collection_id TEXT NOT NULL,
        remote_object_id TEXT NOT NULL,
        remote_fingerprint TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        last_sync_at INTEGER NOT NULL,
        UNIQUE(user_id, type, local_collection_id, local_object_id),
        UNIQUE(user_id, type, remote_collection_id, remote_object_id)
    );
    CREATE INDEX IF NOT EXISTS correlations_affiliation
        ON correlations (user_id, affiliation_id);
    CREATE TABLE IF NOT EXISTS actions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        type TEXT NOT NULL,
        action TEXT NOT NULL,
        origin TEXT NOT NULL,
        local_collection_id TEXT NOT NULL,
        local_object_id TEXT NOT NULL,
        created_on INTEGER NOT NULL
    );
    CREATE TABLE IF NOT EXISTS leases (
        affiliation_id TEXT PRIMARY KEY,
        holder TEXT NOT NULL,
        expires_at REAL NOT NULL
    );
    CREATE TABLE IF NOT EXISTS snapshot_tokens (
        collection_id TEXT NOT NULL,
        token TEXT NOT NULL,
        created_at REAL NOT NULL,
        PRIMARY KEY (collection_id, token)
    );
    CREATE TABLE IF NOT EXISTS snapshot_entries (
        collection_id TEXT NOT NULL,
        token TEXT NOT NULL,
        object_id TEXT NOT NULL,
        fingerprint TEXT NOT NULL,
        PRIMARY KEY (collection_id, token, object_id)
    );
"""

_CORRELATION_COLUMNS = (
    "id, type, user_id, affiliation_id, "
    "local_collection_id, local_object_id, local_fingerprint, "
    "remote_collection_id, remote_object_id, remote_fingerprint"
)


def _connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # Autocommit mode: every write goes through an explicit transaction below.
    conn = sqlite3.connect(str(db_path), timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row  # Enable column access by name
    return conn


@contextmanager
def _transaction(conn: sqlite3.Connection, immediate: bool = False):
    """Run the enclosed statements as one all-or-nothing transaction."""
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def _row_to_correlation(row: sqlite3.Row) -> Correlation:
    return Correlation(
        id=row["id"],
        type=row["type"],
        user_id=row["user_id"],
        affiliation_id=row["affiliation_id"],
        local_collection_id=row["local_collection_id"],
        local_object_id=row["local_object_id"],
        local_fingerprint=row["local_fingerprint"],
        remote_collection_id=row["remote_collection_id"],
        remote_object_id=row["remote_object_id"],
        remote_fingerprint=row["remote_fingerprint"],
    )


def _row_to_collection(row: sqlite3.Row) -> CollectionCorrelation:
    return CollectionCorrelation(
        affiliation_id=str(row["id"]),
        user_id=row["user_id"],
        local_collection_id=row["local_collection_id"],
        remote_collection_id=row["remote_collection_id"],
        local_resume_token=row["local_resume_token"],
        remote_resume_token=row["remote_resume_token"],
    )


class CorrelationStore:
    """Persistent correlation table plus the pairing records that own it."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the state database."""
        self.conn = _connect(self.db_path)
        self.conn.executescript(_SCHEMA)

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    # ------------------------------------------------------------------ #
    # Object correlations                                                 #
    # ------------------------------------------------------------------ #

    def find_by_local(
        self, user_id: str, type_: str, local_object_id: str, local_collection_id: str
    ) -> Correlation | None:
        """Get the correlation for a local object, if one exists."""
        row = self.conn.execute(
            f"SELECT {_CORRELATION_COLUMNS} FROM correlations "
            "WHERE user_id = ? AND type = ? AND local_object_id = ? "
            "AND local_collection_id = ? LIMIT 1",
            (user_id, type_, local_object_id, local_collection_id),
        ).fetchone()
        return _row_to_correlation(row) if row else None

    def find_by_remote(
        self, user_id: str, type_: str, remote_object_id: str, remote_collection_id: str
    ) -> Correlation | None:
        """Get the correlation for a remote object, if one exists."""
        row = self.conn.execute(
            f"SELECT {_CORRELATION_COLUMNS} FROM correlations "
            "WHERE user_id = ? AND type = ? AND remote_object_id = ? "
            "AND remote_collection_id = ? LIMIT 1",
            (user_id, type_, remote_object_id, remote_collection_id),
        ).fetchone()
        return _row_to_correlation(row) if row else None

    def list_by_affiliation(self, user_id: str, affiliation_id: str) -> list[Correlation]:
        cursor = self.conn.execute(
            f"SELECT {_CORRELATION_COLUMNS} FROM correlations "
            "WHERE user_id = ? AND affiliation_id = ? ORDER BY id",
            (user_id, affiliation_id),
        )
        return [_row_to_correlation(row) for row in cursor.fetchall()]

    def create(self, correlation: Correlation) -> Correlation:
        """Insert a new correlation and assign its row id."""
        timestamp = int(time.time())
        try:
            with _transaction(self.conn):
                cursor = self.conn.execute(
                    "INSERT INTO correlations "
                    "(type, user_id, affiliation_id, "
                    " local_collection_id, local_object_id, local_fingerprint, "
                    " remote_collection_id, remote_object_id, remote_fingerprint, "
                    " created_at, last_sync_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        correlation.type,
                        correlation.user_id,
                        correlation.affiliation_id,
                        correlation.local_collection_id,
                        correlation.local_object_id,
                        correlation.local_fingerprint,
                        correlation.remote_collection_id,
                        correlation.remote_object_id,
                        correlation.remote_fingerprint,
                        timestamp,
                        timestamp,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise CorrelationConflictError(
                f"Correlation {correlation.local_object_id} <-> "
                f"{correlation.remote_object_id} collides with an existing link: {e}"
            ) from e
        correlation.id = cursor.lastrowid
        return correlation

    def update(self, correlation: Correlation):
        """Rewrite ids and fingerprints of an existing correlation."""
        try:
            with _transaction(self.conn):
                self.conn.execute(
                    "UPDATE correlations SET "
                    "local_collection_id = ?, local_object_id = ?, local_fingerprint = ?, "
                    "remote_collection_id = ?, remote_object_id = ?, remote_fingerprint = ?, "
                    "last_sync_at = ? "
                    "WHERE id = ?",
                    (
                        correlation.local_collection_id,
                        correlation.local_object_id,
                        correlation.local_fingerprint,
                        correlation.remote_collection_id,
                        correlation.remote_object_id,
                        correlation.remote_fingerprint,
                        int(time.time()),
                        correlation.id,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise CorrelationConflictError(
                f"Correlation {correlation.id} would collide with an existing link: {e}"
            ) from e

    def delete(self, correlation: Correlation):
        """Delete a single correlation row."""
        with _transaction(self.conn):
            self.conn.execute("DELETE FROM correlations WHERE id = ?", (correlation.id,))

    def delete_all_by_affiliation(self, user_id: str, affiliation_id: str) -> int:
        """Delete every correlation of a pairing in one transaction."""
        with _transaction(self.conn, immediate=True):
            cursor = self.conn.execute(
                "DELETE FROM correlations WHERE user_id = ? AND affiliation_id = ?",
                (user_id, affiliation_id),
            )
        return cursor.rowcount

    # ------------------------------------------------------------------ #
    # Collection correlations (pairings)                                  #
    # ------------------------------------------------------------------ #

    def create_collection(self, pairing: CollectionCorrelation) -> CollectionCorrelation:
        timestamp = int(time.time())
        try:
            with _transaction(self.conn):
                cursor = self.conn.execute(
                    "INSERT INTO collection_correlations "
                    "(user_id, local_collection_id, remote_collection_id, "
                    " local_resume_token, remote_resume_token, created_at, last_sync_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        pairing.user_id,
                        pairing.local_collection_id,
                        pairing.remote_collection_id,
                        pairing.local_resume_token,
                        pairing.remote_resume_token,
                        timestamp,
                        timestamp,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise CorrelationConflictError(
                f"Calendars {pairing.local_collection_id} and {pairing.remote_collection_id} "
                f"are already paired: {e}"
            ) from e
        pairing.affiliation_id = str(cursor.lastrowid)
        return pairing

    def update_collection(self, pairing: CollectionCorrelation):
        """Persist both resume tokens of a pairing."""
        with _transaction(self.conn):
            self.conn.execute(
                "UPDATE collection_correlations "
                "SET local_resume_token = ?, remote_resume_token = ?, last_sync_at = ? "
                "WHERE id = ?",
                (
                    pairing.local_resume_token,
                    pairing.remote_resume_token,
                    int(time.time()),
                    int(pairing.affiliation_id),
                ),
            )

    def get_collection(self, affiliation_id: str) -> CollectionCorrelation | None:
        if not str(affiliation_id).isdigit():
            return None
        row = self.conn.execute(
            "SELECT * FROM collection_correlations WHERE id = ?", (int(affiliation_id),)
        ).fetchone()
        return _row_to_collection(row) if row else None

    def list_collections(self, user_id: str) -> list[CollectionCorrelation]:
        cursor = self.conn.execute(
            "SELECT * FROM collection_correlations WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [_row_to_collection(row) for row in cursor.fetchall()]

    def remove_pairing(self, pairing: CollectionCorrelation) -> int:
        """Delete a pairing together with all of its correlations and queued actions.

        Either everything goes or nothing does; a concurrent reader never sees
        the pairing without its children or the children without the pairing.
        """
        with _transaction(self.conn, immediate=True):
            cursor = self.conn.execute(
                "DELETE FROM correlations WHERE user_id = ? AND affiliation_id = ?",
                (pairing.user_id, pairing.affiliation_id),
            )
            removed = cursor.rowcount
            self.conn.execute(
                "DELETE FROM actions WHERE user_id = ? AND local_collection_id = ?",
                (pairing.user_id, pairing.local_collection_id),
            )
            self.conn.execute(
                "DELETE FROM collection_correlations WHERE id = ?",
                (int(pairing.affiliation_id),),
            )
        return removed

    # ------------------------------------------------------------------ #
    # Pass leases                                                         #
    # ------------------------------------------------------------------ #

    def acquire_lease(self, affiliation_id: str, holder: str, ttl: float) -> bool:
        """Take the pass lease for a pairing; False if a live lease is held by someone else."""
        now = time.time()
        with _transaction(self.conn, immediate=True):
            row = self.conn.execute(
                "SELECT holder, expires_at FROM leases WHERE affiliation_id = ?",
                (affiliation_id,),
            ).fetchone()
            if row and row["holder"] != holder and row["expires_at"] > now:
                return False
            self.conn.execute(
                "INSERT INTO leases (affiliation_id, holder, expires_at) VALUES (?, ?, ?) "
                "ON CONFLICT(affiliation_id) DO UPDATE SET "
                "holder = excluded.holder, expires_at = excluded.expires_at",
                (affiliation_id, holder, now + ttl),
            )
        return True

    def release_lease(self, affiliation_id: str, holder: str):
        with _transaction(self.conn):
            self.conn.execute(
                "DELETE FROM leases WHERE affiliation_id = ? AND holder = ?",
                (affiliation_id, holder),
            )

    @contextmanager
    def lease(self, affiliation_id: str, ttl: float):
        """Hold the pass lease for the duration of the block."""
        holder = uuid.uuid4().hex
        if not self.acquire_lease(affiliation_id, holder, ttl):
            raise LeaseUnavailableError(
                f"Pairing {affiliation_id} is already being harmonized by another pass"
            )
        try:
            yield holder
        finally:
            self.release_lease(affiliation_id, holder)

    # ------------------------------------------------------------------ #
    # Pending actions                                                     #
    # ------------------------------------------------------------------ #

    def enqueue_action(self, action: PendingAction) -> PendingAction:
        if not action.created_on:
            action.created_on = int(time.time())
        with _transaction(self.conn):
            cursor = self.conn.execute(
                "INSERT INTO actions "
                "(user_id, type, action, origin, local_collection_id, local_object_id, created_on) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    action.user_id,
                    action.type,
                    action.action,
                    action.origin,
                    action.local_collection_id,
                    action.local_object_id,
                    action.created_on,
                ),
            )
        action.id = cursor.lastrowid
        return action

    def pending_deletes(
        self, user_id: str, type_: str, local_collection_id: str
    ) -> list[PendingAction]:
        """Queued local deletions for a collection, oldest first."""
        cursor = self.conn.execute(
            "SELECT * FROM actions "
            "WHERE user_id = ? AND type = ? AND local_collection_id = ? "
            "AND action = 'D' AND origin = 'L' ORDER BY id",
            (user_id, type_, local_collection_id),
        )
        return [
            PendingAction(
                id=row["id"],
                user_id=row["user_id"],
                type=row["type"],
                action=row["action"],
                origin=row["origin"],
                local_collection_id=row["local_collection_id"],
                local_object_id=row["local_object_id"],
                created_on=row["created_on"],
            )
            for row in cursor.fetchall()
        ]

    def consume_actions(self, action_ids: list[int]):
        if not action_ids:
            return
        with _transaction(self.conn):
            self.conn.executemany("DELETE FROM actions WHERE id = ?", [(i,) for i in action_ids])


class ChangeJournal:
    """Token-addressed snapshots of a collection, used to derive a change feed.

    EDS exposes no incremental change log, so each enumeration records the
    current ``{object_id: fingerprint}`` map under a fresh token and diffs it
    against the snapshot of the token it was given.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def diff(self, collection_id: str, token: str, current: dict[str, str]) -> ChangeSet:
        previous = self._load(collection_id, token)
        changes = ChangeSet()
        if previous is None:
            if token:
                logger.warning(
                    f"Unknown resume token for {collection_id}; falling back to full enumeration"
                )
            changes.added = sorted(current)
        else:
            for object_id, fingerprint in current.items():
                if object_id not in previous:
                    changes.added.append(object_id)
                elif previous[object_id] != fingerprint:
                    changes.modified.append(object_id)
            changes.deleted = [oid for oid in previous if oid not in current]
        changes.next_token = self._record(collection_id, token, current)
        return changes

    def _load(self, collection_id: str, token: str) -> dict[str, str] | None:
        if not token:
            return None
        known = self.conn.execute(
            "SELECT 1 FROM snapshot_tokens WHERE collection_id = ? AND token = ?",
            (collection_id, token),
        ).fetchone()
        if not known:
            return None
        cursor = self.conn.execute(
            "SELECT object_id, fingerprint FROM snapshot_entries "
            "WHERE collection_id = ? AND token = ?",
            (collection_id, token),
        )
        return {row["object_id"]: row["fingerprint"] for row in cursor.fetchall()}

    def _record(self, collection_id: str, base_token: str, current: dict[str, str]) -> str:
        """Store a new snapshot and prune every snapshot except it and its base."""
        token = uuid.uuid4().hex
        keep = (token, base_token)
        with _transaction(self.conn):
            self.conn.execute(
                "INSERT INTO snapshot_tokens (collection_id, token, created_at) VALUES (?, ?, ?)",
                (collection_id, token, time.time()),
            )
            self.conn.executemany(
                "INSERT INTO snapshot_entries (collection_id, token, object_id, fingerprint) "
                "VALUES (?, ?, ?, ?)",
                [(collection_id, token, oid, fp) for oid, fp in current.items()],
            )
            # The base stays until a newer token is handed back to us, so an
            # unpersisted token never loses the last durable checkpoint.
            self.conn.execute(
                "DELETE FROM snapshot_entries WHERE collection_id = ? AND token NOT IN (?, ?)",
                (collection_id, *keep),
            )
            self.conn.execute(
                "DELETE FROM snapshot_tokens WHERE collection_id = ? AND token NOT IN (?, ?)",
                (collection_id, *keep),
            )
        return token


def query_status(db_path: Path) -> list:
    """
    Return one aggregate row per pairing recorded in the database.

    Each row exposes: id, user_id, local_collection_id, remote_collection_id,
    correlations, pending, last_sync_at. Returns an empty list when the DB file
    does not exist or has no pairing table yet.
    """
    if not db_path.exists():
        return []
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        if "collection_correlations" not in tables:
            return []
        cursor = conn.execute("""
            SELECT
                cc.id,
                cc.user_id,
                cc.local_collection_id,
                cc.remote_collection_id,
                (SELECT COUNT(*) FROM correlations c
                  WHERE c.user_id = cc.user_id
                    AND c.affiliation_id = CAST(cc.id AS TEXT)) AS correlations,
                (SELECT COUNT(*) FROM actions a
                  WHERE a.user_id = cc.user_id
                    AND a.local_collection_id = cc.local_collection_id) AS pending,
                cc.last_sync_at
            FROM collection_correlations cc
            ORDER BY cc.id
        """)
        return cursor.fetchall()
    finally:
        conn.close()
