"""
Persistence for holder snapshots, holder events, staking transfers, actor
ledgers and the transaction fetch cursor.

SQLite via SnapshotStore / get_database(); the backend is swappable by
implementing SnapshotStore. Every public call runs in one transaction: it
either commits entirely or is rolled back and raises StorageError.
"""

from __future__ import annotations

import json
import sqlite3
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Mapping

from backend_stakewatch.core.exceptions import SnapshotNotFoundError, StorageError
from backend_stakewatch.database.models import SnapshotInfo
from backend_stakewatch.snapshots.models import HolderEvent, HolderSnapshot
from backend_stakewatch.solana_listener.models import TransferRecord
from backend_stakewatch.staking.models import ActorLedger
from backend_stakewatch.stakewatch_logging import get_logger

logger = get_logger(__name__)

# -----------------------------------------------------------------------------
# Schema (SQLite)
# -----------------------------------------------------------------------------

SCHEMA_SNAPSHOTS = """
CREATE TABLE IF NOT EXISTS snapshots (
    snapshot_id INTEGER PRIMARY KEY,
    taken_at INTEGER NOT NULL,
    holder_count INTEGER NOT NULL,
    created_at INTEGER
);
CREATE TABLE IF NOT EXISTS holder_snapshots (
    snapshot_id INTEGER NOT NULL,
    actor TEXT NOT NULL,
    kind TEXT NOT NULL,
    balance REAL,
    assets_json TEXT,
    timestamp INTEGER NOT NULL,
    PRIMARY KEY (snapshot_id, actor, kind),
    FOREIGN KEY (snapshot_id) REFERENCES snapshots(snapshot_id) ON DELETE CASCADE
);
"""

SCHEMA_HOLDER_EVENTS = """
CREATE TABLE IF NOT EXISTS holder_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    snapshot_id INTEGER NOT NULL,
    seq INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    source_actor TEXT,
    dest_actor TEXT,
    amount REAL,
    asset_id TEXT,
    previous_balance REAL,
    new_balance REAL,
    same_group INTEGER NOT NULL DEFAULT 0,
    timestamp INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_holder_events_snapshot ON holder_events(snapshot_id, seq);
"""

SCHEMA_STAKING = """
CREATE TABLE IF NOT EXISTS staking_transfers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tx_signature TEXT NOT NULL,
    actor TEXT NOT NULL,
    direction TEXT NOT NULL,
    amount REAL NOT NULL,
    timestamp INTEGER NOT NULL,
    leg INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER,
    UNIQUE(tx_signature, actor, direction, leg)
);
CREATE INDEX IF NOT EXISTS ix_staking_transfers_actor ON staking_transfers(actor, timestamp);
CREATE TABLE IF NOT EXISTS actor_ledgers (
    actor TEXT PRIMARY KEY,
    evaluated_at INTEGER NOT NULL,
    total_staked REAL NOT NULL,
    total_locked REAL NOT NULL,
    total_unlocked REAL NOT NULL,
    shortfall REAL NOT NULL,
    ledger_json TEXT NOT NULL,
    updated_at INTEGER
);
CREATE TABLE IF NOT EXISTS fetch_cursors (
    address TEXT PRIMARY KEY,
    signature TEXT NOT NULL,
    updated_at INTEGER
);
"""

_KIND_FUNGIBLE = "fungible"
_KIND_NFT = "nft"


# -----------------------------------------------------------------------------
# Abstract store
# -----------------------------------------------------------------------------


class SnapshotStore(ABC):
    """Persistence interface used by the runners."""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        ...

    @abstractmethod
    def save_snapshot(self, snapshot_id: int, holders: Iterable[HolderSnapshot], *, taken_at: int | None = None) -> None:
        """Store (or replace) the full holder set of one snapshot."""
        ...

    @abstractmethod
    def load_snapshot(self, snapshot_id: int) -> list[HolderSnapshot]:
        """Holder set of one snapshot; SnapshotNotFoundError if unknown."""
        ...

    @abstractmethod
    def list_snapshots(self) -> list[SnapshotInfo]:
        """Stored snapshot headers, oldest first."""
        ...

    @abstractmethod
    def save_events(self, snapshot_id: int, events: Iterable[HolderEvent]) -> int:
        """Replace the event set of one snapshot atomically. Returns count stored."""
        ...

    @abstractmethod
    def load_events(self, snapshot_id: int) -> list[HolderEvent]:
        """Events of one snapshot in the order they were saved."""
        ...

    @abstractmethod
    def save_transfers(self, records: Iterable[TransferRecord]) -> int:
        """Append transfers; duplicates (signature, actor, direction, leg) are ignored. Returns count inserted."""
        ...

    @abstractmethod
    def load_transfers(self, actor: str | None = None) -> list[TransferRecord]:
        """Transfer history, oldest first."""
        ...

    @abstractmethod
    def save_ledger(self, actor: str, ledger: ActorLedger) -> None:
        """Store (or replace) an actor's ledger."""
        ...

    def save_ledgers(self, ledgers: Mapping[str, ActorLedger]) -> None:
        """Store every ledger of a run."""
        for actor, ledger in ledgers.items():
            self.save_ledger(actor, ledger)

    @abstractmethod
    def load_ledgers(self) -> dict[str, ActorLedger]:
        """All stored ledgers keyed by actor."""
        ...

    @abstractmethod
    def load_cursor(self) -> dict[str, str]:
        """address -> newest ingested signature."""
        ...

    @abstractmethod
    def save_cursor(self, cursor: Mapping[str, str]) -> None:
        """Upsert cursor entries."""
        ...


# -----------------------------------------------------------------------------
# SQLite backend
# -----------------------------------------------------------------------------


class SQLiteBackend(SnapshotStore):
    """SQLite implementation; single file, one connection per operation."""

    def __init__(self, path: str | Path, *, timeout_sec: float = 5.0) -> None:
        self._path = Path(path)
        self._timeout_sec = timeout_sec

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path), timeout=self._timeout_sec)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise StorageError(f"cannot open {self._path}: {e}") from e
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("storage_error", path=str(self._path), error=str(e))
            raise StorageError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            for stmt in (SCHEMA_SNAPSHOTS, SCHEMA_HOLDER_EVENTS, SCHEMA_STAKING):
                cur.executescript(stmt)

    # --- Snapshots ---

    def save_snapshot(self, snapshot_id: int, holders: Iterable[HolderSnapshot], *, taken_at: int | None = None) -> None:
        items = list(holders)
        if taken_at is None:
            stamps = [h.timestamp for h in items if h.timestamp is not None]
            taken_at = max(stamps) if stamps else int(time.time())
        now = int(time.time())
        rows = []
        for h in items:
            if h.is_fungible:
                rows.append((snapshot_id, h.actor, _KIND_FUNGIBLE, float(h.asset_position), None, h.timestamp))
            else:
                rows.append((snapshot_id, h.actor, _KIND_NFT, None, json.dumps(sorted(h.asset_position)), h.timestamp))
        with self._cursor() as cur:
            cur.execute("DELETE FROM holder_snapshots WHERE snapshot_id = ?", (snapshot_id,))
            cur.execute(
                """
                INSERT INTO snapshots (snapshot_id, taken_at, holder_count, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(snapshot_id) DO UPDATE SET
                    taken_at = excluded.taken_at,
                    holder_count = excluded.holder_count
                """,
                (snapshot_id, taken_at, len(items), now),
            )
            cur.executemany(
                """
                INSERT INTO holder_snapshots (snapshot_id, actor, kind, balance, assets_json, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def load_snapshot(self, snapshot_id: int) -> list[HolderSnapshot]:
        with self._cursor() as cur:
            cur.execute("SELECT 1 FROM snapshots WHERE snapshot_id = ?", (snapshot_id,))
            if cur.fetchone() is None:
                raise SnapshotNotFoundError(snapshot_id)
            cur.execute(
                "SELECT actor, kind, balance, assets_json, timestamp FROM holder_snapshots "
                "WHERE snapshot_id = ? ORDER BY actor, kind",
                (snapshot_id,),
            )
            rows = cur.fetchall()
        return [
            HolderSnapshot.from_dict(
                {
                    "actor": row["actor"],
                    "asset_position": (
                        json.loads(row["assets_json"] or "[]") if row["kind"] == _KIND_NFT else row["balance"]
                    ),
                    "timestamp": row["timestamp"],
                }
            )
            for row in rows
        ]

    def list_snapshots(self) -> list[SnapshotInfo]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT snapshot_id, taken_at, holder_count, created_at FROM snapshots ORDER BY taken_at, snapshot_id"
            )
            rows = cur.fetchall()
        return [
            SnapshotInfo(
                snapshot_id=row["snapshot_id"],
                taken_at=row["taken_at"],
                holder_count=row["holder_count"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # --- Holder events ---

    def save_events(self, snapshot_id: int, events: Iterable[HolderEvent]) -> int:
        rows = [
            {**e.to_dict(), "snapshot_id": snapshot_id, "seq": seq, "same_group": 1 if e.same_group else 0}
            for seq, e in enumerate(events)
        ]
        with self._cursor() as cur:
            cur.execute("DELETE FROM holder_events WHERE snapshot_id = ?", (snapshot_id,))
            cur.executemany(
                """
                INSERT INTO holder_events (snapshot_id, seq, event_type, source_actor, dest_actor, amount,
                    asset_id, previous_balance, new_balance, same_group, timestamp)
                VALUES (:snapshot_id, :seq, :type, :source_actor, :dest_actor, :amount,
                    :asset_id, :previous_balance, :new_balance, :same_group, :timestamp)
                """,
                rows,
            )
        return len(rows)

    def load_events(self, snapshot_id: int) -> list[HolderEvent]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT event_type AS type, source_actor, dest_actor, amount, asset_id, snapshot_id,
                    previous_balance, new_balance, same_group, timestamp
                FROM holder_events WHERE snapshot_id = ? ORDER BY seq
                """,
                (snapshot_id,),
            )
            rows = cur.fetchall()
        return [HolderEvent.from_dict(dict(row)) for row in rows]

    # --- Staking transfers and ledgers ---

    def save_transfers(self, records: Iterable[TransferRecord]) -> int:
        now = int(time.time())
        inserted = 0
        with self._cursor() as cur:
            for r in records:
                # (tx_signature, actor, direction, leg) identifies a transfer; refetched ones are ignored
                cur.execute(
                    """
                    INSERT OR IGNORE INTO staking_transfers
                        (tx_signature, actor, direction, amount, timestamp, leg, created_at)
                    VALUES (:tx_signature, :actor, :direction, :amount, :timestamp, :leg, :created_at)
                    """,
                    {**r.to_dict(), "created_at": now},
                )
                inserted += cur.rowcount
        return inserted

    def load_transfers(self, actor: str | None = None) -> list[TransferRecord]:
        sql = "SELECT tx_signature, actor, direction, amount, timestamp, leg FROM staking_transfers"
        params: list[str] = []
        if actor is not None:
            sql += " WHERE actor = ?"
            params.append(actor)
        sql += " ORDER BY timestamp, id"
        with self._cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [TransferRecord.from_dict(dict(row)) for row in rows]

    def save_ledger(self, actor: str, ledger: ActorLedger) -> None:
        if ledger.actor != actor:
            raise ValueError(f"ledger belongs to {ledger.actor}, not {actor}")
        now = int(time.time())
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO actor_ledgers (actor, evaluated_at, total_staked, total_locked, total_unlocked,
                    shortfall, ledger_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(actor) DO UPDATE SET
                    evaluated_at = excluded.evaluated_at,
                    total_staked = excluded.total_staked,
                    total_locked = excluded.total_locked,
                    total_unlocked = excluded.total_unlocked,
                    shortfall = excluded.shortfall,
                    ledger_json = excluded.ledger_json,
                    updated_at = excluded.updated_at
                """,
                (
                    actor,
                    ledger.evaluated_at,
                    ledger.total_staked,
                    ledger.total_locked,
                    ledger.total_unlocked,
                    ledger.shortfall,
                    json.dumps(ledger.to_dict()),
                    now,
                ),
            )

    def load_ledgers(self) -> dict[str, ActorLedger]:
        with self._cursor() as cur:
            cur.execute("SELECT actor, ledger_json FROM actor_ledgers ORDER BY actor")
            rows = cur.fetchall()
        return {row["actor"]: ActorLedger.from_dict(json.loads(row["ledger_json"])) for row in rows}

    # --- Fetch cursor ---

    def load_cursor(self) -> dict[str, str]:
        with self._cursor() as cur:
            cur.execute("SELECT address, signature FROM fetch_cursors")
            return {row["address"]: row["signature"] for row in cur.fetchall()}

    def save_cursor(self, cursor: Mapping[str, str]) -> None:
        now = int(time.time())
        with self._cursor() as cur:
            cur.executemany(
                """
                INSERT INTO fetch_cursors (address, signature, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET signature = excluded.signature, updated_at = excluded.updated_at
                """,
                [(address, sig, now) for address, sig in cursor.items()],
            )


# -----------------------------------------------------------------------------
# Database facade
# -----------------------------------------------------------------------------


class Database(SnapshotStore):
    """
    Single entrypoint over a SnapshotStore backend (SQLite by default).

    Adds conveniences used by the runners on top of the raw store calls.
    """

    def __init__(self, backend: SnapshotStore) -> None:
        self._backend = backend

    def ensure_schema(self) -> None:
        self._backend.ensure_schema()

    # --- Snapshots ---

    def save_snapshot(self, snapshot_id: int, holders: Iterable[HolderSnapshot], *, taken_at: int | None = None) -> None:
        self._backend.save_snapshot(snapshot_id, holders, taken_at=taken_at)

    def load_snapshot(self, snapshot_id: int) -> list[HolderSnapshot]:
        return self._backend.load_snapshot(snapshot_id)

    def list_snapshots(self) -> list[SnapshotInfo]:
        return self._backend.list_snapshots()

    # --- Holder events ---

    def save_events(self, snapshot_id: int, events: Iterable[HolderEvent]) -> int:
        return self._backend.save_events(snapshot_id, events)

    def load_events(self, snapshot_id: int) -> list[HolderEvent]:
        return self._backend.load_events(snapshot_id)

    # --- Staking ---

    def save_transfers(self, records: Iterable[TransferRecord]) -> int:
        return self._backend.save_transfers(records)

    def load_transfers(self, actor: str | None = None) -> list[TransferRecord]:
        return self._backend.load_transfers(actor)

    def save_ledger(self, actor: str, ledger: ActorLedger) -> None:
        self._backend.save_ledger(actor, ledger)

    def save_ledgers(self, ledgers: Mapping[str, ActorLedger]) -> None:
        self._backend.save_ledgers(ledgers)

    def load_ledgers(self) -> dict[str, ActorLedger]:
        return self._backend.load_ledgers()

    def load_cursor(self) -> dict[str, str]:
        return self._backend.load_cursor()

    def save_cursor(self, cursor: Mapping[str, str]) -> None:
        self._backend.save_cursor(cursor)


def get_database(path: str | Path | None = None) -> Database:
    """
    Return a ready Database (SQLite, schema ensured).

    path: SQLite file. Default: STAKEWATCH_DB_PATH from settings.
    """
    if path is None:
        from backend_stakewatch.config.settings import get_settings

        path = get_settings().db_path
    backend = SQLiteBackend(path)
    db = Database(backend)
    db.ensure_schema()
    logger.debug("database_ready", path=str(path))
    return db
