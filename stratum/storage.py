"""
Stratum state store

Durable snapshot of applied resource records, the diff baseline of every
plan. The SQLite backend keeps one connection in WAL mode guarded by a
re-entrant lock; every write is its own ``BEGIN IMMEDIATE`` transaction that
also bumps the snapshot serial, so a crash mid-apply leaves exactly the
records of operations that completed.

Writers serialize per node through ``lock(node_id)``; unrelated nodes never
contend on anything but the short SQLite critical section.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from stratum.error_msg import StateError, StateFormatError

logger = logging.getLogger("stratum.storage")

STATE_FORMAT_VERSION = 1


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class DeposedObject(BaseModel):
    """A replaced object whose destroy has not completed yet."""

    resource_id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)


class StateRecord(BaseModel):
    """Last applied state of one node."""

    node_id: str
    resource_type: str
    provider: str = ""
    resource_id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    computed: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    tainted: bool = False
    deposed: List[DeposedObject] = Field(default_factory=list)
    applied_at: Optional[str] = None


class StateSnapshot(BaseModel):
    """Versioned, serializable view of every record."""

    version: int = STATE_FORMAT_VERSION
    serial: int = 0
    lineage: str = ""
    records: Dict[str, StateRecord] = Field(default_factory=dict)

    def get(self, node_id: str) -> Optional[StateRecord]:
        return self.records.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.records

    def __len__(self) -> int:
        return len(self.records)


class StateStore(ABC):
    """Load/Save/Remove contract shared by every backend."""

    def __init__(self) -> None:
        self._node_locks: Dict[str, threading.RLock] = {}
        self._node_locks_guard = threading.Lock()

    @contextmanager
    def lock(self, node_id: str) -> Iterator[None]:
        """Exclusive per-node section: one writer per node identifier."""
        with self._node_locks_guard:
            node_lock = self._node_locks.setdefault(node_id, threading.RLock())
        with node_lock:
            yield

    @abstractmethod
    def load(self) -> StateSnapshot:
        ...

    @abstractmethod
    def save(self, node_id: str, record: StateRecord) -> None:
        ...

    @abstractmethod
    def remove(self, node_id: str) -> bool:
        """Drop the record of ``node_id``; True when one existed."""

    @abstractmethod
    def import_snapshot(self, snapshot: StateSnapshot) -> None:
        ...

    def remove_object(self, node_id: str, resource_id: str) -> None:
        """Forget the object ``resource_id``: a deposed object, or the record that owns it."""
        with self.lock(node_id):
            record = self.load().get(node_id)
            if record is None:
                return
            if record.resource_id == resource_id:
                self.remove(node_id)
                return
            remaining = [obj for obj in record.deposed if obj.resource_id != resource_id]
            if len(remaining) != len(record.deposed):
                self.save(node_id, record.model_copy(update={"deposed": remaining}))

    def export(self) -> Dict[str, Any]:
        return self.load().model_dump(mode="json")

    def import_data(self, data: Dict[str, Any]) -> None:
        version = data.get("version", STATE_FORMAT_VERSION)
        if version > STATE_FORMAT_VERSION:
            raise StateFormatError(
                f"State format version {version} is newer than supported version {STATE_FORMAT_VERSION}"
            )
        try:
            snapshot = StateSnapshot.model_validate(data)
        except ValidationError as e:
            raise StateFormatError(f"Invalid state snapshot: {e}") from e
        self.import_snapshot(snapshot)

    def close(self) -> None:
        pass


class SQLiteStateStore(StateStore):
    """State store on a single SQLite connection in WAL mode."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        super().__init__()
        if db_path is None:
            db_path = Path.home() / ".stratum" / "state.db"
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection_lock = threading.RLock()
        self._connection = self._connect()
        self._init_database()
        logger.debug("State store initialized: %s", self.db_path)

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            isolation_level=None,  # explicit transactions only
            timeout=5.0,
        )
        connection.execute("PRAGMA journal_mode=WAL")
        connection.execute("PRAGMA synchronous=FULL")
        connection.execute("PRAGMA busy_timeout=5000")
        return connection

    def _init_database(self) -> None:
        with self._connection_lock:
            conn = self._connection
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    node_id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            meta = self._read_meta()
            if "version" not in meta:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.executemany(
                        "INSERT OR IGNORE INTO meta (key, value) VALUES (?, ?)",
                        [
                            ("version", str(STATE_FORMAT_VERSION)),
                            ("serial", "0"),
                            ("lineage", str(uuid.uuid4())),
                        ],
                    )
                    conn.execute("COMMIT")
                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    raise
                meta = self._read_meta()

            version = int(meta["version"])
            if version > STATE_FORMAT_VERSION:
                raise StateFormatError(
                    f"{self.db_path} uses state format {version}; "
                    f"this version supports up to {STATE_FORMAT_VERSION}"
                )

    def _read_meta(self) -> Dict[str, str]:
        rows = self._connection.execute("SELECT key, value FROM meta").fetchall()
        return {key: value for key, value in rows}

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connection_lock:
            conn = self._connection
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("UPDATE meta SET value = CAST(value AS INTEGER) + 1 WHERE key = 'serial'")
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    def load(self) -> StateSnapshot:
        with self._connection_lock:
            conn = self._connection
            conn.execute("BEGIN")
            try:
                meta = self._read_meta()
                rows = conn.execute("SELECT node_id, payload FROM records ORDER BY node_id").fetchall()
            finally:
                conn.execute("COMMIT")

        records: Dict[str, StateRecord] = {}
        for node_id, payload in rows:
            try:
                records[node_id] = StateRecord.model_validate_json(payload)
            except ValidationError as e:
                raise StateError(f"Corrupt state record for {node_id}: {e}") from e
        return StateSnapshot(
            version=int(meta.get("version", STATE_FORMAT_VERSION)),
            serial=int(meta.get("serial", 0)),
            lineage=meta.get("lineage", ""),
            records=records,
        )

    def save(self, node_id: str, record: StateRecord) -> None:
        payload = record.model_dump_json()
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO records (node_id, payload, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
                (node_id, payload),
            )
        logger.debug("Saved state record %s (%s)", node_id, record.resource_id)

    def remove(self, node_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM records WHERE node_id = ?", (node_id,))
            removed = cursor.rowcount > 0
        logger.debug("Removed state record %s: %s", node_id, removed)
        return removed

    def import_snapshot(self, snapshot: StateSnapshot) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM records")
            conn.executemany(
                "INSERT INTO records (node_id, payload) VALUES (?, ?)",
                [(node_id, record.model_dump_json()) for node_id, record in snapshot.records.items()],
            )
            if snapshot.lineage:
                conn.execute("UPDATE meta SET value = ? WHERE key = 'lineage'", (snapshot.lineage,))
        logger.info("Imported %d state records", len(snapshot.records))

    def close(self) -> None:
        with self._connection_lock:
            self._connection.close()


class InMemoryStateStore(SQLiteStateStore):
    """Shared-cache in-memory SQLite database, private to this instance."""

    def __init__(self) -> None:
        self._uri = f"file:stratum-{uuid.uuid4().hex}?mode=memory&cache=shared"
        super().__init__(db_path=Path(":memory:"))

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(
            self._uri,
            uri=True,
            check_same_thread=False,
            isolation_level=None,
        )
