"""Durable copies of the session.

The hub only needs ``load`` and ``save``. Both may fail; callers decide
whether a failure matters.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from amidakuji.session import SessionSnapshot


class StoreError(RuntimeError):
    """The store is unreachable or holds data that cannot be read."""


@runtime_checkable
class StateStore(Protocol):
    """Both methods report failures by raising :class:`StoreError`."""

    def load(self) -> SessionSnapshot | None: ...

    def save(self, snapshot: SessionSnapshot) -> None: ...


class MemoryStateStore:
    """Keeps the last saved snapshot in memory. Handy for tests and demos."""

    def __init__(self, snapshot: SessionSnapshot | None = None):
        self.snapshot = snapshot
        self.saves = 0

    def load(self) -> SessionSnapshot | None:
        return self.snapshot

    def save(self, snapshot: SessionSnapshot) -> None:
        self.snapshot = snapshot
        self.saves += 1


class SqliteStateStore:
    """Single-row SQLite table holding the session as JSON.

    Saves come from worker threads, so the connection is shared behind a lock.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreError(f"Could not open {self.path}: {exc}") from exc
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._create_tables()
        except sqlite3.Error as exc:
            self._conn.close()
            raise StoreError(f"Could not open {self.path}: {exc}") from exc

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS session (
                id          INTEGER PRIMARY KEY CHECK (id = 1),
                state       TEXT NOT NULL,
                version     INTEGER NOT NULL,
                updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
        """)
        self._conn.commit()

    def load(self) -> SessionSnapshot | None:
        """Return the stored snapshot, or ``None`` if nothing was saved yet."""
        try:
            with self._lock:
                row = self._conn.execute("SELECT state FROM session WHERE id = 1").fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Could not read {self.path}: {exc}") from exc
        if row is None:
            return None
        try:
            return SessionSnapshot.from_dict(json.loads(row[0]))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise StoreError(f"Stored session in {self.path} is corrupt: {exc}") from exc

    def save(self, snapshot: SessionSnapshot) -> None:
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT INTO session (id, state, version) VALUES (1, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET state = excluded.state, "
                    "version = excluded.version, updated_at = CURRENT_TIMESTAMP",
                    (json.dumps(snapshot.to_dict()), snapshot.version),
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"Could not write {self.path}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()
