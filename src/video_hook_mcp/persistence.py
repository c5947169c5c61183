"""SQLite-backed queue metadata persistence with WAL mode.

Only bookkeeping is stored: item metadata, the last quota snapshot, the
running statistics and the terminal analysis results. Video bytes and file
handles are never written.
Every public method is best-effort: storage failures are logged and
reported as "nothing saved" / "nothing to restore".
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from .models.analysis import AnalysisResult, PersistedQueueState, PersistedResults

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS queue_state (
    queue_key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    saved_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS queue_results (
    queue_key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    saved_at TEXT NOT NULL
);
"""


class QueueStateDB:
    """Synchronous SQLite store for queue metadata, one row per queue key.

    Writes are small (<1ms with WAL) so the scheduler saves after every
    state change from the event loop thread.
    """

    def __init__(self, db_path: str) -> None:
        self._conn: sqlite3.Connection | None = None
        try:
            path = Path(db_path).expanduser().resolve()
            path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(path))
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.executescript(_SCHEMA)
            self._conn = conn
        except (OSError, sqlite3.Error):
            logger.warning("Queue state DB unavailable at %s — not persisting", db_path, exc_info=True)

    @property
    def available(self) -> bool:
        return self._conn is not None

    def save(self, key: str, state: PersistedQueueState) -> bool:
        """Write *state* under *key*. Returns False if nothing was stored."""
        if self._conn is None:
            return False
        saved_at = datetime.now(timezone.utc)
        state = state.model_copy(update={"saved_at": saved_at})
        try:
            self._conn.execute(
                "INSERT OR REPLACE INTO queue_state (queue_key, payload, saved_at) VALUES (?, ?, ?)",
                (key, state.model_dump_json(), saved_at.isoformat()),
            )
            self._conn.commit()
        except sqlite3.Error:
            logger.warning("Failed to save queue state %r", key, exc_info=True)
            return False
        return True

    def load(self, key: str) -> PersistedQueueState | None:
        """Read the state stored under *key*, or None when absent or unreadable."""
        if self._conn is None:
            return None
        try:
            row = self._conn.execute(
                "SELECT payload FROM queue_state WHERE queue_key = ?", (key,),
            ).fetchone()
        except sqlite3.Error:
            logger.warning("Failed to read queue state %r", key, exc_info=True)
            return None
        if row is None:
            return None
        try:
            return PersistedQueueState.model_validate_json(row[0])
        except ValidationError:
            logger.warning("Discarding corrupt queue state %r", key)
            return None

    def save_results(self, key: str, results: list[AnalysisResult]) -> bool:
        """Replace the results stored under *key*. Returns False if nothing was stored."""
        if self._conn is None:
            return False
        record = PersistedResults(results=results)
        try:
            self._conn.execute(
                "INSERT OR REPLACE INTO queue_results (queue_key, payload, saved_at) VALUES (?, ?, ?)",
                (key, record.model_dump_json(), record.saved_at.isoformat()),
            )
            self._conn.commit()
        except sqlite3.Error:
            logger.warning("Failed to save results %r", key, exc_info=True)
            return False
        return True

    def load_results(self, key: str) -> list[AnalysisResult]:
        """Results stored under *key*; empty when absent or unreadable."""
        if self._conn is None:
            return []
        try:
            row = self._conn.execute(
                "SELECT payload FROM queue_results WHERE queue_key = ?", (key,),
            ).fetchone()
        except sqlite3.Error:
            logger.warning("Failed to read results %r", key, exc_info=True)
            return []
        if row is None:
            return []
        try:
            return PersistedResults.model_validate_json(row[0]).results
        except ValidationError:
            logger.warning("Discarding corrupt results %r", key)
            return []

    def delete(self, key: str) -> bool:
        """Delete the stored state. Returns True if a row was removed."""
        if self._conn is None:
            return False
        try:
            cursor = self._conn.execute("DELETE FROM queue_state WHERE queue_key = ?", (key,))
            self._conn.execute("DELETE FROM queue_results WHERE queue_key = ?", (key,))
            self._conn.commit()
        except sqlite3.Error:
            logger.warning("Failed to delete queue state %r", key, exc_info=True)
            return False
        return cursor.rowcount > 0

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
