"""Durable connector state: watermarks, cursors, delivery ledger and dead letters."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from ..config import Config
from ..errors import StateStoreError
from .models import SyncState

logger = logging.getLogger(__name__)


@dataclass
class DeadLetter:
    """A posting set aside after failing validation or delivery."""

    id: int
    posting_id: str
    sequence: int
    reason: str
    payload: dict
    created_at: datetime

    @classmethod
    def from_row(cls, row: tuple) -> "DeadLetter":
        """Create from database row."""
        return cls(
            id=row[0],
            posting_id=row[1],
            sequence=row[2],
            reason=row[3],
            payload=json.loads(row[4]),
            created_at=datetime.fromisoformat(row[5]),
        )


class StateStore:
    """SQLite-backed state store.

    Every sqlite3 error is raised as StateStoreError; callers must treat it
    as fatal rather than continue with an unknown watermark.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the state store.

        Args:
            db_path: Path to SQLite database file
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "connector_state.db"

        self.db_path = Path(db_path)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            try:
                # Each thread uses its own connection; close() may run elsewhere
                conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
            except sqlite3.Error as e:
                raise StateStoreError(f"Cannot open state store {self.db_path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for database cursor."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StateStoreError(f"State store failure: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot create state directory: {e}") from e

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS watermarks (
                    connector_id TEXT PRIMARY KEY,
                    watermark INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS connector_values (
                    key TEXT PRIMARY KEY,
                    value INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS deliveries (
                    delivery_key TEXT PRIMARY KEY,
                    posting_id TEXT NOT NULL,
                    case_reference TEXT NOT NULL,
                    delivered_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS delivery_attempts (
                    idempotency_key TEXT PRIMARY KEY,
                    posting_id TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS dead_letters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    posting_id TEXT NOT NULL UNIQUE,
                    sequence INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    # Watermarks

    def get_watermark(self, connector_id: str) -> Optional[int]:
        """Get the committed watermark for a connector instance, or None."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT watermark FROM watermarks WHERE connector_id = ?",
                (connector_id,),
            )
            row = cursor.fetchone()
            return row[0] if row else None

    def set_watermark(self, connector_id: str, watermark: int) -> None:
        """Persist a committed watermark."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO watermarks (connector_id, watermark, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(connector_id) DO UPDATE SET
                    watermark = excluded.watermark,
                    updated_at = excluded.updated_at
                """,
                (connector_id, watermark, self._now()),
            )

    def reset_watermark(self, connector_id: str, watermark: int = 0) -> None:
        """Explicit operator reset; the only way a watermark moves backwards."""
        self.set_watermark(connector_id, watermark)
        logger.warning(f"Watermark for {connector_id} reset to {watermark}")

    def load_state(self, connector_id: str) -> SyncState:
        """Load the engine state for a connector instance."""
        return SyncState(connector_id=connector_id, watermark=self.get_watermark(connector_id) or 0)

    # Integer key/value cursors (tag sync positions)

    def get_int(self, key: str) -> Optional[int]:
        with self._cursor() as cursor:
            cursor.execute("SELECT value FROM connector_values WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row[0] if row else None

    def put_int(self, key: str, value: int) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO connector_values (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, self._now()),
            )

    # Delivery ledger

    def is_delivered(self, delivery_key: str) -> bool:
        """Check whether a registration was already accepted by Allisa."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM deliveries WHERE delivery_key = ?", (delivery_key,)
            )
            return cursor.fetchone() is not None

    def mark_delivered(self, delivery_key: str, posting_id: str, case_reference: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT OR IGNORE INTO deliveries
                    (delivery_key, posting_id, case_reference, delivered_at)
                VALUES (?, ?, ?, ?)
                """,
                (delivery_key, posting_id, case_reference, self._now()),
            )

    def record_failed_attempt(self, idempotency_key: str, posting_id: str, error: str) -> int:
        """Count a cycle in which a record could not be delivered.

        Returns:
            Number of failed cycles recorded so far
        """
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO delivery_attempts
                    (idempotency_key, posting_id, attempts, last_error, updated_at)
                VALUES (?, ?, 1, ?, ?)
                ON CONFLICT(idempotency_key) DO UPDATE SET
                    attempts = attempts + 1,
                    last_error = excluded.last_error,
                    updated_at = excluded.updated_at
                """,
                (idempotency_key, posting_id, error, self._now()),
            )
            cursor.execute(
                "SELECT attempts FROM delivery_attempts WHERE idempotency_key = ?",
                (idempotency_key,),
            )
            return cursor.fetchone()[0]

    def get_failed_attempts(self, idempotency_key: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT attempts FROM delivery_attempts WHERE idempotency_key = ?",
                (idempotency_key,),
            )
            row = cursor.fetchone()
            return row[0] if row else 0

    def clear_attempts(self, idempotency_key: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM delivery_attempts WHERE idempotency_key = ?",
                (idempotency_key,),
            )

    # Dead letters

    def add_dead_letter(self, posting_id: str, sequence: int, reason: str, payload: dict) -> None:
        """Set a posting aside. Re-adding the same posting updates the reason."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO dead_letters (posting_id, sequence, reason, payload, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(posting_id) DO UPDATE SET
                    reason = excluded.reason,
                    payload = excluded.payload
                """,
                (posting_id, sequence, reason, json.dumps(payload, default=str), self._now()),
            )

    def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        """Dead letters, oldest first."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, posting_id, sequence, reason, payload, created_at
                FROM dead_letters
                ORDER BY id ASC
                LIMIT ?
                """,
                (limit,),
            )
            return [DeadLetter.from_row(tuple(row)) for row in cursor.fetchall()]

    def dead_letter_count(self) -> int:
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM dead_letters")
            return cursor.fetchone()[0]

    def remove_dead_letters(self, posting_ids: list[str]) -> int:
        """Remove dead letters, e.g. after an operator re-posted them by hand."""
        if not posting_ids:
            return 0

        with self._cursor() as cursor:
            placeholders = ",".join("?" * len(posting_ids))
            cursor.execute(
                f"DELETE FROM dead_letters WHERE posting_id IN ({placeholders})",
                posting_ids,
            )
            return cursor.rowcount

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._connections.clear()
        if hasattr(self._local, "connection"):
            del self._local.connection
