"""
Local history of processed images.

A single SQLite file indexed by timestamp. The processing core only ever
writes here; reads serve the host's history views.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import sqlite3
from threading import Lock
import time
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

_COLUMNS = "id, original_path, original_name, original_data, processed_data, timestamp"


@dataclass(frozen=True)
class HistoryRecord:
    id: int
    original_path: str
    original_name: str
    original_data: Optional[bytes]
    processed_data: bytes
    timestamp: int  # ms since epoch


def _now_ms() -> int:
    return int(time.time() * 1000)


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _to_record(row: sqlite3.Row) -> HistoryRecord:
    return HistoryRecord(
        id=row["id"],
        original_path=row["original_path"],
        original_name=row["original_name"],
        original_data=row["original_data"],
        processed_data=row["processed_data"],
        timestamp=row["timestamp"],
    )


class HistoryStore:
    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._create_schema()
        logger.info("History database initialized at %s", self.db_path)

    def _create_schema(self) -> None:
        with self._lock, self._connection:
            self._connection.execute(
                """
                CREATE TABLE IF NOT EXISTS history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    original_path TEXT NOT NULL,
                    original_name TEXT NOT NULL,
                    original_data BLOB,
                    processed_data BLOB NOT NULL,
                    timestamp INTEGER NOT NULL
                )
                """
            )
            self._connection.execute("CREATE INDEX IF NOT EXISTS idx_timestamp ON history(timestamp DESC)")

    @property
    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("History store is closed")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("History database closed")

    def add_record(
        self,
        original_path: str,
        original_name: str,
        processed_data: bytes,
        original_data: Optional[bytes] = None,
        timestamp: Optional[int] = None,
    ) -> int:
        with self._lock, self._connection:
            cursor = self._connection.execute(
                """
                INSERT INTO history (original_path, original_name, original_data, processed_data, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    original_path,
                    original_name,
                    original_data,
                    processed_data,
                    timestamp if timestamp is not None else _now_ms(),
                ),
            )
            return int(cursor.lastrowid)

    def get_records(self, limit: int = 50, offset: int = 0) -> List[HistoryRecord]:
        with self._lock:
            rows = self._connection.execute(
                f"SELECT {_COLUMNS} FROM history ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [_to_record(row) for row in rows]

    def get_record(self, record_id: int) -> Optional[HistoryRecord]:
        with self._lock:
            row = self._connection.execute(
                f"SELECT {_COLUMNS} FROM history WHERE id = ?", (record_id,)
            ).fetchone()
        return _to_record(row) if row is not None else None

    def search(
        self,
        query: str,
        limit: int = 50,
        since: Optional[int] = None,
        until: Optional[int] = None,
    ) -> List[HistoryRecord]:
        """Substring match on file name or path, newest first, optionally within a time window."""
        pattern = _like_pattern(query)
        sql = (
            f"SELECT {_COLUMNS} FROM history "
            "WHERE (original_name LIKE ? ESCAPE '\\' OR original_path LIKE ? ESCAPE '\\')"
        )
        params: list = [pattern, pattern]
        if since is not None:
            sql += " AND timestamp >= ?"
            params.append(since)
        if until is not None:
            sql += " AND timestamp <= ?"
            params.append(until)
        sql += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._lock:
            rows = self._connection.execute(sql, params).fetchall()
        return [_to_record(row) for row in rows]

    def delete_record(self, record_id: int) -> bool:
        with self._lock, self._connection:
            cursor = self._connection.execute("DELETE FROM history WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def clear(self) -> int:
        """Delete every record and restart ids at 1."""
        with self._lock, self._connection:
            cursor = self._connection.execute("DELETE FROM history")
            self._connection.execute("DELETE FROM sqlite_sequence WHERE name = 'history'")
            return cursor.rowcount

    def count(self) -> int:
        with self._lock:
            row = self._connection.execute("SELECT COUNT(*) AS count FROM history").fetchone()
        return int(row["count"])
