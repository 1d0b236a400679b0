"""SQLite implementation of the series repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from ..contracts import (
    HistoryAction,
    ProgressHistoryEntry,
    ProgressStatus,
    Series,
    SeriesBlock,
    SeriesProgress,
    SeriesStatus,
    parse_block,
    utcnow,
)
from .repository import SeriesRepository, StaleProgressError

_PROGRESS_COLUMNS = (
    "id",
    "workspace_id",
    "visitor_id",
    "series_id",
    "status",
    "current_block_id",
    "wait_until",
    "wait_event_name",
    "attempt_count",
    "last_execution_error",
    "last_trigger_source",
    "last_trigger_event_name",
    "version",
    "enrolled_at",
    "updated_at",
    "completed_at",
    "exited_at",
    "goal_reached_at",
    "failed_at",
)
_TIMESTAMP_COLUMNS = {
    "wait_until",
    "enrolled_at",
    "updated_at",
    "completed_at",
    "exited_at",
    "goal_reached_at",
    "failed_at",
}
_OPEN_STATUSES = (ProgressStatus.ACTIVE.value, ProgressStatus.WAITING.value)


def _to_epoch(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _progress_params(progress: SeriesProgress) -> list[Any]:
    data = progress.model_dump()
    params = []
    for column in _PROGRESS_COLUMNS:
        value = data[column]
        if column in _TIMESTAMP_COLUMNS:
            value = _to_epoch(value)
        elif column == "status":
            value = progress.status.value
        params.append(value)
    return params


def _row_to_progress(row: sqlite3.Row) -> SeriesProgress:
    data = {}
    for column in _PROGRESS_COLUMNS:
        value = row[column]
        if column in _TIMESTAMP_COLUMNS:
            value = _from_epoch(value)
        data[column] = value
    return SeriesProgress(**data)


class SQLiteSeriesRepository(SeriesRepository):
    """Persist series definitions and progress using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._db_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS series (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at REAL NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS series_blocks (
                id TEXT PRIMARY KEY,
                series_id TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS series_progress (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                visitor_id TEXT NOT NULL,
                series_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_block_id TEXT,
                wait_until REAL,
                wait_event_name TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                last_execution_error TEXT,
                last_trigger_source TEXT,
                last_trigger_event_name TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                enrolled_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                completed_at REAL,
                exited_at REAL,
                goal_reached_at REAL,
                failed_at REAL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS series_progress_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                progress_id TEXT NOT NULL,
                block_id TEXT,
                action TEXT NOT NULL,
                result TEXT,
                created_at REAL NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_series_workspace_status ON series (workspace_id, status)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_blocks_series ON series_blocks (series_id)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_progress_visitor_series ON series_progress (visitor_id, series_id)"
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_progress_open
            ON series_progress (visitor_id, series_id)
            WHERE status IN ('active', 'waiting')
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_progress_status_event ON series_progress (status, wait_event_name)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_progress_status_wait ON series_progress (status, wait_until)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_history_progress ON series_progress_history (progress_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _executemany(self, query: str, rows: list[tuple]) -> None:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.executemany(query, rows)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Definitions
    async def save_series(self, series: Series) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO series (id, workspace_id, status, created_at, data) VALUES (?, ?, ?, ?, ?)",
            series.id,
            series.workspace_id,
            series.status.value,
            _to_epoch(series.created_at),
            series.model_dump_json(),
        )

    async def get_series(self, series_id: str) -> Series | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM series WHERE id = ?", series_id
        )
        if not row:
            return None
        return Series.model_validate_json(row["data"])

    async def list_series(
        self,
        workspace_id: str | None = None,
        status: SeriesStatus | None = None,
        limit: int | None = None,
    ) -> list[Series]:
        clauses: list[str] = []
        params: list[Any] = []
        if workspace_id is not None:
            clauses.append("workspace_id = ?")
            params.append(workspace_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        query = "SELECT data FROM series"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Series.model_validate_json(r["data"]) for r in rows]

    async def save_blocks(self, blocks: Sequence[SeriesBlock]) -> None:
        rows = [(b.id, b.series_id, b.model_dump_json()) for b in blocks]
        await asyncio.to_thread(
            self._executemany,
            "INSERT OR REPLACE INTO series_blocks (id, series_id, data) VALUES (?, ?, ?)",
            rows,
        )

    async def list_blocks(self, series_id: str) -> list[SeriesBlock]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM series_blocks WHERE series_id = ? ORDER BY id",
            series_id,
        )
        return [parse_block(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Progress
    async def create_progress_if_absent(
        self, progress: SeriesProgress
    ) -> SeriesProgress | None:
        placeholders = ", ".join("?" for _ in _PROGRESS_COLUMNS)
        inserted = await asyncio.to_thread(
            self._execute,
            f"INSERT OR IGNORE INTO series_progress ({', '.join(_PROGRESS_COLUMNS)}) VALUES ({placeholders})",
            *_progress_params(progress),
        )
        if inserted != 1:
            return None
        return progress.model_copy(deep=True)

    async def update_progress(self, progress: SeriesProgress) -> SeriesProgress:
        updated = progress.model_copy(
            update={"version": progress.version + 1, "updated_at": utcnow()}
        )
        columns = [c for c in _PROGRESS_COLUMNS if c != "id"]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        params = _progress_params(updated)[1:]
        changed = await asyncio.to_thread(
            self._execute,
            f"UPDATE series_progress SET {assignments} WHERE id = ? AND version = ?",
            *params,
            progress.id,
            progress.version,
        )
        if changed != 1:
            raise StaleProgressError(progress.id, progress.version)
        return updated

    async def get_progress(self, progress_id: str) -> SeriesProgress | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM series_progress WHERE id = ?",
            progress_id,
        )
        return _row_to_progress(row) if row else None

    async def find_open_progress(
        self, visitor_id: str, series_id: str
    ) -> SeriesProgress | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM series_progress WHERE visitor_id = ? AND series_id = ? AND status IN (?, ?)",
            visitor_id,
            series_id,
            *_OPEN_STATUSES,
        )
        return _row_to_progress(row) if row else None

    async def list_progress(
        self,
        series_id: str | None = None,
        visitor_id: str | None = None,
        status: ProgressStatus | None = None,
    ) -> list[SeriesProgress]:
        clauses: list[str] = []
        params: list[Any] = []
        if series_id is not None:
            clauses.append("series_id = ?")
            params.append(series_id)
        if visitor_id is not None:
            clauses.append("visitor_id = ?")
            params.append(visitor_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        query = "SELECT * FROM series_progress"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY enrolled_at, id"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [_row_to_progress(r) for r in rows]

    async def list_waiting_for_event(
        self, visitor_id: str, event_name: str
    ) -> list[SeriesProgress]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM series_progress
            WHERE status = ? AND wait_event_name = ? AND visitor_id = ?
            ORDER BY wait_until IS NULL, wait_until, id
            """,
            ProgressStatus.WAITING.value,
            event_name,
            visitor_id,
        )
        return [_row_to_progress(r) for r in rows]

    async def list_due_progress(
        self, series_id: str, now: datetime, limit: int
    ) -> list[SeriesProgress]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM series_progress
            WHERE status = ? AND wait_until <= ? AND series_id = ?
            ORDER BY wait_until, id
            LIMIT ?
            """,
            ProgressStatus.WAITING.value,
            _to_epoch(now),
            series_id,
            limit,
        )
        return [_row_to_progress(r) for r in rows]

    async def count_progress_by_status(self, series_id: str) -> dict[str, int]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT status, COUNT(*) AS n FROM series_progress WHERE series_id = ? GROUP BY status",
            series_id,
        )
        return {r["status"]: r["n"] for r in rows}

    async def append_history(self, entry: ProgressHistoryEntry) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO series_progress_history (progress_id, block_id, action, result, created_at) VALUES (?, ?, ?, ?, ?)",
            entry.progress_id,
            entry.block_id,
            entry.action.value,
            json.dumps(entry.result) if entry.result is not None else None,
            _to_epoch(entry.created_at),
        )

    async def list_history(
        self, progress_id: str, limit: Optional[int] = None
    ) -> list[ProgressHistoryEntry]:
        query = "SELECT * FROM series_progress_history WHERE progress_id = ? ORDER BY id DESC"
        params: list[Any] = [progress_id]
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        entries = [
            ProgressHistoryEntry(
                id=r["id"],
                progress_id=r["progress_id"],
                block_id=r["block_id"],
                action=HistoryAction(r["action"]),
                result=json.loads(r["result"]) if r["result"] else None,
                created_at=_from_epoch(r["created_at"]),
            )
            for r in rows
        ]
        entries.reverse()
        return entries
