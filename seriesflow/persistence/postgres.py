"""PostgreSQL implementation of the series repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional, Sequence

import asyncpg

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


def _progress_params(progress: SeriesProgress) -> list[Any]:
    data = progress.model_dump()
    data["status"] = progress.status.value
    return [data[c] for c in _PROGRESS_COLUMNS]


def _record_to_progress(record: asyncpg.Record) -> SeriesProgress:
    return SeriesProgress(**{c: record[c] for c in _PROGRESS_COLUMNS})


def _load_json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class PostgresSeriesRepository(SeriesRepository):
    """Persist series definitions and progress using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS series (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS series_blocks (
                id TEXT PRIMARY KEY,
                series_id TEXT NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS series_progress (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                visitor_id TEXT NOT NULL,
                series_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_block_id TEXT,
                wait_until TIMESTAMPTZ,
                wait_event_name TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                last_execution_error TEXT,
                last_trigger_source TEXT,
                last_trigger_event_name TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                enrolled_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                exited_at TIMESTAMPTZ,
                goal_reached_at TIMESTAMPTZ,
                failed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS series_progress_history (
                id SERIAL PRIMARY KEY,
                progress_id TEXT NOT NULL,
                block_id TEXT,
                action TEXT NOT NULL,
                result JSONB,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_series_workspace_status ON series (workspace_id, status)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_blocks_series ON series_blocks (series_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_progress_visitor_series ON series_progress (visitor_id, series_id)"
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_progress_open
            ON series_progress (visitor_id, series_id)
            WHERE status IN ('active', 'waiting')
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_progress_status_event ON series_progress (status, wait_event_name)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_progress_status_wait ON series_progress (status, wait_until)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_history_progress ON series_progress_history (progress_id)"
        )

    # ------------------------------------------------------------------
    # Definitions
    async def save_series(self, series: Series) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO series (id, workspace_id, status, created_at, data)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE SET
                    workspace_id = EXCLUDED.workspace_id,
                    status = EXCLUDED.status,
                    data = EXCLUDED.data
                """,
                series.id,
                series.workspace_id,
                series.status.value,
                series.created_at,
                series.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_series(self, series_id: str) -> Series | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT data FROM series WHERE id = $1", series_id)
        finally:
            await conn.close()
        if not row:
            return None
        return Series.model_validate(_load_json(row["data"]))

    async def list_series(
        self,
        workspace_id: str | None = None,
        status: SeriesStatus | None = None,
        limit: int | None = None,
    ) -> list[Series]:
        clauses: list[str] = []
        params: list[Any] = []
        if workspace_id is not None:
            params.append(workspace_id)
            clauses.append(f"workspace_id = ${len(params)}")
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        query = "SELECT data FROM series"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [Series.model_validate(_load_json(r["data"])) for r in rows]

    async def save_blocks(self, blocks: Sequence[SeriesBlock]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO series_blocks (id, series_id, data) VALUES ($1, $2, $3)
                    ON CONFLICT (id) DO UPDATE SET
                        series_id = EXCLUDED.series_id,
                        data = EXCLUDED.data
                    """,
                    [(b.id, b.series_id, b.model_dump_json()) for b in blocks],
                )
        finally:
            await conn.close()

    async def list_blocks(self, series_id: str) -> list[SeriesBlock]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data FROM series_blocks WHERE series_id = $1 ORDER BY id",
                series_id,
            )
        finally:
            await conn.close()
        return [parse_block(_load_json(r["data"])) for r in rows]

    # ------------------------------------------------------------------
    # Progress
    async def create_progress_if_absent(
        self, progress: SeriesProgress
    ) -> SeriesProgress | None:
        placeholders = ", ".join(f"${i}" for i in range(1, len(_PROGRESS_COLUMNS) + 1))
        conn = await self._connect()
        try:
            status = await conn.execute(
                f"""
                INSERT INTO series_progress ({', '.join(_PROGRESS_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT DO NOTHING
                """,
                *_progress_params(progress),
            )
        finally:
            await conn.close()
        if status != "INSERT 0 1":
            return None
        return progress.model_copy(deep=True)

    async def update_progress(self, progress: SeriesProgress) -> SeriesProgress:
        updated = progress.model_copy(
            update={"version": progress.version + 1, "updated_at": utcnow()}
        )
        columns = [c for c in _PROGRESS_COLUMNS if c != "id"]
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=1))
        id_param = len(columns) + 1
        conn = await self._connect()
        try:
            status = await conn.execute(
                f"""
                UPDATE series_progress SET {assignments}
                WHERE id = ${id_param} AND version = ${id_param + 1}
                """,
                *_progress_params(updated)[1:],
                progress.id,
                progress.version,
            )
        finally:
            await conn.close()
        if status != "UPDATE 1":
            raise StaleProgressError(progress.id, progress.version)
        return updated

    async def _fetch_progress(self, query: str, *params: Any) -> list[SeriesProgress]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [_record_to_progress(r) for r in rows]

    async def get_progress(self, progress_id: str) -> SeriesProgress | None:
        rows = await self._fetch_progress(
            "SELECT * FROM series_progress WHERE id = $1", progress_id
        )
        return rows[0] if rows else None

    async def find_open_progress(
        self, visitor_id: str, series_id: str
    ) -> SeriesProgress | None:
        rows = await self._fetch_progress(
            """
            SELECT * FROM series_progress
            WHERE visitor_id = $1 AND series_id = $2 AND status IN ('active', 'waiting')
            """,
            visitor_id,
            series_id,
        )
        return rows[0] if rows else None

    async def list_progress(
        self,
        series_id: str | None = None,
        visitor_id: str | None = None,
        status: ProgressStatus | None = None,
    ) -> list[SeriesProgress]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("series_id", series_id),
            ("visitor_id", visitor_id),
            ("status", status.value if status is not None else None),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        query = "SELECT * FROM series_progress"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY enrolled_at, id"
        return await self._fetch_progress(query, *params)

    async def list_waiting_for_event(
        self, visitor_id: str, event_name: str
    ) -> list[SeriesProgress]:
        return await self._fetch_progress(
            """
            SELECT * FROM series_progress
            WHERE status = 'waiting' AND wait_event_name = $1 AND visitor_id = $2
            ORDER BY wait_until NULLS LAST, id
            """,
            event_name,
            visitor_id,
        )

    async def list_due_progress(
        self, series_id: str, now: datetime, limit: int
    ) -> list[SeriesProgress]:
        return await self._fetch_progress(
            """
            SELECT * FROM series_progress
            WHERE status = 'waiting' AND wait_until <= $1 AND series_id = $2
            ORDER BY wait_until, id
            LIMIT $3
            """,
            now,
            series_id,
            limit,
        )

    async def count_progress_by_status(self, series_id: str) -> dict[str, int]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS n FROM series_progress WHERE series_id = $1 GROUP BY status",
                series_id,
            )
        finally:
            await conn.close()
        return {r["status"]: r["n"] for r in rows}

    async def append_history(self, entry: ProgressHistoryEntry) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO series_progress_history (progress_id, block_id, action, result, created_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                entry.progress_id,
                entry.block_id,
                entry.action.value,
                json.dumps(entry.result) if entry.result is not None else None,
                entry.created_at,
            )
        finally:
            await conn.close()

    async def list_history(
        self, progress_id: str, limit: Optional[int] = None
    ) -> list[ProgressHistoryEntry]:
        query = "SELECT * FROM series_progress_history WHERE progress_id = $1 ORDER BY id DESC"
        params: list[Any] = [progress_id]
        if limit:
            query += " LIMIT $2"
            params.append(limit)
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        entries = [
            ProgressHistoryEntry(
                id=r["id"],
                progress_id=r["progress_id"],
                block_id=r["block_id"],
                action=HistoryAction(r["action"]),
                result=_load_json(r["result"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]
        entries.reverse()
        return entries
