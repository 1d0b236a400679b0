"""In-memory implementation of the series repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..contracts import (
    ProgressHistoryEntry,
    ProgressStatus,
    Series,
    SeriesBlock,
    SeriesProgress,
    SeriesStatus,
    utcnow,
)
from .repository import SeriesRepository, StaleProgressError


def _wait_sort_key(progress: SeriesProgress) -> tuple:
    wait = progress.wait_until.timestamp() if progress.wait_until else float("inf")
    return (wait, progress.id)


class InMemorySeriesRepository(SeriesRepository):
    """Store series definitions and progress in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._series: Dict[str, Series] = {}
        self._blocks: Dict[str, Dict[str, SeriesBlock]] = {}
        self._progress: Dict[str, SeriesProgress] = {}
        self._history: List[ProgressHistoryEntry] = []
        self._history_id = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Definitions
    async def save_series(self, series: Series) -> None:
        self._series[series.id] = series.model_copy(deep=True)

    async def get_series(self, series_id: str) -> Series | None:
        series = self._series.get(series_id)
        return series.model_copy(deep=True) if series else None

    async def list_series(
        self,
        workspace_id: str | None = None,
        status: SeriesStatus | None = None,
        limit: int | None = None,
    ) -> list[Series]:
        matches = [
            s.model_copy(deep=True)
            for s in self._series.values()
            if (workspace_id is None or s.workspace_id == workspace_id)
            and (status is None or s.status == status)
        ]
        matches.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return matches[:limit] if limit is not None else matches

    async def save_blocks(self, blocks: Sequence[SeriesBlock]) -> None:
        for block in blocks:
            self._blocks.setdefault(block.series_id, {})[block.id] = block.model_copy(
                deep=True
            )

    async def list_blocks(self, series_id: str) -> list[SeriesBlock]:
        return [
            b.model_copy(deep=True) for b in self._blocks.get(series_id, {}).values()
        ]

    # ------------------------------------------------------------------
    # Progress
    async def create_progress_if_absent(
        self, progress: SeriesProgress
    ) -> SeriesProgress | None:
        async with self._lock:
            if self._find_open(progress.visitor_id, progress.series_id) is not None:
                return None
            self._progress[progress.id] = progress.model_copy(deep=True)
            return progress.model_copy(deep=True)

    async def update_progress(self, progress: SeriesProgress) -> SeriesProgress:
        async with self._lock:
            stored = self._progress.get(progress.id)
            if stored is None or stored.version != progress.version:
                raise StaleProgressError(progress.id, progress.version)
            updated = progress.model_copy(
                update={"version": progress.version + 1, "updated_at": utcnow()},
                deep=True,
            )
            self._progress[progress.id] = updated
            return updated.model_copy(deep=True)

    async def get_progress(self, progress_id: str) -> SeriesProgress | None:
        progress = self._progress.get(progress_id)
        return progress.model_copy(deep=True) if progress else None

    def _find_open(self, visitor_id: str, series_id: str) -> SeriesProgress | None:
        for progress in self._progress.values():
            if (
                progress.visitor_id == visitor_id
                and progress.series_id == series_id
                and not progress.is_terminal
            ):
                return progress
        return None

    async def find_open_progress(
        self, visitor_id: str, series_id: str
    ) -> SeriesProgress | None:
        progress = self._find_open(visitor_id, series_id)
        return progress.model_copy(deep=True) if progress else None

    async def list_progress(
        self,
        series_id: str | None = None,
        visitor_id: str | None = None,
        status: ProgressStatus | None = None,
    ) -> list[SeriesProgress]:
        matches = [
            p.model_copy(deep=True)
            for p in self._progress.values()
            if (series_id is None or p.series_id == series_id)
            and (visitor_id is None or p.visitor_id == visitor_id)
            and (status is None or p.status == status)
        ]
        matches.sort(key=lambda p: (p.enrolled_at, p.id))
        return matches

    async def list_waiting_for_event(
        self, visitor_id: str, event_name: str
    ) -> list[SeriesProgress]:
        matches = [
            p.model_copy(deep=True)
            for p in self._progress.values()
            if p.visitor_id == visitor_id
            and p.status == ProgressStatus.WAITING
            and p.wait_event_name == event_name
        ]
        return sorted(matches, key=_wait_sort_key)

    async def list_due_progress(
        self, series_id: str, now: datetime, limit: int
    ) -> list[SeriesProgress]:
        matches = [
            p.model_copy(deep=True)
            for p in self._progress.values()
            if p.series_id == series_id
            and p.status == ProgressStatus.WAITING
            and p.wait_until is not None
            and p.wait_until <= now
        ]
        return sorted(matches, key=_wait_sort_key)[:limit]

    async def count_progress_by_status(self, series_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for progress in self._progress.values():
            if progress.series_id == series_id:
                key = progress.status.value
                counts[key] = counts.get(key, 0) + 1
        return counts

    async def append_history(self, entry: ProgressHistoryEntry) -> None:
        self._history_id += 1
        self._history.append(entry.model_copy(update={"id": self._history_id}))

    async def list_history(
        self, progress_id: str, limit: Optional[int] = None
    ) -> list[ProgressHistoryEntry]:
        entries = [e for e in self._history if e.progress_id == progress_id]
        return entries[-limit:] if limit else entries
