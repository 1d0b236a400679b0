"""Repository abstractions for series definitions and progress state."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence

from ..contracts import (
    ProgressHistoryEntry,
    ProgressStatus,
    Series,
    SeriesBlock,
    SeriesProgress,
    SeriesStatus,
)


class StaleProgressError(RuntimeError):
    """Raised when a progress update loses an optimistic concurrency race."""

    def __init__(self, progress_id: str, expected_version: int) -> None:
        super().__init__(
            f"Progress {progress_id} was modified concurrently "
            f"(expected version {expected_version})"
        )
        self.progress_id = progress_id
        self.expected_version = expected_version


class SeriesDefinitionStore(Protocol):
    """Protocol for workflow definition storage."""

    async def save_series(self, series: Series) -> None:
        """Insert or replace a series definition."""

    async def get_series(self, series_id: str) -> Series | None:
        """Retrieve a series by id."""

    async def list_series(
        self,
        workspace_id: str | None = None,
        status: SeriesStatus | None = None,
        limit: int | None = None,
    ) -> list[Series]:
        """Return series, newest first, optionally filtered."""

    async def save_blocks(self, blocks: Sequence[SeriesBlock]) -> None:
        """Insert or replace block definitions."""

    async def list_blocks(self, series_id: str) -> list[SeriesBlock]:
        """Return all blocks of a series."""


class ProgressRepository(Protocol):
    """Protocol for per-visitor progress persistence backends."""

    async def create_progress_if_absent(
        self, progress: SeriesProgress
    ) -> SeriesProgress | None:
        """Atomically insert ``progress`` unless the visitor already has a
        non-terminal progress for the series. Returns ``None`` on conflict."""

    async def update_progress(self, progress: SeriesProgress) -> SeriesProgress:
        """Persist ``progress`` if its stored version still matches.

        Returns the stored record with an incremented version. Raises
        :class:`StaleProgressError` otherwise.
        """

    async def get_progress(self, progress_id: str) -> SeriesProgress | None:
        """Retrieve a progress record by id."""

    async def find_open_progress(
        self, visitor_id: str, series_id: str
    ) -> SeriesProgress | None:
        """Return the non-terminal progress for the pair, if any."""

    async def list_progress(
        self,
        series_id: str | None = None,
        visitor_id: str | None = None,
        status: ProgressStatus | None = None,
    ) -> list[SeriesProgress]:
        """Return progress records matching the filters."""

    async def list_waiting_for_event(
        self, visitor_id: str, event_name: str
    ) -> list[SeriesProgress]:
        """Return waiting records of the visitor suspended on ``event_name``."""

    async def list_due_progress(
        self, series_id: str, now: datetime, limit: int
    ) -> list[SeriesProgress]:
        """Return waiting records whose deadline is at or before ``now``."""

    async def count_progress_by_status(self, series_id: str) -> dict[str, int]:
        """Return progress counts keyed by status value."""

    async def append_history(self, entry: ProgressHistoryEntry) -> None:
        """Record a block transition."""

    async def list_history(
        self, progress_id: str, limit: Optional[int] = None
    ) -> list[ProgressHistoryEntry]:
        """Return history for a progress record, oldest first."""


class SeriesRepository(SeriesDefinitionStore, ProgressRepository, Protocol):
    """Combined store used by the engine."""
