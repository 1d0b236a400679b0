"""Backstop sweep resuming progress whose wait deadline has elapsed."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import SchedulerConfig
from .constants import (
    DEFAULT_SERIES_SCAN_LIMIT,
    DEFAULT_WAITING_BATCH_LIMIT,
    MAX_SERIES_SCAN_LIMIT,
    MAX_WAITING_BATCH_LIMIT,
)
from .contracts import ProgressStatus, SweepSummary, utcnow
from .execute import GraphExecutor
from .persistence import SeriesRepository, StaleProgressError

logger = logging.getLogger(__name__)


def clamp_limit(limit: Optional[int], default: int, maximum: int) -> int:
    if limit is None or limit <= 0:
        return default
    return min(int(limit), maximum)


class BackstopScheduler:
    """Periodic sweep guaranteeing waiting progress never stalls.

    Duration waits and retry waits are always resumed here. Event waits are
    normally resumed by the dispatcher; when their backstop deadline passes
    the executor's timeout policy applies.
    """

    def __init__(
        self,
        repository: SeriesRepository,
        executor: GraphExecutor,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._config = config or SchedulerConfig()

    async def process_waiting_progress(
        self,
        series_limit: Optional[int] = None,
        waiting_limit_per_series: Optional[int] = None,
    ) -> SweepSummary:
        """Run one sweep over due waiting progress records."""
        series_limit = clamp_limit(
            series_limit or self._config.series_limit,
            DEFAULT_SERIES_SCAN_LIMIT,
            MAX_SERIES_SCAN_LIMIT,
        )
        waiting_limit = clamp_limit(
            waiting_limit_per_series or self._config.waiting_limit_per_series,
            DEFAULT_WAITING_BATCH_LIMIT,
            MAX_WAITING_BATCH_LIMIT,
        )

        now = utcnow()
        summary = SweepSummary()
        for series in await self._repository.list_series(limit=series_limit):
            due = await self._repository.list_due_progress(series.id, now, waiting_limit)
            for progress in due:
                summary.scanned += 1
                if progress.status != ProgressStatus.WAITING:
                    summary.skipped += 1
                    continue
                try:
                    if progress.wait_event_name:
                        await self._executor.expire_event_wait(progress)
                        summary.timed_out += 1
                    else:
                        await self._executor.resume(progress)
                        summary.resumed += 1
                except StaleProgressError:
                    logger.info(
                        f"Progress {progress.id} moved on before the sweep reached it"
                    )
                    summary.skipped += 1

        if summary.scanned:
            logger.info(
                f"Backstop sweep: scanned={summary.scanned} resumed={summary.resumed} "
                f"timed_out={summary.timed_out} skipped={summary.skipped}"
            )
        return summary

    async def run(
        self,
        interval_seconds: Optional[float] = None,
        lifespan: Optional[float] = None,
    ) -> None:
        """Sweep every ``interval_seconds`` until ``lifespan`` elapses.

        Args:
            interval_seconds: Pause between sweeps. Defaults to the configured
                interval.
            lifespan: Maximum time in seconds to keep running. If None, runs
                indefinitely.
        """
        interval = interval_seconds or self._config.interval_seconds
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            await self.process_waiting_progress()
            if lifespan is not None:
                remaining = lifespan - (loop.time() - start_time)
                if remaining <= 0:
                    break
                await asyncio.sleep(min(interval, remaining))
            else:
                await asyncio.sleep(interval)
