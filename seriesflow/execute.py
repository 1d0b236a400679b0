"""Graph execution engine for series progress records."""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from .conditions import ConditionEvaluator
from .config import EngineConfig
from .contracts import (
    ActionBlock,
    BranchBlock,
    ExitBlock,
    GoalBlock,
    HistoryAction,
    ProgressHistoryEntry,
    ProgressStatus,
    Series,
    SeriesBlock,
    SeriesProgress,
    SeriesStatus,
    WaitBlock,
    ensure_transition,
    utcnow,
)
from .persistence import SeriesRepository
from .registry import ActionRegistry

logger = logging.getLogger(__name__)

_UNIT_SECONDS = {"minutes": 60, "hours": 60 * 60, "days": 24 * 60 * 60}

_TERMINAL_TIMESTAMP = {
    ProgressStatus.COMPLETED: "completed_at",
    ProgressStatus.EXITED: "exited_at",
    ProgressStatus.GOAL_REACHED: "goal_reached_at",
    ProgressStatus.FAILED: "failed_at",
}


def normalize_duration(wait_duration: float, wait_unit: str) -> timedelta:
    """Convert a wait block duration to a ``timedelta``."""
    return timedelta(seconds=wait_duration * _UNIT_SECONDS.get(wait_unit, 60))


def compute_retry_delay(
    attempt: int, base_delay: float, jitter: float = 0.0
) -> timedelta:
    """Linear backoff per failed attempt, with optional jitter."""
    delay = base_delay * max(1, attempt)
    if jitter:
        delay += random.uniform(0, jitter)
    return timedelta(seconds=delay)


class _StepOutcome:
    """Result of executing one block."""

    __slots__ = (
        "next_block_id", "status", "wait_until", "wait_event_name", "error", "permanent"
    )

    def __init__(
        self,
        next_block_id: Optional[str] = None,
        status: Optional[ProgressStatus] = None,
        wait_until: Optional[datetime] = None,
        wait_event_name: Optional[str] = None,
        error: Optional[str] = None,
        permanent: bool = False,
    ) -> None:
        self.next_block_id = next_block_id
        self.status = status
        self.wait_until = wait_until
        self.wait_event_name = wait_event_name
        self.error = error
        # Malformed block configuration; retrying cannot succeed.
        self.permanent = permanent


class GraphExecutor:
    """Advances progress records through a series' block graph.

    Business failures (malformed graphs, executor errors, cycles) are stored
    on the progress record; only storage errors propagate.
    """

    def __init__(
        self,
        repository: SeriesRepository,
        actions: ActionRegistry,
        conditions: Optional[ConditionEvaluator] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._repository = repository
        self._actions = actions
        self._conditions = conditions
        self._config = config or EngineConfig()

    # ------------------------------------------------------------------
    # Persistence helpers
    async def _save(
        self, progress: SeriesProgress, status: ProgressStatus, **changes: Any
    ) -> SeriesProgress:
        ensure_transition(progress.status, status)
        changes["status"] = status
        timestamp_field = _TERMINAL_TIMESTAMP.get(status)
        if timestamp_field:
            changes.setdefault(timestamp_field, utcnow())
            changes.setdefault("current_block_id", None)
            changes.setdefault("wait_until", None)
            changes.setdefault("wait_event_name", None)
        updated = await self._repository.update_progress(
            progress.model_copy(update=changes)
        )
        if timestamp_field:
            logger.info(
                f"Progress {progress.id} (series={progress.series_id}, "
                f"visitor={progress.visitor_id}) finished as {status.value}"
            )
        return updated

    async def _history(
        self,
        progress: SeriesProgress,
        block_id: Optional[str],
        action: HistoryAction,
        result: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._repository.append_history(
            ProgressHistoryEntry(
                progress_id=progress.id, block_id=block_id, action=action, result=result
            )
        )

    async def fail(self, progress: SeriesProgress, error: str) -> SeriesProgress:
        """Move ``progress`` to ``failed`` recording ``error``."""
        logger.warning(f"Progress {progress.id} failed: {error}")
        return await self._save(
            progress, ProgressStatus.FAILED, last_execution_error=error
        )

    # ------------------------------------------------------------------
    # Public API
    async def advance(self, progress: SeriesProgress) -> SeriesProgress:
        """Run ``progress`` until it suspends or terminates.

        Terminal and waiting records are returned unchanged; waiting records
        continue through :meth:`resume`.
        """
        if progress.is_terminal or progress.status == ProgressStatus.WAITING:
            return progress

        series = await self._repository.get_series(progress.series_id)
        if series is None:
            return await self.fail(progress, f"Series {progress.series_id} not found")
        if series.status == SeriesStatus.ARCHIVED:
            return await self._archive(progress)

        blocks = {b.id: b for b in await self._repository.list_blocks(series.id)}
        return await self._run(progress, series, blocks)

    async def resume(self, progress: SeriesProgress) -> SeriesProgress:
        """Claim a waiting record and continue executing it.

        A record suspended by a wait block moves to the block's successor. A
        record waiting to retry a failed block (``attempt_count > 0``)
        re-enters that block, wait blocks included. Raises
        :class:`StaleProgressError` when another caller claimed it first.
        """
        if progress.status != ProgressStatus.WAITING:
            return progress

        series = await self._repository.get_series(progress.series_id)
        if series is None:
            return await self.fail(progress, f"Series {progress.series_id} not found")
        if series.status == SeriesStatus.ARCHIVED:
            return await self._archive(progress)

        blocks = {b.id: b for b in await self._repository.list_blocks(series.id)}
        block = blocks.get(progress.current_block_id or "")
        resumed_at = utcnow()

        if isinstance(block, WaitBlock) and progress.attempt_count == 0:
            progress = await self._save(
                progress,
                ProgressStatus.ACTIVE,
                current_block_id=block.next_block_id,
                wait_until=None,
                wait_event_name=None,
                attempt_count=0,
                last_execution_error=None,
            )
            await self._history(
                progress,
                block.id,
                HistoryAction.COMPLETED,
                {"resumed_at": resumed_at.isoformat()},
            )
            if block.next_block_id:
                await self._history(progress, block.next_block_id, HistoryAction.ENTERED)
            logger.info(f"Resumed progress {progress.id} past wait block {block.id}")
        else:
            progress = await self._save(
                progress,
                ProgressStatus.ACTIVE,
                wait_until=None,
                wait_event_name=None,
            )
            logger.info(
                f"Retrying block {progress.current_block_id} for progress {progress.id} "
                f"(attempt {progress.attempt_count + 1})"
            )

        return await self._run(progress, series, blocks)

    async def expire_event_wait(self, progress: SeriesProgress) -> SeriesProgress:
        """Apply the configured policy to an event wait past its deadline."""
        if self._config.event_timeout_action == "resume":
            return await self.resume(progress)
        return await self.fail(
            progress,
            f"Timed out waiting for event '{progress.wait_event_name}'",
        )

    async def exit_progress(
        self, progress: SeriesProgress, reason: Optional[str] = None
    ) -> SeriesProgress:
        if progress.is_terminal:
            return progress
        await self._history(
            progress,
            progress.current_block_id,
            HistoryAction.SKIPPED,
            {"reason": reason or "manual_exit"},
        )
        return await self._save(progress, ProgressStatus.EXITED)

    async def mark_goal_reached(self, progress: SeriesProgress) -> SeriesProgress:
        if progress.is_terminal:
            return progress
        await self._history(
            progress,
            progress.current_block_id,
            HistoryAction.SKIPPED,
            {"reason": "goal_marked"},
        )
        return await self._save(progress, ProgressStatus.GOAL_REACHED)

    # ------------------------------------------------------------------
    # Step loop
    async def _archive(self, progress: SeriesProgress) -> SeriesProgress:
        await self._history(
            progress,
            progress.current_block_id,
            HistoryAction.SKIPPED,
            {"reason": "series_archived"},
        )
        return await self._save(progress, ProgressStatus.EXITED)

    async def _run(
        self,
        progress: SeriesProgress,
        series: Series,
        blocks: Dict[str, SeriesBlock],
    ) -> SeriesProgress:
        for _ in range(self._config.step_budget):
            if progress.current_block_id is None:
                return await self._save(progress, ProgressStatus.COMPLETED)

            block = blocks.get(progress.current_block_id)
            if block is None:
                return await self.fail(
                    progress,
                    f"Block {progress.current_block_id} not found in series {series.id}",
                )

            stopped, rule_error = await self._check_series_rules(progress, series, block)
            if stopped is not None:
                return stopped

            try:
                outcome = await self._execute_block(progress, block)
            except Exception as e:
                return await self._record_failure(progress, block, f"{type(e).__name__}: {e}")

            if outcome.error is not None and outcome.permanent:
                await self._history(
                    progress, block.id, HistoryAction.FAILED, {"error": outcome.error}
                )
                return await self.fail(progress, f"Block {block.id}: {outcome.error}")
            if outcome.error is not None:
                return await self._record_failure(progress, block, outcome.error)

            if outcome.status == ProgressStatus.WAITING:
                logger.debug(
                    f"Progress {progress.id} waiting at block {block.id} "
                    f"(until={outcome.wait_until}, event={outcome.wait_event_name})"
                )
                return await self._save(
                    progress,
                    ProgressStatus.WAITING,
                    wait_until=outcome.wait_until,
                    wait_event_name=outcome.wait_event_name,
                    attempt_count=0,
                    last_execution_error=rule_error,
                )

            await self._history(
                progress,
                block.id,
                HistoryAction.COMPLETED,
                {"next_block_id": outcome.next_block_id},
            )

            if outcome.status is not None:
                return await self._save(
                    progress, outcome.status, attempt_count=0, last_execution_error=rule_error
                )

            if outcome.next_block_id is None:
                return await self._save(
                    progress,
                    ProgressStatus.COMPLETED,
                    attempt_count=0,
                    last_execution_error=rule_error,
                )

            logger.debug(
                f"Progress {progress.id}: {block.id} -> {outcome.next_block_id}"
            )
            progress = await self._save(
                progress,
                ProgressStatus.ACTIVE,
                current_block_id=outcome.next_block_id,
                attempt_count=0,
                last_execution_error=rule_error,
            )
            await self._history(progress, outcome.next_block_id, HistoryAction.ENTERED)

        return await self.fail(
            progress,
            f"Step budget of {self._config.step_budget} exceeded at block "
            f"{progress.current_block_id}; the series graph likely contains a cycle",
        )

    async def _check_series_rules(
        self, progress: SeriesProgress, series: Series, block: SeriesBlock
    ) -> Tuple[Optional[SeriesProgress], Optional[str]]:
        """Apply series exit and goal rules before ``block`` runs.

        Returns the terminal record when a rule set matched, plus the last
        evaluation error. A rule set that cannot be evaluated counts as not
        matched; its error is kept on the record as ``last_execution_error``.
        """
        checks = (
            ("exit", series.exit_rules, ProgressStatus.EXITED),
            ("goal", series.goal_rules, ProgressStatus.GOAL_REACHED),
        )
        rule_error = None
        for kind, rules, status in checks:
            if not rules or self._conditions is None:
                continue
            try:
                matched = await self._conditions.evaluate(rules, progress.visitor_id)
            except Exception as e:
                rule_error = f"Could not evaluate {kind} rules: {type(e).__name__}: {e}"
                logger.warning(f"{rule_error} (progress {progress.id})")
                continue
            if matched:
                await self._history(
                    progress,
                    block.id,
                    HistoryAction.SKIPPED,
                    {"reason": f"{kind}_rules_matched"},
                )
                return await self._save(progress, status), rule_error
        return None, rule_error

    async def _record_failure(
        self, progress: SeriesProgress, block: SeriesBlock, error: str
    ) -> SeriesProgress:
        attempt_count = progress.attempt_count + 1
        await self._history(
            progress,
            block.id,
            HistoryAction.FAILED,
            {"error": error, "attempt": attempt_count},
        )

        if attempt_count >= self._config.max_block_attempts:
            return await self.fail(
                progress.model_copy(update={"attempt_count": attempt_count}),
                f"{error} (gave up after {attempt_count} attempts)",
            )

        delay = compute_retry_delay(
            attempt_count,
            self._config.retry_base_delay_seconds,
            self._config.retry_jitter_seconds,
        )
        logger.warning(
            f"Block {block.id} failed for progress {progress.id} "
            f"(attempt {attempt_count}): {error}; retrying in {delay.total_seconds():.0f}s"
        )
        return await self._save(
            progress,
            ProgressStatus.WAITING,
            attempt_count=attempt_count,
            last_execution_error=error,
            wait_until=utcnow() + delay,
            wait_event_name=None,
        )

    async def _execute_block(
        self, progress: SeriesProgress, block: SeriesBlock
    ) -> _StepOutcome:
        if isinstance(block, WaitBlock):
            return self._execute_wait(block)

        if isinstance(block, ActionBlock):
            result = await self._actions.execute(
                block.action, progress.visitor_id, block.config
            )
            if not result.success:
                return _StepOutcome(
                    error=result.error or f"Action '{block.action}' failed"
                )
            return _StepOutcome(next_block_id=block.next_block_id)

        if isinstance(block, BranchBlock):
            if not block.rules:
                return _StepOutcome(
                    error=f"Branch block {block.id} has no rules", permanent=True
                )
            if self._conditions is None:
                return _StepOutcome(error="No condition evaluator configured")
            matched = await self._conditions.evaluate(block.rules, progress.visitor_id)
            return _StepOutcome(next_block_id=block.select(matched))

        if isinstance(block, ExitBlock):
            return _StepOutcome(status=ProgressStatus.EXITED)

        if isinstance(block, GoalBlock):
            return _StepOutcome(status=ProgressStatus.GOAL_REACHED)

        return _StepOutcome(
            error=f"Unsupported block type: {block.type}", permanent=True
        )

    def _execute_wait(self, block: WaitBlock) -> _StepOutcome:
        now = utcnow()

        if block.wait_type == "duration":
            duration = block.wait_duration or 0
            if duration < 0:
                return _StepOutcome(
                    error="Duration wait block requires a non-negative duration",
                    permanent=True,
                )
            if duration == 0:
                return _StepOutcome(next_block_id=block.next_block_id)
            return _StepOutcome(
                status=ProgressStatus.WAITING,
                wait_until=now + normalize_duration(duration, block.wait_unit),
            )

        if block.wait_type == "until_date":
            if block.wait_until_date is None:
                return _StepOutcome(
                    error="Until date wait block requires a valid date", permanent=True
                )
            if block.wait_until_date <= now:
                return _StepOutcome(next_block_id=block.next_block_id)
            return _StepOutcome(
                status=ProgressStatus.WAITING, wait_until=block.wait_until_date
            )

        if not block.wait_event_name:
            return _StepOutcome(
                error="Event wait block requires an event name", permanent=True
            )
        timeout_hours = self._config.event_wait_timeout_hours
        deadline = now + timedelta(hours=timeout_hours) if timeout_hours else None
        return _StepOutcome(
            status=ProgressStatus.WAITING,
            wait_until=deadline,
            wait_event_name=block.wait_event_name,
        )
