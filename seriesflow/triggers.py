"""Entry trigger evaluation and enrollment."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from .conditions import ConditionEvaluator
from .contracts import (
    EnrollmentResult,
    HistoryAction,
    ProgressHistoryEntry,
    ProgressStatus,
    Series,
    SeriesBlock,
    SeriesProgress,
    SeriesStatus,
    TriggerContext,
)
from .execute import GraphExecutor
from .persistence import SeriesRepository

logger = logging.getLogger(__name__)


def find_entry_blocks(blocks: Sequence[SeriesBlock]) -> list[SeriesBlock]:
    """Return blocks that no other block points to."""
    referenced = {target for block in blocks for target in block.successors()}
    return [block for block in blocks if block.id not in referenced]


def resolve_entry_block(
    series: Series, blocks: Sequence[SeriesBlock]
) -> tuple[Optional[SeriesBlock], Optional[str]]:
    """Return the entry block of ``series`` or a description of why there is none."""
    if series.entry_block_id:
        for block in blocks:
            if block.id == series.entry_block_id:
                return block, None
        return None, f"Entry block {series.entry_block_id} not found in series {series.id}"

    if not blocks:
        return None, f"Series {series.id} has no blocks"
    entries = find_entry_blocks(blocks)
    if len(entries) != 1:
        return None, (
            f"Series {series.id} has {len(entries)} candidate entry blocks; "
            "expected exactly one"
        )
    return entries[0], None


class EntryTriggerEvaluator:
    """Enrolls visitors into active series whose entry triggers match."""

    def __init__(
        self,
        repository: SeriesRepository,
        executor: GraphExecutor,
        conditions: Optional[ConditionEvaluator] = None,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._conditions = conditions

    async def evaluate_enrollment(
        self,
        workspace_id: str,
        visitor_id: str,
        trigger_context: TriggerContext | dict,
    ) -> list[EnrollmentResult]:
        """Enroll ``visitor_id`` into every matching active series.

        Returns one result per series whose entry triggers matched, whether or
        not the visitor was newly enrolled.
        """
        if not isinstance(trigger_context, TriggerContext):
            trigger_context = TriggerContext.model_validate(trigger_context)

        candidates = [
            series
            for series in await self._repository.list_series(
                workspace_id=workspace_id, status=SeriesStatus.ACTIVE
            )
            if series.accepts(trigger_context)
        ]

        results = []
        for series in candidates:
            results.append(await self._enroll(series, visitor_id, trigger_context))
        return results

    async def _enroll(
        self, series: Series, visitor_id: str, context: TriggerContext
    ) -> EnrollmentResult:
        existing = await self._repository.find_open_progress(visitor_id, series.id)
        if existing is not None:
            return EnrollmentResult(
                series_id=series.id,
                entered=False,
                reason="already_enrolled",
                progress=existing,
            )

        if series.entry_rules and self._conditions is not None:
            try:
                matched = await self._conditions.evaluate(series.entry_rules, visitor_id)
            except Exception as e:
                logger.warning(
                    f"Could not evaluate entry rules of series {series.id} "
                    f"for visitor {visitor_id}: {e}"
                )
                return EnrollmentResult(
                    series_id=series.id, entered=False, reason="entry_rules_error"
                )
            if not matched:
                return EnrollmentResult(
                    series_id=series.id, entered=False, reason="entry_rules_not_met"
                )

        blocks = await self._repository.list_blocks(series.id)
        entry_block, problem = resolve_entry_block(series, blocks)

        progress = await self._repository.create_progress_if_absent(
            SeriesProgress(
                workspace_id=series.workspace_id,
                visitor_id=visitor_id,
                series_id=series.id,
                status=ProgressStatus.ACTIVE,
                current_block_id=entry_block.id if entry_block else None,
                last_trigger_source=context.source,
                last_trigger_event_name=context.event_name,
            )
        )
        if progress is None:
            logger.info(
                f"Visitor {visitor_id} enrolled concurrently in series {series.id}; skipping"
            )
            return EnrollmentResult(
                series_id=series.id,
                entered=False,
                reason="already_enrolled",
                progress=await self._repository.find_open_progress(
                    visitor_id, series.id
                ),
            )

        logger.info(
            f"Enrolled visitor {visitor_id} in series {series.id} "
            f"via {context.source}:{context.event_name or context.attribute_key}"
        )

        if problem is not None:
            progress = await self._executor.fail(progress, problem)
        else:
            await self._repository.append_history(
                ProgressHistoryEntry(
                    progress_id=progress.id,
                    block_id=entry_block.id,
                    action=HistoryAction.ENTERED,
                )
            )
            progress = await self._executor.advance(progress)

        return EnrollmentResult(series_id=series.id, entered=True, progress=progress)
