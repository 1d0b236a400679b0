"""Facade wiring repository, actions and conditions into one engine."""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from .conditions import AudienceRuleEvaluator, ConditionEvaluator
from .config import SeriesflowConfig, load_config
from .constants import DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT
from .contracts import (
    EnrollmentResult,
    ProgressHistoryEntry,
    ProgressStatus,
    SeriesProgress,
    SignalOutcome,
    SweepSummary,
    TriggerContext,
)
from .dispatch import EventResumptionDispatcher
from .execute import GraphExecutor
from .persistence import SeriesRepository, get_repository
from .registry import REGISTRY, ActionRegistry
from .scheduler import BackstopScheduler, clamp_limit
from .triggers import EntryTriggerEvaluator

logger = logging.getLogger(__name__)


class ProgressDetails(BaseModel):
    progress: SeriesProgress
    history: List[ProgressHistoryEntry] = Field(default_factory=list)


class SeriesEngine:
    """Inbound interface of the series engine.

    When the runtime is disabled through configuration every inbound
    operation becomes a logged no-op.
    """

    def __init__(
        self,
        repository: SeriesRepository | None = None,
        actions: ActionRegistry | None = None,
        conditions: ConditionEvaluator | None = None,
        config: SeriesflowConfig | None = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        if actions is None:
            actions = (
                ActionRegistry.from_import_paths(self.config.actions)
                if self.config.actions
                else REGISTRY
            )
        self.actions = actions
        self.conditions = conditions or AudienceRuleEvaluator()

        self.executor = GraphExecutor(
            self.repository, self.actions, self.conditions, self.config.engine
        )
        self.triggers = EntryTriggerEvaluator(
            self.repository, self.executor, self.conditions
        )
        self.dispatcher = EventResumptionDispatcher(self.repository, self.executor)
        self.scheduler = BackstopScheduler(
            self.repository, self.executor, self.config.scheduler
        )

    @property
    def runtime_enabled(self) -> bool:
        return self.config.engine.runtime_enabled

    def _guard(self, operation: str) -> bool:
        if not self.runtime_enabled:
            logger.warning(f"Series runtime is disabled; ignoring {operation}")
            return False
        return True

    async def evaluate_enrollment(
        self,
        workspace_id: str,
        visitor_id: str,
        trigger_context: TriggerContext | dict,
    ) -> list[EnrollmentResult]:
        if not self._guard("evaluate_enrollment"):
            return []
        return await self.triggers.evaluate_enrollment(
            workspace_id, visitor_id, trigger_context
        )

    async def resume_waiting_for_event(
        self, workspace_id: str, visitor_id: str, event_name: str
    ) -> list[SeriesProgress]:
        if not self._guard("resume_waiting_for_event"):
            return []
        return await self.dispatcher.resume_waiting_for_event(
            workspace_id, visitor_id, event_name
        )

    async def process_waiting_progress(
        self,
        series_limit: Optional[int] = None,
        waiting_limit_per_series: Optional[int] = None,
    ) -> SweepSummary:
        if not self._guard("process_waiting_progress"):
            return SweepSummary()
        return await self.scheduler.process_waiting_progress(
            series_limit, waiting_limit_per_series
        )

    async def advance(self, progress: SeriesProgress) -> SeriesProgress:
        if not self._guard("advance"):
            return progress
        return await self.executor.advance(progress)

    async def ingest_signal(
        self,
        workspace_id: str,
        visitor_id: str,
        trigger_context: TriggerContext | dict,
    ) -> SignalOutcome:
        """Enroll on a signal, then resume event waits when it is an event.

        Only records already waiting when the signal arrived are resumed, so a
        series entered by this event does not also consume it at a wait block.
        """
        if not self._guard("ingest_signal"):
            return SignalOutcome()
        if not isinstance(trigger_context, TriggerContext):
            trigger_context = TriggerContext.model_validate(trigger_context)

        waiting_before: set[str] = set()
        if trigger_context.is_event:
            waiting_before = {
                p.id
                for p in await self.repository.list_waiting_for_event(
                    visitor_id, trigger_context.event_name
                )
            }

        enrollments = await self.triggers.evaluate_enrollment(
            workspace_id, visitor_id, trigger_context
        )
        resumed: list[SeriesProgress] = []
        if waiting_before:
            resumed = await self.dispatcher.resume_waiting_for_event(
                workspace_id,
                visitor_id,
                trigger_context.event_name,
                only=waiting_before,
            )
        return SignalOutcome(enrollments=enrollments, resumed=resumed)

    async def exit_progress(
        self, progress_id: str, reason: Optional[str] = None
    ) -> SeriesProgress | None:
        progress = await self.repository.get_progress(progress_id)
        if progress is None:
            return None
        return await self.executor.exit_progress(progress, reason)

    async def mark_goal_reached(self, progress_id: str) -> SeriesProgress | None:
        progress = await self.repository.get_progress(progress_id)
        if progress is None:
            return None
        return await self.executor.mark_goal_reached(progress)

    async def get_progress(
        self, progress_id: str, history_limit: Optional[int] = None
    ) -> ProgressDetails | None:
        progress = await self.repository.get_progress(progress_id)
        if progress is None:
            return None
        limit = clamp_limit(history_limit, DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT)
        history = await self.repository.list_history(progress_id, limit)
        return ProgressDetails(progress=progress, history=history)

    async def get_stats(self, series_id: str) -> dict[str, int]:
        """Progress counts per status, including zero counts and a total."""
        counts = await self.repository.count_progress_by_status(series_id)
        stats = {status.value: counts.get(status.value, 0) for status in ProgressStatus}
        stats["total"] = sum(stats.values())
        return stats
