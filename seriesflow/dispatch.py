"""Event resumption dispatcher for series progress."""

from __future__ import annotations

import logging
from typing import Collection, Optional

from .contracts import SeriesProgress
from .execute import GraphExecutor
from .persistence import SeriesRepository, StaleProgressError

logger = logging.getLogger(__name__)


class EventResumptionDispatcher:
    """Resumes progress records suspended on a named visitor event."""

    def __init__(self, repository: SeriesRepository, executor: GraphExecutor) -> None:
        self._repository = repository
        self._executor = executor

    async def resume_waiting_for_event(
        self,
        workspace_id: str,
        visitor_id: str,
        event_name: str,
        only: Optional[Collection[str]] = None,
    ) -> list[SeriesProgress]:
        """Resume every record of ``visitor_id`` waiting for ``event_name``.

        Args:
            workspace_id: Workspace the event belongs to; records of series in
                other workspaces are ignored.
            visitor_id: Visitor that fired the event.
            event_name: Name of the fired event.
            only: Restrict resumption to these progress ids.

        Returns:
            The resumed records in their post-execution state. Empty when no
            record was waiting for the event.
        """
        waiting = await self._repository.list_waiting_for_event(visitor_id, event_name)
        resumed: list[SeriesProgress] = []

        for progress in waiting:
            if progress.workspace_id != workspace_id:
                continue
            if only is not None and progress.id not in only:
                continue
            try:
                resumed.append(await self._executor.resume(progress))
            except StaleProgressError:
                logger.info(
                    f"Progress {progress.id} was claimed by another caller; skipping"
                )

        if resumed:
            logger.info(
                f"Event '{event_name}' resumed {len(resumed)} progress record(s) "
                f"for visitor {visitor_id}"
            )
        return resumed
