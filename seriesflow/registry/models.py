"""Action executor contracts."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel


class ActionResult(BaseModel):
    """Outcome reported by an action executor."""

    success: bool = True
    error: Optional[str] = None
    output: Optional[Dict[str, Any]] = None

    @classmethod
    def failed(cls, error: str) -> "ActionResult":
        return cls(success=False, error=error)


class ActionExecutionError(Exception):
    """Raised by an executor to report a failed side effect."""


ActionReturn = Union[ActionResult, bool, None]

# Executors receive ``(visitor_id, config)`` and may be sync or async.
ActionExecutor = Callable[
    [str, Dict[str, Any]], Union[ActionReturn, Awaitable[ActionReturn]]
]
