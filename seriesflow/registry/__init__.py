"""Registry of named action executors."""

from __future__ import annotations

import importlib
import inspect
import logging
from typing import Callable, Dict, Mapping, Optional

from .models import ActionExecutionError, ActionExecutor, ActionResult

logger = logging.getLogger(__name__)


class UnknownActionError(ActionExecutionError):
    """Raised when a block references an action with no registered executor."""


class ActionRegistry:
    """Maps action names used by action blocks to executor callables.

    The engine never implements side effects itself; every action block is
    resolved here by name at execution time.
    """

    def __init__(self, executors: Optional[Mapping[str, ActionExecutor]] = None):
        self._executors: Dict[str, ActionExecutor] = dict(executors or {})

    def register(self, name: str, executor: ActionExecutor) -> None:
        if not name:
            raise ValueError("action name must be a non-empty string")
        if name in self._executors:
            logger.warning(f"Replacing executor registered for action '{name}'")
        self._executors[name] = executor

    def action(self, name: str) -> Callable[[ActionExecutor], ActionExecutor]:
        """Decorator form of :meth:`register`."""

        def decorator(func: ActionExecutor) -> ActionExecutor:
            self.register(name, func)
            return func

        return decorator

    def names(self) -> list[str]:
        return sorted(self._executors)

    def __contains__(self, name: object) -> bool:
        return name in self._executors

    async def execute(self, name: str, visitor_id: str, config: dict) -> ActionResult:
        """Run the executor for ``name``.

        Returns the executor's result normalised to :class:`ActionResult`.
        Errors raised by the executor propagate to the caller.
        """
        executor = self._executors.get(name)
        if executor is None:
            raise UnknownActionError(f"No executor registered for action '{name}'")

        result = executor(visitor_id, dict(config))
        if inspect.isawaitable(result):
            result = await result

        if isinstance(result, ActionResult):
            return result
        if result is False:
            return ActionResult.failed(f"Action '{name}' reported failure")
        return ActionResult()

    @classmethod
    def from_import_paths(cls, paths: Mapping[str, str]) -> "ActionRegistry":
        """Build a registry from ``{name: "module:attribute"}`` entries."""
        registry = cls()
        for name, path in paths.items():
            registry.register(name, _import_executor(path))
        return registry


def _import_executor(path: str) -> ActionExecutor:
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Action path must look like 'module:attribute', got '{path}'")
    try:
        module = importlib.import_module(module_name)
        executor = getattr(module, attribute)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"Failed to import action executor '{path}': {e}")
    if not callable(executor):
        raise ValueError(f"Action executor '{path}' is not callable")
    return executor


# Process-wide registry used when no explicit registry is passed to the engine.
REGISTRY = ActionRegistry()


def register_action(name: str) -> Callable[[ActionExecutor], ActionExecutor]:
    """Register a function on ``REGISTRY`` under ``name``."""
    return REGISTRY.action(name)


__all__ = [
    "ActionExecutionError",
    "ActionExecutor",
    "ActionRegistry",
    "ActionResult",
    "REGISTRY",
    "UnknownActionError",
    "register_action",
]
