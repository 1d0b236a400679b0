"""Static validation of a series graph before activation."""

from __future__ import annotations

from collections import deque
from typing import Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from .conditions import validate_rule
from .contracts import (
    ActionBlock,
    BranchBlock,
    ExitBlock,
    GoalBlock,
    Series,
    SeriesBlock,
    WaitBlock,
)
from .triggers import find_entry_blocks


class ReadinessIssue(BaseModel):
    code: str
    message: str
    remediation: str
    block_id: Optional[str] = None


class ReadinessResult(BaseModel):
    blockers: List[ReadinessIssue] = Field(default_factory=list)
    warnings: List[ReadinessIssue] = Field(default_factory=list)

    @property
    def is_ready(self) -> bool:
        return not self.blockers


def _reachable(start: str, blocks: dict[str, SeriesBlock]) -> set[str]:
    seen: set[str] = set()
    queue = deque([start])
    while queue:
        current = queue.popleft()
        if current in seen or current not in blocks:
            continue
        seen.add(current)
        queue.extend(blocks[current].successors())
    return seen


def check_readiness(
    series: Series,
    blocks: Sequence[SeriesBlock],
    known_actions: Optional[Iterable[str]] = None,
) -> ReadinessResult:
    """Collect blockers and warnings for ``series``.

    ``known_actions``, when given, restricts action blocks to registered
    executor names.
    """
    result = ReadinessResult()

    def blocker(code: str, message: str, remediation: str, block_id: str | None = None):
        result.blockers.append(
            ReadinessIssue(
                code=code, message=message, remediation=remediation, block_id=block_id
            )
        )

    def warning(code: str, message: str, remediation: str, block_id: str | None = None):
        result.warnings.append(
            ReadinessIssue(
                code=code, message=message, remediation=remediation, block_id=block_id
            )
        )

    by_id = {block.id: block for block in blocks}
    actions = set(known_actions) if known_actions is not None else None

    if not blocks:
        blocker(
            "SERIES_GRAPH_EMPTY",
            "Series must contain at least one block before activation.",
            "Add a starting block, then connect downstream steps.",
        )

    entry_id = series.entry_block_id
    if entry_id and entry_id not in by_id:
        blocker(
            "SERIES_ENTRY_BLOCK_MISSING",
            f"Entry block {entry_id} does not exist.",
            "Point the series entry at an existing block.",
        )
        entry_id = None
    elif not entry_id and blocks:
        entries = find_entry_blocks(blocks)
        if not entries:
            blocker(
                "SERIES_NO_ENTRY_PATH",
                "Series graph has no entry block.",
                "Ensure one block has no incoming reference or set an entry block.",
            )
        elif len(entries) > 1:
            blocker(
                "SERIES_MULTIPLE_ENTRY_PATHS",
                "Series graph has multiple entry blocks.",
                "Connect the graph so a single entry remains, or set an entry block.",
            )
        else:
            entry_id = entries[0].id

    for block in blocks:
        for target in block.successors():
            if target not in by_id:
                blocker(
                    "SERIES_INVALID_CONNECTION",
                    f"Block {block.id} references missing block {target}.",
                    "Delete and recreate the invalid connection.",
                    block.id,
                )

    if entry_id:
        reachable = _reachable(entry_id, by_id)
        for block in blocks:
            if block.id not in reachable:
                blocker(
                    "SERIES_UNREACHABLE_BLOCK",
                    f"Block {block.type} is unreachable from the series entry path.",
                    "Connect this block into the main path or remove it.",
                    block.id,
                )

    for block in blocks:
        if isinstance(block, BranchBlock):
            if not validate_rule(block.rules):
                blocker(
                    "SERIES_RULE_CONFIG_INVALID",
                    "Branch block is missing valid audience rule conditions.",
                    "Configure a valid yes/no rule expression.",
                    block.id,
                )
            if not block.yes_block_id or not block.no_block_id:
                blocker(
                    "SERIES_RULE_BRANCHES_REQUIRED",
                    "Branch blocks require both a yes and a no branch.",
                    "Add one yes and one no connection from this branch block.",
                    block.id,
                )

        elif isinstance(block, WaitBlock):
            if block.wait_type == "duration" and (
                block.wait_duration is None or block.wait_duration < 0
            ):
                blocker(
                    "SERIES_WAIT_DURATION_INVALID",
                    "Duration wait block requires a non-negative duration.",
                    "Set a wait duration and unit.",
                    block.id,
                )
            if block.wait_type == "until_date" and block.wait_until_date is None:
                blocker(
                    "SERIES_WAIT_UNTIL_DATE_REQUIRED",
                    "Until date wait block is missing a target timestamp.",
                    "Set a valid target date/time for this wait block.",
                    block.id,
                )
            if block.wait_type == "event" and not (block.wait_event_name or "").strip():
                blocker(
                    "SERIES_WAIT_UNTIL_EVENT_REQUIRED",
                    "Event wait block is missing event name.",
                    "Set the event name that should resume progress.",
                    block.id,
                )

        elif isinstance(block, ActionBlock):
            if actions is not None and block.action not in actions:
                blocker(
                    "SERIES_ACTION_UNKNOWN",
                    f"No executor is registered for action '{block.action}'.",
                    "Register the action executor or change the block's action.",
                    block.id,
                )

        if not isinstance(block, (ExitBlock, GoalBlock)) and not block.successors():
            warning(
                "SERIES_PATH_TERMINATES",
                f"Block {block.type} has no outgoing connection and will complete the series.",
                "Add a downstream connection if continuation is intended.",
                block.id,
            )

    if not series.entry_triggers:
        warning(
            "SERIES_ENTRY_TRIGGER_RECOMMENDED",
            "Series has no entry triggers configured and will accept every signal.",
            "Define at least one trigger source.",
        )

    for label, rules in (
        ("entry", series.entry_rules),
        ("exit", series.exit_rules),
        ("goal", series.goal_rules),
    ):
        if rules is not None and not validate_rule(rules):
            blocker(
                f"SERIES_{label.upper()}_RULES_INVALID",
                f"Series {label} rules are not a valid audience rule.",
                f"Fix or remove the {label} rules.",
            )

    return result
