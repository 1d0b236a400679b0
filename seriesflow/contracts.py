"""Core data contracts for the seriesflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class SeriesStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ProgressStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    EXITED = "exited"
    GOAL_REACHED = "goal_reached"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {
        ProgressStatus.COMPLETED,
        ProgressStatus.EXITED,
        ProgressStatus.GOAL_REACHED,
        ProgressStatus.FAILED,
    }
)

ALLOWED_TRANSITIONS: dict[ProgressStatus, set[ProgressStatus]] = {
    ProgressStatus.ACTIVE: {
        ProgressStatus.ACTIVE,
        ProgressStatus.WAITING,
        ProgressStatus.COMPLETED,
        ProgressStatus.EXITED,
        ProgressStatus.GOAL_REACHED,
        ProgressStatus.FAILED,
    },
    ProgressStatus.WAITING: {
        ProgressStatus.ACTIVE,
        ProgressStatus.EXITED,
        ProgressStatus.GOAL_REACHED,
        ProgressStatus.FAILED,
    },
    ProgressStatus.COMPLETED: set(),
    ProgressStatus.EXITED: set(),
    ProgressStatus.GOAL_REACHED: set(),
    ProgressStatus.FAILED: set(),
}


class IllegalTransitionError(ValueError):
    pass


def ensure_transition(current: ProgressStatus, target: ProgressStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise IllegalTransitionError(f"{current.value} -> {target.value}")


TriggerSource = Literal[
    "event", "auto_event", "visitor_attribute_changed", "visitor_state_changed"
]
EVENT_SOURCES = ("event", "auto_event")


class TriggerContext(BaseModel):
    """Stimulus matched against entry triggers and wait conditions."""

    source: TriggerSource
    event_name: Optional[str] = None
    attribute_key: Optional[str] = None
    from_value: Optional[Any] = None
    to_value: Optional[Any] = None

    @model_validator(mode="after")
    def _require_source_fields(self) -> "TriggerContext":
        if self.source in EVENT_SOURCES and not self.event_name:
            raise ValueError(f"event_name is required for source '{self.source}'")
        if self.source not in EVENT_SOURCES and not self.attribute_key:
            raise ValueError(f"attribute_key is required for source '{self.source}'")
        return self

    @property
    def is_event(self) -> bool:
        return self.source in EVENT_SOURCES


def normalize_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


class EntryTrigger(BaseModel):
    """Entry condition attached to a series."""

    source: TriggerSource
    event_name: Optional[str] = None
    attribute_key: Optional[str] = None
    from_value: Optional[Any] = None
    to_value: Optional[Any] = None

    def matches(self, context: TriggerContext) -> bool:
        if self.source != context.source:
            return False

        if self.source in EVENT_SOURCES:
            return not self.event_name or self.event_name == context.event_name

        if self.attribute_key and self.attribute_key != context.attribute_key:
            return False
        if self.from_value is not None and normalize_text(
            self.from_value
        ) != normalize_text(context.from_value):
            return False
        if self.to_value is not None and normalize_text(
            self.to_value
        ) != normalize_text(context.to_value):
            return False
        return True


class Series(BaseModel):
    """Workflow definition header. Read-only to the engine."""

    id: str = Field(default_factory=new_id)
    workspace_id: str
    name: str
    description: Optional[str] = None
    status: SeriesStatus = SeriesStatus.DRAFT
    entry_triggers: List[EntryTrigger] = Field(default_factory=list)
    entry_block_id: Optional[str] = None
    entry_rules: Optional[Dict[str, Any]] = None
    exit_rules: Optional[Dict[str, Any]] = None
    goal_rules: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def accepts(self, context: TriggerContext) -> bool:
        """Return ``True`` when any entry trigger matches ``context``.

        A series without entry triggers accepts every context.
        """
        if not self.entry_triggers:
            return True
        return any(trigger.matches(context) for trigger in self.entry_triggers)


class Position(BaseModel):
    x: float = 0
    y: float = 0


class _BlockBase(BaseModel):
    id: str = Field(default_factory=new_id)
    series_id: str
    position: Position = Field(default_factory=Position)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WaitBlock(_BlockBase):
    type: Literal["wait"] = "wait"
    wait_type: Literal["duration", "event", "until_date"]
    wait_duration: Optional[float] = None
    wait_unit: Literal["minutes", "hours", "days"] = "minutes"
    wait_event_name: Optional[str] = None
    wait_until_date: Optional[datetime] = None
    next_block_id: Optional[str] = None

    @field_validator("wait_until_date")
    @classmethod
    def _assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def successors(self) -> list[str]:
        return [self.next_block_id] if self.next_block_id else []


class ActionBlock(_BlockBase):
    type: Literal["action"] = "action"
    action: str
    config: Dict[str, Any] = Field(default_factory=dict)
    next_block_id: Optional[str] = None

    def successors(self) -> list[str]:
        return [self.next_block_id] if self.next_block_id else []


class BranchBlock(_BlockBase):
    type: Literal["branch"] = "branch"
    rules: Optional[Dict[str, Any]] = None
    yes_block_id: Optional[str] = None
    no_block_id: Optional[str] = None
    default_block_id: Optional[str] = None

    def select(self, matched: bool) -> Optional[str]:
        preferred = self.yes_block_id if matched else self.no_block_id
        return preferred or self.default_block_id

    def successors(self) -> list[str]:
        targets = [self.yes_block_id, self.no_block_id, self.default_block_id]
        return [t for t in targets if t]


class ExitBlock(_BlockBase):
    type: Literal["exit"] = "exit"

    def successors(self) -> list[str]:
        return []


class GoalBlock(_BlockBase):
    type: Literal["goal"] = "goal"

    def successors(self) -> list[str]:
        return []


SeriesBlock = Annotated[
    Union[WaitBlock, ActionBlock, BranchBlock, ExitBlock, GoalBlock],
    Field(discriminator="type"),
]

_block_adapter: TypeAdapter = TypeAdapter(SeriesBlock)


def parse_block(data: Any) -> SeriesBlock:
    """Validate a mapping (or JSON string) into the matching block variant."""
    if isinstance(data, (str, bytes)):
        return _block_adapter.validate_json(data)
    return _block_adapter.validate_python(data)


class SeriesProgress(BaseModel):
    """Durable execution state of one visitor in one series."""

    id: str = Field(default_factory=new_id)
    workspace_id: str
    visitor_id: str
    series_id: str
    status: ProgressStatus = ProgressStatus.ACTIVE
    current_block_id: Optional[str] = None
    wait_until: Optional[datetime] = None
    wait_event_name: Optional[str] = None
    attempt_count: int = 0
    last_execution_error: Optional[str] = None
    last_trigger_source: Optional[str] = None
    last_trigger_event_name: Optional[str] = None
    version: int = 0
    enrolled_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None
    goal_reached_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class HistoryAction(str, Enum):
    ENTERED = "entered"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ProgressHistoryEntry(BaseModel):
    """Record of a block transition for one progress record."""

    id: Optional[int] = None
    progress_id: str
    block_id: Optional[str] = None
    action: HistoryAction
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)


class EnrollmentResult(BaseModel):
    series_id: str
    entered: bool
    reason: Optional[str] = None
    progress: Optional[SeriesProgress] = None


class SweepSummary(BaseModel):
    """Outcome of one backstop sweep."""

    scanned: int = 0
    resumed: int = 0
    timed_out: int = 0
    skipped: int = 0


class SignalOutcome(BaseModel):
    """Everything one ingested signal caused."""

    enrollments: List[EnrollmentResult] = Field(default_factory=list)
    resumed: List[SeriesProgress] = Field(default_factory=list)


class VisitorSignal(BaseModel):
    """Envelope for a visitor signal carried over a transport."""

    message_id: str = Field(default_factory=new_id)
    workspace_id: str
    visitor_id: str
    context: TriggerContext
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "VisitorSignal":
        return cls.model_validate_json(data)
