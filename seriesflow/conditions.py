"""Audience-rule conditions used by branch blocks and series entry/exit/goal rules."""

from __future__ import annotations

import inspect
import logging
from typing import (
    Annotated,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Protocol,
    Union,
)

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "greater_than_or_equals",
    "less_than_or_equals",
    "is_set",
    "is_not_set",
]


class EventFilter(BaseModel):
    name: str
    count_operator: Literal["at_least", "at_most", "exactly"] = "at_least"
    count: int = 1


class PropertyReference(BaseModel):
    source: Literal["system", "custom", "event"]
    key: str = ""
    event_filter: Optional[EventFilter] = None


class AudienceCondition(BaseModel):
    type: Literal["condition"] = "condition"
    property: PropertyReference
    operator: ConditionOperator
    value: Optional[Union[str, int, float, bool]] = None


class AudienceGroup(BaseModel):
    type: Literal["group"] = "group"
    operator: Literal["and", "or"] = "and"
    conditions: List["AudienceRule"] = Field(default_factory=list)


AudienceRule = Annotated[
    Union[AudienceCondition, AudienceGroup], Field(discriminator="type")
]
AudienceGroup.model_rebuild()

_rule_adapter: TypeAdapter = TypeAdapter(AudienceRule)


def parse_rule(rules: Dict[str, Any]) -> Union[AudienceCondition, AudienceGroup]:
    return _rule_adapter.validate_python(rules)


def validate_rule(rules: Any) -> bool:
    """Return ``True`` when ``rules`` is a well-formed audience rule."""
    if not isinstance(rules, dict):
        return False
    try:
        parse_rule(rules)
    except ValidationError:
        return False
    return True


class VisitorProfile(BaseModel):
    """Snapshot of the attributes conditions are evaluated against."""

    visitor_id: str
    system: Dict[str, Any] = Field(default_factory=dict)
    custom_attributes: Dict[str, Any] = Field(default_factory=dict)
    event_counts: Dict[str, int] = Field(default_factory=dict)


ProfileLoader = Callable[
    [str], Union[Optional[VisitorProfile], Awaitable[Optional[VisitorProfile]]]
]


class ConditionEvaluator(Protocol):
    """Pure predicate over a visitor's current profile."""

    async def evaluate(self, rules: Dict[str, Any], visitor_id: str) -> bool:
        """Return whether ``rules`` hold for ``visitor_id``."""


class InMemoryVisitorDirectory:
    """Profile loader backed by a dict; used for tests and local runs."""

    def __init__(self) -> None:
        self._profiles: Dict[str, VisitorProfile] = {}

    def upsert(self, profile: VisitorProfile) -> None:
        self._profiles[profile.visitor_id] = profile

    def __call__(self, visitor_id: str) -> Optional[VisitorProfile]:
        return self._profiles.get(visitor_id)


def _both_str(actual: Any, expected: Any) -> bool:
    return isinstance(actual, str) and isinstance(expected, str)


def _both_number(actual: Any, expected: Any) -> bool:
    def is_number(v: Any) -> bool:
        return isinstance(v, (int, float)) and not isinstance(v, bool)

    return is_number(actual) and is_number(expected)


def evaluate_operator(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "is_set":
        return actual is not None and actual != ""
    if operator == "is_not_set":
        return actual is None or actual == ""
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        return _both_str(actual, expected) and expected.lower() in actual.lower()
    if operator == "not_contains":
        if _both_str(actual, expected):
            return expected.lower() not in actual.lower()
        return True
    if operator == "starts_with":
        return _both_str(actual, expected) and actual.lower().startswith(
            expected.lower()
        )
    if operator == "ends_with":
        return _both_str(actual, expected) and actual.lower().endswith(
            expected.lower()
        )
    if not _both_number(actual, expected):
        return False
    if operator == "greater_than":
        return actual > expected
    if operator == "less_than":
        return actual < expected
    if operator == "greater_than_or_equals":
        return actual >= expected
    if operator == "less_than_or_equals":
        return actual <= expected
    return False


def _evaluate_event_count(count: int, event_filter: EventFilter) -> bool:
    if event_filter.count_operator == "at_most":
        return count <= event_filter.count
    if event_filter.count_operator == "exactly":
        return count == event_filter.count
    return count >= event_filter.count


class AudienceRuleEvaluator:
    """Evaluate audience rules against profiles returned by ``profile_loader``.

    Unknown visitors are evaluated against an empty profile, so ``is_not_set``
    style conditions still behave predictably.
    """

    def __init__(self, profile_loader: Optional[ProfileLoader] = None) -> None:
        self._profile_loader = profile_loader or InMemoryVisitorDirectory()

    async def _load_profile(self, visitor_id: str) -> VisitorProfile:
        profile = self._profile_loader(visitor_id)
        if inspect.isawaitable(profile):
            profile = await profile
        if profile is None:
            logger.debug(f"No profile for visitor {visitor_id}; using empty profile")
            return VisitorProfile(visitor_id=visitor_id)
        return profile

    async def evaluate(self, rules: Dict[str, Any], visitor_id: str) -> bool:
        rule = parse_rule(rules)
        profile = await self._load_profile(visitor_id)
        return self._evaluate(rule, profile)

    def _evaluate(
        self, rule: Union[AudienceCondition, AudienceGroup], profile: VisitorProfile
    ) -> bool:
        if isinstance(rule, AudienceGroup):
            if not rule.conditions:
                return True
            results = (self._evaluate(c, profile) for c in rule.conditions)
            return all(results) if rule.operator == "and" else any(results)

        prop = rule.property
        if prop.source == "event":
            if prop.event_filter is None:
                return False
            count = profile.event_counts.get(prop.event_filter.name, 0)
            return _evaluate_event_count(count, prop.event_filter)

        attributes = profile.system if prop.source == "system" else profile.custom_attributes
        return evaluate_operator(rule.operator, attributes.get(prop.key), rule.value)


__all__ = [
    "AudienceCondition",
    "AudienceGroup",
    "AudienceRuleEvaluator",
    "ConditionEvaluator",
    "InMemoryVisitorDirectory",
    "VisitorProfile",
    "evaluate_operator",
    "parse_rule",
    "validate_rule",
]
