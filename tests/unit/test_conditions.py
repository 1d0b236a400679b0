"""Tests for audience rule evaluation."""

import pytest

from seriesflow.conditions import (
    AudienceRuleEvaluator,
    InMemoryVisitorDirectory,
    VisitorProfile,
    evaluate_operator,
    validate_rule,
)


def _condition(source, key, operator, value=None, **extra):
    return {
        "type": "condition",
        "property": {"source": source, "key": key, **extra},
        "operator": operator,
        "value": value,
    }


@pytest.fixture
def evaluator():
    directory = InMemoryVisitorDirectory()
    directory.upsert(
        VisitorProfile(
            visitor_id="v1",
            system={"email": "Ada@Example.com", "country": "DE", "sessions": 5},
            custom_attributes={"plan": "pro"},
            event_counts={"checkout_completed": 2},
        )
    )
    return AudienceRuleEvaluator(directory)


@pytest.mark.parametrize(
    "operator, actual, expected, result",
    [
        ("equals", "pro", "pro", True),
        ("not_equals", "pro", "free", True),
        ("contains", "Ada@Example.com", "example", True),
        ("not_contains", 5, "x", True),
        ("starts_with", "Ada", "ad", True),
        ("ends_with", "Ada", "DA", True),
        ("greater_than", 5, 3, True),
        ("greater_than", "5", 3, False),
        ("less_than_or_equals", 3, 3, True),
        ("is_set", "", None, False),
        ("is_not_set", None, None, True),
        ("unknown", 1, 1, False),
    ],
)
def test_evaluate_operator(operator, actual, expected, result):
    assert evaluate_operator(operator, actual, expected) is result


@pytest.mark.asyncio
async def test_condition_sources(evaluator):
    assert await evaluator.evaluate(_condition("system", "country", "equals", "DE"), "v1")
    assert await evaluator.evaluate(_condition("custom", "plan", "equals", "pro"), "v1")
    assert not await evaluator.evaluate(
        _condition("custom", "country", "equals", "DE"), "v1"
    )
    assert await evaluator.evaluate(
        _condition(
            "event",
            "",
            "equals",
            event_filter={"name": "checkout_completed", "count_operator": "at_least", "count": 2},
        ),
        "v1",
    )
    assert not await evaluator.evaluate(
        _condition(
            "event",
            "",
            "equals",
            event_filter={"name": "checkout_completed", "count_operator": "exactly", "count": 1},
        ),
        "v1",
    )


@pytest.mark.asyncio
async def test_groups_combine_conditions(evaluator):
    rules = {
        "type": "group",
        "operator": "and",
        "conditions": [
            _condition("system", "sessions", "greater_than", 3),
            {
                "type": "group",
                "operator": "or",
                "conditions": [
                    _condition("custom", "plan", "equals", "free"),
                    _condition("system", "email", "contains", "example.com"),
                ],
            },
        ],
    }
    assert await evaluator.evaluate(rules, "v1")
    assert await evaluator.evaluate({"type": "group", "conditions": []}, "v1")


@pytest.mark.asyncio
async def test_unknown_visitor_uses_empty_profile(evaluator):
    assert await evaluator.evaluate(_condition("custom", "plan", "is_not_set"), "nobody")
    assert not await evaluator.evaluate(
        _condition("custom", "plan", "equals", "pro"), "nobody"
    )


@pytest.mark.asyncio
async def test_async_profile_loader():
    async def loader(visitor_id):
        return VisitorProfile(visitor_id=visitor_id, custom_attributes={"vip": True})

    evaluator = AudienceRuleEvaluator(loader)
    assert await evaluator.evaluate(_condition("custom", "vip", "equals", True), "v9")


def test_validate_rule():
    assert validate_rule(_condition("system", "country", "equals", "DE"))
    assert not validate_rule({"type": "condition", "operator": "equals"})
    assert not validate_rule(None)
