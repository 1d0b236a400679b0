"""Event resumption dispatcher tests."""

import pytest

from seriesflow.contracts import HistoryAction, ProgressStatus, TriggerContext
from seriesflow.persistence import StaleProgressError

SIGNED_UP = TriggerContext(source="event", event_name="signed_up")

CART_FLOW = [
    {"id": "wait", "type": "wait", "wait_type": "event",
     "wait_event_name": "checkout_completed", "next_block_id": "send"},
    {"id": "send", "type": "action", "action": "send_message"},
]


@pytest.mark.asyncio
async def test_resume_waiting_for_event(engine, make_series, send_action, repository):
    await make_series(CART_FLOW)
    enrolled = (await engine.evaluate_enrollment("ws_1", "v1", SIGNED_UP))[0].progress
    assert enrolled.status == ProgressStatus.WAITING

    resumed = await engine.resume_waiting_for_event("ws_1", "v1", "checkout_completed")

    assert [p.id for p in resumed] == [enrolled.id]
    assert resumed[0].status == ProgressStatus.COMPLETED
    assert send_action.calls == [("v1", {})]

    history = await repository.list_history(enrolled.id)
    wait_done = [h for h in history if h.block_id == "wait" and h.action == HistoryAction.COMPLETED]
    assert len(wait_done) == 1
    assert "resumed_at" in wait_done[0].result


@pytest.mark.asyncio
async def test_resumption_is_idempotent(engine, make_series, send_action):
    await make_series(CART_FLOW)
    await engine.evaluate_enrollment("ws_1", "v1", SIGNED_UP)

    await engine.resume_waiting_for_event("ws_1", "v1", "checkout_completed")
    second = await engine.resume_waiting_for_event("ws_1", "v1", "checkout_completed")

    assert second == []
    assert len(send_action.calls) == 1


@pytest.mark.asyncio
async def test_unrelated_events_are_ignored(engine, make_series, send_action):
    await make_series(CART_FLOW)
    await engine.evaluate_enrollment("ws_1", "v1", SIGNED_UP)

    assert await engine.resume_waiting_for_event("ws_1", "v1", "page_view") == []
    assert await engine.resume_waiting_for_event("ws_1", "v2", "checkout_completed") == []
    assert await engine.resume_waiting_for_event("ws_2", "v1", "checkout_completed") == []
    assert send_action.calls == []


@pytest.mark.asyncio
async def test_duration_wait_is_not_resumed_by_events(engine, make_series, tag_action):
    await make_series(
        [
            {"id": "wait", "type": "wait", "wait_type": "duration",
             "wait_duration": 1, "wait_unit": "days", "next_block_id": "tag"},
            {"id": "tag", "type": "action", "action": "tag_visitor"},
        ]
    )
    await engine.evaluate_enrollment("ws_1", "v1", SIGNED_UP)
    assert await engine.resume_waiting_for_event("ws_1", "v1", "signed_up") == []
    assert tag_action.calls == []


@pytest.mark.asyncio
async def test_lost_race_is_skipped(engine, make_series, repository, monkeypatch):
    await make_series(CART_FLOW)
    enrolled = (await engine.evaluate_enrollment("ws_1", "v1", SIGNED_UP))[0].progress

    async def claimed_elsewhere(progress):
        raise StaleProgressError(progress.id, progress.version)

    monkeypatch.setattr(engine.executor, "resume", claimed_elsewhere)
    assert await engine.resume_waiting_for_event("ws_1", "v1", "checkout_completed") == []

    stored = await repository.get_progress(enrolled.id)
    assert stored.status == ProgressStatus.WAITING
