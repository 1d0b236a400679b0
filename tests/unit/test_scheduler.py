"""Backstop sweep tests."""

from datetime import timedelta

import pytest

from seriesflow.contracts import ProgressStatus, TriggerContext, utcnow
from seriesflow.scheduler import clamp_limit

SIGNED_UP = TriggerContext(source="event", event_name="signed_up")

DELAY_THEN_TAG = [
    {"id": "wait", "type": "wait", "wait_type": "duration",
     "wait_duration": 10, "next_block_id": "tag"},
    {"id": "tag", "type": "action", "action": "tag_visitor"},
]


async def _due_progress(engine, repository, visitors):
    records = []
    for visitor in visitors:
        progress = (await engine.evaluate_enrollment("ws_1", visitor, SIGNED_UP))[0].progress
        records.append(
            await repository.update_progress(
                progress.model_copy(update={"wait_until": utcnow() - timedelta(minutes=1)})
            )
        )
    return records


def test_clamp_limit():
    assert clamp_limit(None, 1000, 5000) == 1000
    assert clamp_limit(0, 1000, 5000) == 1000
    assert clamp_limit(-3, 1000, 5000) == 1000
    assert clamp_limit(20, 1000, 5000) == 20
    assert clamp_limit(99999, 1000, 5000) == 5000


@pytest.mark.asyncio
async def test_sweep_resumes_due_records(engine, make_series, repository, tag_action):
    await make_series(DELAY_THEN_TAG)
    await _due_progress(engine, repository, ["a", "b", "c"])

    summary = await engine.process_waiting_progress()
    assert summary.scanned == 3
    assert summary.resumed == 3
    assert sorted(c[0] for c in tag_action.calls) == ["a", "b", "c"]

    again = await engine.process_waiting_progress()
    assert again.scanned == 0
    assert len(tag_action.calls) == 3


@pytest.mark.asyncio
async def test_sweep_respects_batch_limit(engine, make_series, repository, tag_action):
    await make_series(DELAY_THEN_TAG)
    await _due_progress(engine, repository, ["a", "b", "c"])

    summary = await engine.process_waiting_progress(waiting_limit_per_series=2)
    assert summary.resumed == 2

    summary = await engine.process_waiting_progress(waiting_limit_per_series=2)
    assert summary.resumed == 1
    assert len(tag_action.calls) == 3


@pytest.mark.asyncio
async def test_event_timeout_resume_policy(engine, make_series, repository, send_action):
    engine.config.engine.event_timeout_action = "resume"
    await make_series(
        [
            {"id": "wait", "type": "wait", "wait_type": "event",
             "wait_event_name": "checkout_completed", "next_block_id": "send"},
            {"id": "send", "type": "action", "action": "send_message"},
        ]
    )
    (progress,) = await _due_progress(engine, repository, ["v1"])

    summary = await engine.process_waiting_progress()
    assert summary.timed_out == 1

    stored = await repository.get_progress(progress.id)
    assert stored.status == ProgressStatus.COMPLETED
    assert len(send_action.calls) == 1


@pytest.mark.asyncio
async def test_scheduler_run_stops_after_lifespan(engine, make_series, repository, tag_action):
    await make_series(DELAY_THEN_TAG)
    await _due_progress(engine, repository, ["v1"])

    await engine.scheduler.run(interval_seconds=0.01, lifespan=0.05)
    assert len(tag_action.calls) == 1
