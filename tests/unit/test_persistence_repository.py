"""Repository behaviour shared by the in-memory and SQLite backends."""

from datetime import timedelta

import pytest

from seriesflow.contracts import (
    HistoryAction,
    ProgressHistoryEntry,
    ProgressStatus,
    Series,
    SeriesProgress,
    SeriesStatus,
    WaitBlock,
    utcnow,
)
from seriesflow.persistence import (
    InMemorySeriesRepository,
    SQLiteSeriesRepository,
    StaleProgressError,
    get_repository,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        return InMemorySeriesRepository()
    return SQLiteSeriesRepository(tmp_path / "series.db")


def _progress(**fields) -> SeriesProgress:
    data = {"workspace_id": "ws", "visitor_id": "v1", "series_id": "s1"}
    data.update(fields)
    return SeriesProgress(**data)


@pytest.mark.asyncio
async def test_series_and_blocks_roundtrip(repo):
    active = Series(workspace_id="ws", name="A", status=SeriesStatus.ACTIVE)
    draft = Series(workspace_id="ws", name="B")
    other = Series(workspace_id="other", name="C", status=SeriesStatus.ACTIVE)
    for series in (active, draft, other):
        await repo.save_series(series)

    block = WaitBlock(
        series_id=active.id, wait_type="event", wait_event_name="checkout_completed"
    )
    await repo.save_blocks([block])

    listed = await repo.list_series(workspace_id="ws", status=SeriesStatus.ACTIVE)
    assert [s.id for s in listed] == [active.id]
    assert len(await repo.list_series()) == 3
    assert len(await repo.list_series(limit=2)) == 2

    blocks = await repo.list_blocks(active.id)
    assert blocks == [block]
    assert await repo.get_series("missing") is None


@pytest.mark.asyncio
async def test_create_progress_if_absent_allows_one_open_record(repo):
    first = await repo.create_progress_if_absent(_progress())
    assert first is not None
    assert await repo.create_progress_if_absent(_progress()) is None

    other_series = await repo.create_progress_if_absent(_progress(series_id="s2"))
    assert other_series is not None

    finished = await repo.update_progress(
        first.model_copy(update={"status": ProgressStatus.COMPLETED})
    )
    assert finished.status == ProgressStatus.COMPLETED
    assert await repo.find_open_progress("v1", "s1") is None
    assert await repo.create_progress_if_absent(_progress()) is not None


@pytest.mark.asyncio
async def test_update_progress_detects_stale_version(repo):
    created = await repo.create_progress_if_absent(_progress())
    updated = await repo.update_progress(
        created.model_copy(update={"current_block_id": "b2"})
    )
    assert updated.version == created.version + 1

    with pytest.raises(StaleProgressError):
        await repo.update_progress(created.model_copy(update={"current_block_id": "b3"}))

    stored = await repo.get_progress(created.id)
    assert stored.current_block_id == "b2"
    assert stored.version == updated.version


@pytest.mark.asyncio
async def test_due_and_event_queries(repo):
    now = utcnow()
    due_late = await repo.create_progress_if_absent(
        _progress(
            visitor_id="a",
            status=ProgressStatus.WAITING,
            wait_until=now - timedelta(minutes=1),
        )
    )
    due_early = await repo.create_progress_if_absent(
        _progress(
            visitor_id="b",
            status=ProgressStatus.WAITING,
            wait_until=now - timedelta(hours=1),
        )
    )
    await repo.create_progress_if_absent(
        _progress(
            visitor_id="c",
            status=ProgressStatus.WAITING,
            wait_until=now + timedelta(hours=1),
        )
    )
    event_wait = await repo.create_progress_if_absent(
        _progress(
            visitor_id="a",
            series_id="s2",
            status=ProgressStatus.WAITING,
            wait_event_name="checkout_completed",
        )
    )

    due = await repo.list_due_progress("s1", now, limit=10)
    assert [p.id for p in due] == [due_early.id, due_late.id]
    assert len(await repo.list_due_progress("s1", now, limit=1)) == 1
    assert await repo.list_due_progress("s2", now, limit=10) == []

    waiting = await repo.list_waiting_for_event("a", "checkout_completed")
    assert [p.id for p in waiting] == [event_wait.id]
    assert await repo.list_waiting_for_event("b", "checkout_completed") == []

    counts = await repo.count_progress_by_status("s1")
    assert counts == {"waiting": 3}
    assert len(await repo.list_progress(visitor_id="a")) == 2
    assert len(await repo.list_progress(status=ProgressStatus.ACTIVE)) == 0


@pytest.mark.asyncio
async def test_history_is_oldest_first_and_limited(repo):
    for action in (HistoryAction.ENTERED, HistoryAction.COMPLETED, HistoryAction.FAILED):
        await repo.append_history(
            ProgressHistoryEntry(
                progress_id="p1", block_id="b1", action=action, result={"a": action.value}
            )
        )

    history = await repo.list_history("p1")
    assert [h.action for h in history] == [
        HistoryAction.ENTERED,
        HistoryAction.COMPLETED,
        HistoryAction.FAILED,
    ]
    assert history[1].result == {"a": "completed"}

    recent = await repo.list_history("p1", limit=2)
    assert [h.action for h in recent] == [HistoryAction.COMPLETED, HistoryAction.FAILED]


@pytest.mark.asyncio
async def test_sqlite_repository_survives_reopen(tmp_path):
    path = tmp_path / "series.db"
    repo = SQLiteSeriesRepository(path)
    created = await repo.create_progress_if_absent(
        _progress(status=ProgressStatus.WAITING, wait_event_name="paid")
    )
    repo.close()

    reopened = SQLiteSeriesRepository(path)
    stored = await reopened.get_progress(created.id)
    assert stored.id == created.id
    assert stored.status == ProgressStatus.WAITING
    assert stored.wait_event_name == "paid"
    assert stored.enrolled_at.tzinfo is not None


def test_get_repository_selects_backend(tmp_path):
    assert isinstance(get_repository("sqlite://" + str(tmp_path / "a.db")), SQLiteSeriesRepository)

    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")


def test_get_repository_defaults_to_singleton_inmemory():
    repo = get_repository()
    assert isinstance(repo, InMemorySeriesRepository)
    assert get_repository() is repo
