from typing import Any, Callable

import pytest

import seriesflow.persistence as persistence
from seriesflow.conditions import AudienceRuleEvaluator, InMemoryVisitorDirectory
from seriesflow.config import EngineConfig, SchedulerConfig, SeriesflowConfig
from seriesflow.contracts import EntryTrigger, Series, SeriesStatus, parse_block
from seriesflow.engine import SeriesEngine
from seriesflow.persistence import InMemorySeriesRepository
from seriesflow.registry import ActionRegistry


class RecordingAction:
    """Action executor that records calls and can be told to fail."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.failures_left = 0

    def __call__(self, visitor_id: str, config: dict) -> Any:
        self.calls.append((visitor_id, config))
        if self.failures_left > 0:
            self.failures_left -= 1
            raise RuntimeError("downstream unavailable")
        return None


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    for name in (
        "SERIESFLOW_CONFIG",
        "SERIESFLOW_DATABASE_URL",
        "DATABASE_URL",
        "SERIESFLOW_RUNTIME_ENABLED",
        "SERIESFLOW_TRANSPORT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def repository() -> InMemorySeriesRepository:
    return InMemorySeriesRepository()


@pytest.fixture
def tag_action() -> RecordingAction:
    return RecordingAction()


@pytest.fixture
def send_action() -> RecordingAction:
    return RecordingAction()


@pytest.fixture
def actions(tag_action, send_action) -> ActionRegistry:
    return ActionRegistry({"tag_visitor": tag_action, "send_message": send_action})


@pytest.fixture
def profiles() -> InMemoryVisitorDirectory:
    return InMemoryVisitorDirectory()


@pytest.fixture
def config() -> SeriesflowConfig:
    return SeriesflowConfig(
        engine=EngineConfig(retry_base_delay_seconds=30.0),
        scheduler=SchedulerConfig(),
    )


@pytest.fixture
def engine(repository, actions, profiles, config) -> SeriesEngine:
    return SeriesEngine(
        repository=repository,
        actions=actions,
        conditions=AudienceRuleEvaluator(profiles),
        config=config,
    )


@pytest.fixture
def make_series(repository) -> Callable:
    """Store a series and its blocks; blocks are plain dicts without series_id."""

    async def _make(
        blocks: list[dict],
        triggers: list[dict] | None = None,
        status: SeriesStatus = SeriesStatus.ACTIVE,
        workspace_id: str = "ws_1",
        **fields: Any,
    ) -> Series:
        series = Series(
            workspace_id=workspace_id,
            name=fields.pop("name", "Onboarding"),
            status=status,
            entry_triggers=[
                EntryTrigger(**t)
                for t in (
                    triggers
                    if triggers is not None
                    else [{"source": "event", "event_name": "signed_up"}]
                )
            ],
            **fields,
        )
        await repository.save_series(series)
        await repository.save_blocks(
            [parse_block({"series_id": series.id, **b}) for b in blocks]
        )
        return series

    return _make
