"""Tests for configuration loading."""

from seriesflow.config import load_config
from seriesflow.transports import InMemoryTransport, get_transport
from seriesflow.transports.redis import RedisTransport


def test_load_config_defaults_without_file():
    config = load_config()
    assert config.database_url is None
    assert config.engine.step_budget == 50
    assert config.engine.max_block_attempts == 3
    assert config.engine.event_timeout_action == "fail"
    assert config.scheduler.series_limit == 5000
    assert config.transport.backend == "inmemory"


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "seriesflow.yaml"
    config_path.write_text(
        """
database_url: sqlite:///tmp/series.db
engine:
  step_budget: 10
  event_wait_timeout_hours: null
  event_timeout_action: resume
scheduler:
  interval_seconds: 5
actions:
  tag_visitor: mypkg.actions:tag
"""
    )
    monkeypatch.setenv("SERIESFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.database_url == "sqlite:///tmp/series.db"
    assert config.engine.step_budget == 10
    assert config.engine.event_wait_timeout_hours is None
    assert config.engine.event_timeout_action == "resume"
    assert config.scheduler.interval_seconds == 5
    assert config.actions == {"tag_visitor": "mypkg.actions:tag"}


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://fallback.db")
    monkeypatch.setenv("SERIESFLOW_RUNTIME_ENABLED", "false")
    config = load_config()
    assert config.database_url == "sqlite://fallback.db"
    assert config.engine.runtime_enabled is False

    monkeypatch.setenv("SERIESFLOW_DATABASE_URL", "sqlite://primary.db")
    assert load_config().database_url == "sqlite://primary.db"


def test_runtime_flag_only_disabled_by_false(monkeypatch):
    monkeypatch.setenv("SERIESFLOW_RUNTIME_ENABLED", "0")
    assert load_config().engine.runtime_enabled is True


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("SERIESFLOW_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_get_transport_backend_argument_wins():
    assert isinstance(get_transport("inmemory"), InMemoryTransport)
