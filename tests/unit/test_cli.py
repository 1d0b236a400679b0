import asyncio

from typer.testing import CliRunner

import seriesflow.persistence as persistence
from seriesflow.cli import app
from seriesflow.contracts import ProgressStatus, SeriesProgress
from seriesflow.persistence import InMemorySeriesRepository

runner = CliRunner()

SERIES_YAML = """
series:
  id: welcome
  workspace_id: ws_1
  name: Welcome
  status: active
  entry_triggers:
    - source: event
      event_name: signed_up
blocks:
  - id: wait
    type: wait
    wait_type: event
    wait_event_name: activated
    next_block_id: done
  - id: done
    type: goal
"""


def _setup_repo() -> InMemorySeriesRepository:
    repo = InMemorySeriesRepository()
    persistence._repository_instance = repo
    return repo


def _load(tmp_path):
    path = tmp_path / "welcome.yaml"
    path.write_text(SERIES_YAML)
    return runner.invoke(app, ["series", "load", str(path)])


def test_series_load_and_list(tmp_path):
    repo = _setup_repo()
    result = _load(tmp_path)
    assert result.exit_code == 0
    assert "welcome\tWelcome\tactive\t2 blocks\tready" in result.stdout
    assert asyncio.run(repo.get_series("welcome")) is not None

    result = runner.invoke(app, ["--log-level", "INFO", "series", "list", "--status", "active"])
    assert result.exit_code == 0
    assert "welcome\tWelcome\tactive" in result.stdout


def test_series_load_missing_file(tmp_path):
    _setup_repo()
    result = runner.invoke(app, ["series", "load", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "does not exist" in result.stdout


def test_series_check(tmp_path):
    repo = _setup_repo()
    _load(tmp_path)

    result = runner.invoke(app, ["series", "check", "welcome"])
    assert result.exit_code == 0
    assert "is ready" in result.stdout

    broken = asyncio.run(repo.get_series("welcome")).model_copy(
        update={"entry_block_id": "missing"}
    )
    asyncio.run(repo.save_series(broken))
    result = runner.invoke(app, ["series", "check", "welcome"])
    assert result.exit_code == 1
    assert "SERIES_ENTRY_BLOCK_MISSING" in result.stdout

    result = runner.invoke(app, ["series", "check", "unknown"])
    assert result.exit_code == 1


def test_signal_emit_direct_and_progress_commands(tmp_path):
    repo = _setup_repo()
    _load(tmp_path)

    result = runner.invoke(
        app, ["signal", "emit", "ws_1", "v1", "--event", "signed_up", "--direct"]
    )
    assert result.exit_code == 0
    assert "welcome\tentered\twaiting" in result.stdout

    (progress,) = asyncio.run(repo.list_progress(series_id="welcome"))

    result = runner.invoke(app, ["progress", "list", "--series", "welcome"])
    assert f"{progress.id}\tv1\twaiting\twait" in result.stdout

    result = runner.invoke(app, ["progress", "show", progress.id])
    assert result.exit_code == 0
    assert "Waiting for: activated" in result.stdout
    assert "entered wait" in result.stdout

    result = runner.invoke(
        app, ["signal", "emit", "ws_1", "v1", "--event", "activated", "--direct"]
    )
    assert "welcome\tresumed\tgoal_reached" in result.stdout

    result = runner.invoke(app, ["series", "stats", "welcome"])
    assert "goal_reached\t1" in result.stdout
    assert "total\t1" in result.stdout


def test_progress_exit_and_goal():
    repo = _setup_repo()
    first = asyncio.run(
        repo.create_progress_if_absent(
            SeriesProgress(workspace_id="ws", visitor_id="v1", series_id="s1")
        )
    )
    second = asyncio.run(
        repo.create_progress_if_absent(
            SeriesProgress(workspace_id="ws", visitor_id="v2", series_id="s1")
        )
    )

    result = runner.invoke(app, ["progress", "exit", first.id, "--reason", "support"])
    assert result.exit_code == 0
    assert f"Progress {first.id}: exited" in result.stdout

    result = runner.invoke(app, ["progress", "goal", second.id])
    assert f"Progress {second.id}: goal_reached" in result.stdout
    assert asyncio.run(repo.get_progress(second.id)).status == ProgressStatus.GOAL_REACHED

    result = runner.invoke(app, ["progress", "show", "missing"])
    assert result.exit_code == 1
    assert "Progress not found" in result.stdout


def test_sweep_once():
    _setup_repo()
    result = runner.invoke(app, ["sweep", "--once"])
    assert result.exit_code == 0
    assert "scanned=0 resumed=0 timed_out=0 skipped=0" in result.stdout


def test_signal_emit_publishes_to_transport():
    _setup_repo()
    result = runner.invoke(
        app,
        ["signal", "emit", "ws_1", "v1", "--attribute", "plan", "--to-value", "pro"],
    )
    assert result.exit_code == 0
    assert "Published signal" in result.stdout


def test_signal_emit_rejects_incomplete_signal():
    _setup_repo()
    result = runner.invoke(app, ["signal", "emit", "ws_1", "v1", "--source", "event"])
    assert result.exit_code == 1
    assert "Invalid signal" in result.stdout


def test_progress_list_empty():
    _setup_repo()
    result = runner.invoke(app, ["progress", "list"])
    assert result.exit_code == 0
    assert "No progress found" in result.stdout
