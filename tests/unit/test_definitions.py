"""Definition loader tests."""

import pytest
from pydantic import ValidationError

from seriesflow.contracts import ActionBlock, SeriesStatus, WaitBlock
from seriesflow.definitions import load_definitions, store_definitions

ONBOARDING = """
series:
  id: onboarding
  workspace_id: ws_1
  name: Onboarding
  status: active
  entry_triggers:
    - source: event
      event_name: signed_up
blocks:
  - id: wait
    type: wait
    wait_type: duration
    wait_duration: 0
    next_block_id: tag
  - id: tag
    type: action
    action: tag_visitor
    config:
      tag: new
---
series:
  workspace_id: ws_1
  name: Draft
blocks: []
"""


@pytest.mark.asyncio
async def test_load_and_store_definitions(tmp_path, repository):
    path = tmp_path / "series.yaml"
    path.write_text(ONBOARDING)

    definitions = load_definitions(path)
    assert [d.series.name for d in definitions] == ["Onboarding", "Draft"]

    onboarding = definitions[0]
    assert onboarding.series.status == SeriesStatus.ACTIVE
    assert isinstance(onboarding.blocks[0], WaitBlock)
    assert isinstance(onboarding.blocks[1], ActionBlock)
    assert all(b.series_id == "onboarding" for b in onboarding.blocks)

    await store_definitions(repository, definitions)
    assert (await repository.get_series("onboarding")).name == "Onboarding"
    assert len(await repository.list_blocks("onboarding")) == 2


def test_list_document(tmp_path):
    path = tmp_path / "series.yaml"
    path.write_text(
        """
- series: {workspace_id: ws, name: One}
- series: {workspace_id: ws, name: Two}
  blocks:
    - {type: exit}
"""
    )
    definitions = load_definitions(path)
    assert [len(d.blocks) for d in definitions] == [0, 1]


def test_invalid_block_is_rejected(tmp_path):
    path = tmp_path / "series.yaml"
    path.write_text(
        """
series: {workspace_id: ws, name: Broken}
blocks:
  - {type: wait}
"""
    )
    with pytest.raises(ValidationError):
        load_definitions(path)
