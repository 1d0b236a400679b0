"""Load series definitions from YAML documents."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from .contracts import Series, SeriesBlock, parse_block
from .persistence import SeriesDefinitionStore


class SeriesDefinition(BaseModel):
    """A series together with its blocks."""

    series: Series
    blocks: list[SeriesBlock] = Field(default_factory=list)


def parse_definition(data: dict[str, Any]) -> SeriesDefinition:
    """Build a definition from a mapping.

    Blocks may omit ``series_id``; it is filled in from the series.
    """
    series = Series.model_validate(data["series"])
    blocks = [
        parse_block({"series_id": series.id, **raw}) for raw in data.get("blocks", [])
    ]
    return SeriesDefinition(series=series, blocks=blocks)


def load_definitions(path: str | Path) -> list[SeriesDefinition]:
    """Read one or more definitions from a YAML file.

    The file holds either a single ``{series, blocks}`` document, a list of
    them, or several YAML documents separated by ``---``.
    """
    with open(path) as f:
        documents = [d for d in yaml.safe_load_all(f) if d]

    definitions = []
    for document in documents:
        items = document if isinstance(document, list) else [document]
        definitions.extend(parse_definition(item) for item in items)
    return definitions


async def store_definitions(
    store: SeriesDefinitionStore, definitions: list[SeriesDefinition]
) -> None:
    for definition in definitions:
        await store.save_series(definition.series)
        await store.save_blocks(definition.blocks)
