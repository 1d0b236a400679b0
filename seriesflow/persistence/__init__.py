"""Storage backends for series definitions, progress records and history."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SeriesflowConfig, load_config
from .inmemory import InMemorySeriesRepository
from .repository import (
    ProgressRepository,
    SeriesDefinitionStore,
    SeriesRepository,
    StaleProgressError,
)
from .sqlite import SQLiteSeriesRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresSeriesRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresSeriesRepository = None  # type: ignore

_repository_instance: SeriesRepository | None = None

_SQLITE_PREFIX = "sqlite://"
_POSTGRES_PREFIXES = ("postgres://", "postgresql://")


def _repository_for_url(database_url: str) -> SeriesRepository:
    if database_url.startswith(_SQLITE_PREFIX):
        return SQLiteSeriesRepository(database_url[len(_SQLITE_PREFIX):])
    if database_url.startswith(_POSTGRES_PREFIXES):
        if PostgresSeriesRepository is None:
            raise RuntimeError("asyncpg is required for PostgreSQL series storage")
        return PostgresSeriesRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[SeriesflowConfig] = None
) -> SeriesRepository:
    """Return the repository holding series, progress and history.

    ``database_url`` wins over ``SERIESFLOW_DATABASE_URL``, then
    ``DATABASE_URL``, then ``config.database_url``. ``sqlite://<path>`` and
    ``postgresql://...`` select the durable backends; with nothing configured
    progress lives in memory and is lost on exit.

    Called without arguments the process-wide repository is reused, so the
    engine, scheduler and CLI commands share one store.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SERIESFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if database_url:
        _repository_instance = _repository_for_url(database_url)
    else:
        _repository_instance = InMemorySeriesRepository()
    return _repository_instance


__all__ = [
    "SeriesRepository",
    "SeriesDefinitionStore",
    "ProgressRepository",
    "StaleProgressError",
    "InMemorySeriesRepository",
    "SQLiteSeriesRepository",
    "PostgresSeriesRepository",
    "get_repository",
]
