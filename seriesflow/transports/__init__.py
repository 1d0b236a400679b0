"""Queues carrying visitor signals from producers to the ingestion worker."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SeriesflowConfig, load_config
from .base import DEFAULT_SIGNAL_TOPIC, BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[SeriesflowConfig] = None
) -> BaseTransport:
    """Build the signal transport named by ``backend``.

    Falls back to ``SERIESFLOW_TRANSPORT`` and then ``transport.backend`` in
    the loaded configuration. The in-memory queue only reaches workers in the
    same process; use ``redis`` when signals are emitted elsewhere.
    """

    config = config or load_config()
    backend = (
        backend or os.getenv("SERIESFLOW_TRANSPORT") or config.transport.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    if backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    raise ValueError(
        f"Unsupported signal transport '{backend}' (expected 'inmemory' or 'redis')"
    )


__all__ = ["DEFAULT_SIGNAL_TOPIC", "BaseTransport", "InMemoryTransport", "get_transport"]
