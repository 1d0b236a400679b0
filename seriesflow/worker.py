"""Ingestion worker feeding transport signals into the engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .contracts import SignalOutcome, VisitorSignal
from .engine import SeriesEngine
from .transports import DEFAULT_SIGNAL_TOPIC, BaseTransport

logger = logging.getLogger(__name__)


class SignalWorker:
    """Consumes visitor signals from a transport topic."""

    def __init__(
        self,
        transport: BaseTransport,
        engine: SeriesEngine,
        topic: str = DEFAULT_SIGNAL_TOPIC,
        redelivery_delay: float = 1.0,
    ) -> None:
        self._transport = transport
        self._engine = engine
        self._topic = topic
        self._redelivery_delay = redelivery_delay
        self.processed = 0
        self.failed = 0

    async def handle(self, signal: VisitorSignal) -> SignalOutcome:
        outcome = await self._engine.ingest_signal(
            signal.workspace_id, signal.visitor_id, signal.context
        )
        entered = sum(1 for r in outcome.enrollments if r.entered)
        logger.info(
            f"Signal {signal.message_id} for visitor {signal.visitor_id}: "
            f"entered={entered} resumed={len(outcome.resumed)}"
        )
        return outcome

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume signals until ``lifespan`` seconds elapse.

        A signal whose handling raises is requeued on the transport and the
        worker pauses ``redelivery_delay`` seconds before reading again.
        Enrollment and resumption are idempotent, so a redelivered signal
        never enrolls or advances a visitor twice.
        """
        async for raw_message, signal in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            try:
                await self.handle(signal)
            except Exception:
                self.failed += 1
                logger.exception(
                    f"Failed to process signal {signal.message_id}; requeueing"
                )
                await self._transport.nack(raw_message, requeue=True)
                await asyncio.sleep(self._redelivery_delay)
                continue
            await self._transport.ack(raw_message)
            self.processed += 1
