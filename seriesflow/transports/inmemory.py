"""In-memory transport for tests and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import VisitorSignal
from .base import BaseTransport

# (topic, serialized signal, signal)
RawSignal = Tuple[str, str, VisitorSignal]


class InMemoryTransport(BaseTransport[RawSignal]):
    """Per-topic FIFO queues held in process memory.

    A nack with ``requeue`` puts the signal back at the head of its topic so
    it is the next one delivered.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawSignal]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval
        self.acked: list[str] = []
        self.nacked: list[str] = []

    async def publish(self, topic: str, signal: VisitorSignal) -> None:
        async with self._lock:
            self._queues[topic].append((topic, signal.to_json(), signal))

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawSignal, VisitorSignal]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                raw_message = (
                    self._queues[topic].popleft() if self._queues[topic] else None
                )
            if raw_message is not None:
                yield raw_message, raw_message[2]
                continue

            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_message: RawSignal) -> None:
        self.acked.append(raw_message[2].message_id)

    async def nack(self, raw_message: RawSignal, requeue: bool = True) -> None:
        topic, _, signal = raw_message
        self.nacked.append(signal.message_id)
        if requeue:
            async with self._lock:
                self._queues[topic].appendleft(raw_message)
