"""Interface shared by visitor signal transports."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import VisitorSignal

RawMessageT = TypeVar("RawMessageT")

# Topic used by the CLI and worker when none is given.
DEFAULT_SIGNAL_TOPIC = "signals"


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Delivers :class:`VisitorSignal` envelopes to the ingestion worker.

    ``RawMessageT`` is whatever the transport needs to settle a delivery
    later; the worker passes it back untouched to :meth:`ack` or
    :meth:`nack`.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, signal: VisitorSignal) -> None:
        """Enqueue ``signal`` on ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, VisitorSignal]]:
        """Yield ``(raw_message, signal)`` pairs in delivery order.

        Stops after ``lifespan`` seconds, or never when it is ``None``.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark the signal as handled."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject the signal, putting it back for redelivery when ``requeue``."""
        raise NotImplementedError
