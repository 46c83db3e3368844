"""Base task runtime interface for agentloom dispatch."""

from __future__ import annotations

import abc
from typing import Any, AsyncIterator, Dict, Generic, Optional, Tuple, TypeVar

from ..constants import DEFAULT_IDEMPOTENCY_TTL
from ..contracts import ProgressEvent, TaskEnvelope

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract durable task runtime plus real-time broadcast channel."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def submit(
        self,
        topic: str,
        payload: Dict[str, Any],
        *,
        handle: str,
        idempotency_key: Optional[str] = None,
        ttl: int = DEFAULT_IDEMPOTENCY_TTL,
    ) -> str:
        """Queue a job and return its dispatch handle.

        A second submission with the same ``idempotency_key`` inside ``ttl``
        seconds is not queued; the handle of the first submission is returned.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, TaskEnvelope]]:
        """Yield raw transport message and TaskEnvelope pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)

    @abc.abstractmethod
    async def broadcast(self, channel: str, event: ProgressEvent) -> None:
        """Publish a progress event to every current listener of ``channel``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def listen(
        self, channel: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ProgressEvent]:
        """Yield progress events published on ``channel`` after subscribing."""
        raise NotImplementedError
