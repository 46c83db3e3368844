"""In-memory task runtime for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..constants import DEFAULT_IDEMPOTENCY_TTL
from ..contracts import ProgressEvent, TaskEnvelope
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, TaskEnvelope]]):
    """Simple in-process queue and fan-out channel."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Tuple[str, TaskEnvelope]]] = defaultdict(deque)
        self._keys: Dict[str, Tuple[str, float]] = {}
        self._listeners: Dict[str, List[asyncio.Queue[ProgressEvent]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def submit(
        self,
        topic: str,
        payload: Dict[str, Any],
        *,
        handle: str,
        idempotency_key: Optional[str] = None,
        ttl: int = DEFAULT_IDEMPOTENCY_TTL,
    ) -> str:
        """Queue a job unless its idempotency key is still live."""
        now = asyncio.get_running_loop().time()
        async with self._lock:
            if idempotency_key:
                existing = self._keys.get(idempotency_key)
                if existing and existing[1] > now:
                    return existing[0]
                self._keys[idempotency_key] = (handle, now + ttl)
            envelope = TaskEnvelope(
                handle=handle,
                topic=topic,
                payload=payload,
                idempotency_key=idempotency_key,
            )
            self._queues[topic].append((envelope.to_json(), envelope))
        return handle

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, TaskEnvelope], TaskEnvelope]]:
        """Subscribe to jobs from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        start_time = asyncio.get_running_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_running_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            async with self._lock:
                raw_message = (
                    self._queues[topic].popleft() if self._queues[topic] else None
                )
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: Tuple[str, TaskEnvelope]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(
        self, raw_message: Tuple[str, TaskEnvelope], requeue: bool = True
    ) -> None:
        if requeue:
            envelope = raw_message[1]
            retry = envelope.model_copy(update={"attempt": envelope.attempt + 1})
            async with self._lock:
                self._queues[envelope.topic].append((retry.to_json(), retry))

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def broadcast(self, channel: str, event: ProgressEvent) -> None:
        for queue in list(self._listeners[channel]):
            queue.put_nowait(event)

    async def listen(
        self, channel: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ProgressEvent]:
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._listeners[channel].append(queue)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while True:
                if deadline is None:
                    event = await queue.get()
                else:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        break
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=remaining)
                    except asyncio.TimeoutError:
                        break
                yield event
        finally:
            self._listeners[channel].remove(queue)
