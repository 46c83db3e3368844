"""Redis task runtime for cross-process dispatch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..constants import DEFAULT_IDEMPOTENCY_TTL
from ..contracts import ProgressEvent, TaskEnvelope
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis-based runtime: lists as queues, ``SET NX EX`` for idempotency, pub/sub for progress."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def submit(
        self,
        topic: str,
        payload: Dict[str, Any],
        *,
        handle: str,
        idempotency_key: Optional[str] = None,
        ttl: int = DEFAULT_IDEMPOTENCY_TTL,
    ) -> str:
        """Push a job onto the topic list unless its idempotency key is live."""
        client = await self._client()
        owned_key = None
        if idempotency_key:
            key_name = f"agentloom:idem:{idempotency_key}"
            claimed = await client.set(key_name, handle, nx=True, ex=ttl)
            if claimed:
                owned_key = key_name
            else:
                existing = await client.get(key_name)
                if existing:
                    return existing

        envelope = TaskEnvelope(
            handle=handle,
            topic=topic,
            payload=payload,
            idempotency_key=idempotency_key,
        )
        try:
            await client.lpush(f"agentloom:{topic}", envelope.to_json())
        except Exception:
            # the job never reached the queue; free the key for a retry
            if owned_key:
                await client.delete(owned_key)
            raise
        return handle

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, TaskEnvelope]]:
        """Subscribe to jobs from a Redis list."""
        client = await self._client()
        queue_name = f"agentloom:{topic}"
        start_time = asyncio.get_running_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_running_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            result = await client.brpop(queue_name, timeout=1)
            if result:
                _, message_json = result
                try:
                    envelope = TaskEnvelope.from_json(message_json)
                except ValidationError as e:
                    logger.error(f"Dropping malformed job on {queue_name}: {e}")
                    continue
                yield message_json, envelope

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: str, requeue: bool = True) -> None:
        if not requeue:
            return
        envelope = TaskEnvelope.from_json(raw_message)
        retry = envelope.model_copy(update={"attempt": envelope.attempt + 1})
        client = await self._client()
        await client.lpush(f"agentloom:{envelope.topic}", retry.to_json())

    async def broadcast(self, channel: str, event: ProgressEvent) -> None:
        client = await self._client()
        await client.publish(f"agentloom:channel:{channel}", event.to_json())

    async def listen(
        self, channel: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ProgressEvent]:
        client = await self._client()
        pubsub = client.pubsub()
        name = f"agentloom:channel:{channel}"
        await pubsub.subscribe(name)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while deadline is None or loop.time() < deadline:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if not message:
                    continue
                try:
                    yield ProgressEvent.from_json(message["data"])
                except ValidationError as e:
                    logger.warning(f"Ignoring malformed event on {name}: {e}")
        finally:
            await pubsub.unsubscribe(name)
            await pubsub.aclose()
