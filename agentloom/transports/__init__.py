"""Task runtime factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AgentloomConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[AgentloomConfig] = None
) -> BaseTransport:
    """Factory function to get the configured task runtime."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("AGENTLOOM_TASK_RUNTIME")
        or config.task_runtime.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.task_runtime.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported task runtime backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
