"""Persistence layer for agentloom."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AgentloomConfig, load_config
from .inmemory import InMemoryRepository
from .repository import OrchestrationRepository
from .sql import SQLRepository

_repository_instance: OrchestrationRepository | None = None
_repository_url: str | None = None

_SQL_PREFIXES = ("sqlite", "postgresql", "postgres")


def _normalize_url(database_url: str) -> str:
    """Map plain URLs onto their async driver equivalents."""
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def get_repository(
    database_url: Optional[str] = None, config: Optional[AgentloomConfig] = None
) -> OrchestrationRepository:
    """Factory function to obtain an orchestration repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``AGENTLOOM_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned. Calls resolving to the
    same URL share one instance.
    """

    global _repository_instance, _repository_url
    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("AGENTLOOM_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if _repository_instance is not None and database_url == _repository_url:
        return _repository_instance

    if not database_url:
        _repository_instance = InMemoryRepository()
    elif database_url.startswith(_SQL_PREFIXES):
        _repository_instance = SQLRepository(_normalize_url(database_url))
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")
    _repository_url = database_url
    return _repository_instance


__all__ = [
    "OrchestrationRepository",
    "InMemoryRepository",
    "SQLRepository",
    "get_repository",
]
