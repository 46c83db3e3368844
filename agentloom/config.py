from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class RedisConfig(BaseModel):
    """Configuration for the Redis task runtime."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TaskRuntimeConfig(BaseModel):
    """Background task runtime settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class RuntimeConfig(BaseModel):
    """Agent runtime settings."""

    model: str = "openai:gpt-4o"
    max_iterations: int = 5
    retry_attempts: int = 2
    retry_base: float = 1.5
    tool_timeout: float = 30.0


class DispatchConfig(BaseModel):
    """Execution ledger and dispatch settings."""

    idempotency_ttl: int = 3600


class ToolsConfig(BaseModel):
    note_limit: int = 20


class AgentloomConfig(BaseModel):
    """Top-level configuration model."""

    task_runtime: TaskRuntimeConfig = TaskRuntimeConfig()
    runtime: RuntimeConfig = RuntimeConfig()
    dispatch: DispatchConfig = DispatchConfig()
    tools: ToolsConfig = ToolsConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> AgentloomConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to AGENTLOOM_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("AGENTLOOM_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AgentloomConfig(**data)
    else:
        config = AgentloomConfig()

    env_db_url = os.getenv("AGENTLOOM_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_backend = os.getenv("AGENTLOOM_TASK_RUNTIME")
    if env_backend:
        config.task_runtime.backend = env_backend.lower()
    return config
