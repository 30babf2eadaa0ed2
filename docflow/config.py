from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "docflow"
    group: str = "docflow-collaborators"
    consumer: str = "worker-1"
    # approximate cap on entries kept per stream; None keeps everything
    max_len: Optional[int] = 10_000


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    # undelivered events kept per topic by the in-memory backend; oldest dropped first
    max_queue: Optional[int] = 1000


class EngineConfig(BaseModel):
    """Tunables for the workflow engine."""

    load_builtin_workflows: bool = True
    catalog_paths: List[str] = Field(default_factory=list)
    # base delay in seconds between step retries, doubled per attempt
    retry_base_delay: float = 0.5
    retry_jitter: float = 0.1
    escalation_sweep_interval: float = 300.0


class DocflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> DocflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DOCFLOW_CONFIG env
            variable or 'docflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("DOCFLOW_CONFIG", "docflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DocflowConfig(**data)
    else:
        config = DocflowConfig()

    env_db_url = os.getenv("DOCFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
