from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_COORDINATOR_CHANNEL,
    DEFAULT_LEASE_TTL_SECONDS,
    DEFAULT_MAX_REVIEW_LOOPBACKS,
    DEFAULT_MAX_STORIES_PER_BATCH,
    DEFAULT_OPERATION_MAX_RETRIES,
    DEFAULT_STORY_MAX_RETRIES,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "stagewright"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineLimits(BaseModel):
    """Retry and escalation bounds honoured by the stage engine."""

    max_review_loopbacks: int = Field(DEFAULT_MAX_REVIEW_LOOPBACKS, ge=0)
    story_max_retries: int = Field(DEFAULT_STORY_MAX_RETRIES, ge=0)
    operation_max_retries: int = Field(DEFAULT_OPERATION_MAX_RETRIES, ge=0)
    max_stories_per_batch: int = Field(DEFAULT_MAX_STORIES_PER_BATCH, ge=1)
    lease_ttl_seconds: int = Field(DEFAULT_LEASE_TTL_SECONDS, ge=1)
    block_on_escalation: bool = True


class CatalogConfig(BaseModel):
    """Where workflow definitions are read from.

    ``None`` means the starter workflows bundled with the package.
    """

    workflows_dir: Optional[str] = None
    selection_file: Optional[str] = None


class StagewrightConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    engine: EngineLimits = EngineLimits()
    catalog: CatalogConfig = CatalogConfig()
    agents_file: Optional[str] = None
    coordinator_channel: str = DEFAULT_COORDINATOR_CHANNEL
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> StagewrightConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STAGEWRIGHT_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STAGEWRIGHT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StagewrightConfig(**data)
    else:
        config = StagewrightConfig()

    env_db_url = os.getenv("STAGEWRIGHT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("STAGEWRIGHT_TRANSPORT")
    if env_transport:
        config.transport = TransportConfig(
            backend=env_transport.lower(), redis=config.transport.redis
        )
    return config
