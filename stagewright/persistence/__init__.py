"""Persistence layer for stagewright work orders."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StagewrightConfig, load_config
from .inmemory import InMemoryWorkOrderRepository
from .models import (
    Activity,
    Approval,
    Artifact,
    Operation,
    OperationStory,
    Receipt,
    WorkOrder,
)
from .repository import UnitOfWork, WorkOrderRepository
from .sqlite import SQLiteWorkOrderRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkOrderRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkOrderRepository = None  # type: ignore

_repository_instance: WorkOrderRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[StagewrightConfig] = None
) -> WorkOrderRepository:
    """Factory function to obtain a work order repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``STAGEWRIGHT_DATABASE_URL``
    or ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("STAGEWRIGHT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryWorkOrderRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteWorkOrderRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresWorkOrderRepository is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresWorkOrderRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "Activity",
    "Approval",
    "Artifact",
    "InMemoryWorkOrderRepository",
    "Operation",
    "OperationStory",
    "PostgresWorkOrderRepository",
    "Receipt",
    "SQLiteWorkOrderRepository",
    "UnitOfWork",
    "WorkOrder",
    "WorkOrderRepository",
    "get_repository",
]
