"""Wire configuration into a ready-to-use engine."""

from __future__ import annotations

import logging
from typing import Optional

from .agents import REGISTRY, AgentResolver, RegistryAgentResolver, load_registry
from .catalog import YamlWorkflowCatalog
from .config import StagewrightConfig, load_config
from .dispatch import TransportDispatcher
from .engine import LeaseManager, StageEngine
from .persistence import WorkOrderRepository, get_repository
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


def build_catalog(config: StagewrightConfig) -> YamlWorkflowCatalog:
    return YamlWorkflowCatalog(config.catalog.workflows_dir, config.catalog.selection_file)


def build_resolver(config: StagewrightConfig) -> AgentResolver:
    """Resolver over the configured agents file, or the process registry."""
    if config.agents_file:
        logger.info(f"Loading agent registry from {config.agents_file}")
        return RegistryAgentResolver(load_registry(config.agents_file))
    return RegistryAgentResolver(REGISTRY)


def build_engine(
    config: Optional[StagewrightConfig] = None,
    *,
    repository: Optional[WorkOrderRepository] = None,
    transport: Optional[BaseTransport] = None,
) -> StageEngine:
    config = config or load_config()
    repository = repository or get_repository(config.database_url)
    transport = transport or get_transport(config=config)
    return StageEngine(
        repository,
        build_catalog(config),
        build_resolver(config),
        TransportDispatcher(transport),
        limits=config.engine,
        coordinator_channel=config.coordinator_channel,
    )


def build_leases(
    config: Optional[StagewrightConfig] = None,
    repository: Optional[WorkOrderRepository] = None,
) -> LeaseManager:
    config = config or load_config()
    return LeaseManager(repository or get_repository(config.database_url), config.engine)
