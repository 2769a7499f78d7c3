"""Resolution of stage capability references to concrete agents."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from ..contracts import AgentIdentity
from ..stations import station_for_capability
from .models import AgentDescriptor, AgentRegistry

logger = logging.getLogger(__name__)


class AgentResolver(Protocol):
    """Maps a capability reference onto an agent, or ``None`` if nobody fits."""

    async def resolve(self, capability_ref: str) -> Optional[AgentIdentity]:
        """Return the agent that should execute ``capability_ref``."""


class RegistryAgentResolver(AgentResolver):
    """Resolve agents from an :class:`AgentRegistry`.

    Matching order: runtime id or agent id equal to the reference, then an
    explicit capability listing, then the station the reference maps to.
    Disabled agents are never chosen.
    """

    def __init__(self, registry: AgentRegistry) -> None:
        self._registry = registry

    def _candidates(self) -> list[AgentDescriptor]:
        return [agent for agent in self._registry.all_agents() if agent.available]

    async def resolve(self, capability_ref: str) -> Optional[AgentIdentity]:
        ref = capability_ref.strip().lower()
        candidates = self._candidates()

        for agent in candidates:
            if ref in (agent.runtime_agent_id.lower(), agent.id.lower()):
                return agent.identity()

        for agent in candidates:
            if ref in (c.lower() for c in agent.capabilities):
                return agent.identity()

        station = station_for_capability(ref)
        for agent in candidates:
            if agent.station is station:
                return agent.identity()

        logger.info(f"No agent available for capability {capability_ref!r}")
        return None
