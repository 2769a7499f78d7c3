"""Agent registry and capability resolution."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from .models import AgentDescriptor, AgentRegistry, Team
from .resolver import AgentResolver, RegistryAgentResolver

# Process-wide registry that agents can add themselves to at runtime. A YAML
# agents file, when configured, is loaded into a separate registry instead.
REGISTRY = AgentRegistry()


def register_agent(descriptor: AgentDescriptor, team: str = "default") -> None:
    """Add ``descriptor`` to ``REGISTRY`` under ``team``.

    Teams are created on demand. A descriptor with an id already present in
    the team replaces the earlier one.
    """

    team_obj = next((t for t in REGISTRY.teams if t.name == team), None)
    if team_obj is None:
        team_obj = Team(name=team)
        REGISTRY.teams.append(team_obj)
    team_obj.agents = [a for a in team_obj.agents if a.id != descriptor.id]
    team_obj.agents.append(descriptor)


def load_registry(path: str | Path) -> AgentRegistry:
    """Read an agent registry from a YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return AgentRegistry.model_validate(data)
    except (OSError, yaml.YAMLError, ValidationError) as exc:
        raise ConfigurationError(f"Cannot load agent registry from {path}: {exc}") from exc


__all__ = [
    "AgentDescriptor",
    "AgentRegistry",
    "AgentResolver",
    "REGISTRY",
    "RegistryAgentResolver",
    "Team",
    "load_registry",
    "register_agent",
]
