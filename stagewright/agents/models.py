"""Pydantic models describing registered agents."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..contracts import AgentIdentity, utcnow
from ..stations import Station


class AgentDescriptor(BaseModel):
    """Metadata describing an agent available for dispatch."""

    # Identity
    id: str
    display_name: str
    runtime_agent_id: str
    description: Optional[str] = None
    owner: Optional[str] = None

    # Capabilities
    station: Station
    capabilities: List[str] = Field(default_factory=list)
    team_id: Optional[str] = None
    status: Literal["idle", "active", "disabled"] = "idle"

    @field_validator("runtime_agent_id")
    @classmethod
    def _ensure_runtime_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("runtime_agent_id must be a non-empty string")
        return v

    @property
    def available(self) -> bool:
        return self.status != "disabled"

    def identity(self) -> AgentIdentity:
        return AgentIdentity(
            id=self.id,
            display_name=self.display_name,
            station=self.station,
            runtime_agent_id=self.runtime_agent_id,
            team_id=self.team_id,
        )


class Team(BaseModel):
    """Logical grouping of agents."""

    name: str
    agents: List[AgentDescriptor] = Field(default_factory=list)


class AgentRegistry(BaseModel):
    """Root document listing every known agent."""

    teams: List[Team] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)
    schema_version: str = "1"

    def all_agents(self) -> List[AgentDescriptor]:
        return [agent for team in self.teams for agent in team.agents]
