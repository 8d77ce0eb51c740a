"""Agent capability registry and selection."""

import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import load_yaml_file

logger = logging.getLogger(__name__)

PerformanceTier = Literal["fast", "balanced", "slow"]


class AgentConstraints(BaseModel):
    read_only: bool = False
    allowed_tags: Optional[List[str]] = None
    performance_tier: Optional[PerformanceTier] = None
    max_file_size: Optional[int] = None


class AgentDefinition(BaseModel):
    """An agent the execution platform can run, and what it is good for."""
    id: str
    name: str
    description: Optional[str] = None
    capabilities: List[str]
    provider_id: Optional[str] = None
    model_id: Optional[str] = None
    priority: int = 0
    active: bool = True
    constraints: AgentConstraints = Field(default_factory=AgentConstraints)

    @field_validator('capabilities')
    @classmethod
    def validate_capabilities(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("agent must have at least one capability")
        return v

    @property
    def model(self) -> Optional[str]:
        """Model in "provider/model" form, if both halves are configured."""
        if self.provider_id and self.model_id:
            return f"{self.provider_id}/{self.model_id}"
        return self.model_id

    def has_capabilities(self, capabilities: List[str]) -> bool:
        return all(cap in self.capabilities for cap in capabilities)

    def matches_tags(self, tags: List[str]) -> bool:
        # Agents without tag constraints accept every tag
        if self.constraints.allowed_tags is None:
            return True
        return any(tag in self.constraints.allowed_tags for tag in tags)


class SelectionCriteria(BaseModel):
    required_capabilities: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    read_only: bool = False
    performance_preference: Optional[PerformanceTier] = None
    agent_id: Optional[str] = None


class AgentRegistry:
    """In-memory registry of agents keyed by id, in declaration order."""

    def __init__(self, agents: Optional[List[AgentDefinition]] = None):
        self._agents: Dict[str, AgentDefinition] = {}
        for agent in agents or []:
            self.register(agent)

    @classmethod
    def from_file(cls, path: Path) -> "AgentRegistry":
        registry = cls()
        registry.load_agents(path)
        return registry

    def load_agents(self, path: Path) -> None:
        try:
            data = load_yaml_file(path)
            if "agents" not in data:
                raise ValueError("Invalid agents file: missing 'agents' key")
            agents = [AgentDefinition(**raw) for raw in data["agents"] or []]
        except (FileNotFoundError, ValidationError, ValueError, yaml.YAMLError) as e:
            raise ValueError(f"Failed to load agents from {path}: {e}") from e

        self._agents.clear()
        for agent in agents:
            self.register(agent)
        logger.info(f"Loaded {len(agents)} agents from {path}")

    def register(self, agent: AgentDefinition) -> None:
        self._agents[agent.id] = agent

    def unregister(self, agent_id: str) -> bool:
        return self._agents.pop(agent_id, None) is not None

    def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        return self._agents.get(agent_id)

    def all_agents(self) -> List[AgentDefinition]:
        return list(self._agents.values())

    def find_by_capabilities(
        self, capabilities: List[str], active_only: bool = True
    ) -> List[AgentDefinition]:
        return [
            agent for agent in self._agents.values()
            if agent.has_capabilities(capabilities) and (agent.active or not active_only)
        ]

    def select_agent(self, criteria: SelectionCriteria) -> Optional[AgentDefinition]:
        """Pick the highest-priority active agent satisfying ``criteria``.

        Ties keep declaration order.
        """
        candidates = self.find_by_capabilities(criteria.required_capabilities, active_only=True)

        if criteria.agent_id:
            candidates = [a for a in candidates if a.id == criteria.agent_id]

        if criteria.tags:
            candidates = [a for a in candidates if a.matches_tags(criteria.tags)]

        if criteria.read_only:
            candidates = [a for a in candidates if a.constraints.read_only]

        if criteria.performance_preference:
            candidates = [
                a for a in candidates
                if a.constraints.performance_tier in (None, criteria.performance_preference)
            ]

        if not candidates:
            return None

        candidates.sort(key=lambda a: -a.priority)
        return candidates[0]
