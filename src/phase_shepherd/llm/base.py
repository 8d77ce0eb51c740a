"""Base agent backend interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..core.run import Outcome


class AgentLaunchError(RuntimeError):
    """The execution platform could not be reached or the process not started."""


@dataclass
class AgentRequest:
    """Request to run one agent."""
    agent_id: str
    instructions: str
    title: str = ""
    model: Optional[str] = None  # "provider/model"; None = agent default
    session_id: Optional[str] = None  # Continue an existing session
    working_dir: Optional[str] = None


@dataclass
class AgentResult:
    """Parsed result of one agent run."""
    outcome: Outcome
    content: str = ""  # Final assistant text
    session_id: Optional[str] = None
    exit_code: Optional[int] = None
    stderr: str = ""


class AgentBackend(ABC):
    """Abstract base class for agent execution platforms."""

    @abstractmethod
    async def run_agent(self, request: AgentRequest) -> AgentResult:
        """
        Run an agent to completion and parse its event stream.

        A run that starts but fails is reported through ``outcome.success``.
        Raises AgentLaunchError when the run could not be started at all.
        """
        pass
