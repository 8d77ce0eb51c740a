"""Agent execution backends."""

from .base import AgentBackend, AgentLaunchError, AgentRequest, AgentResult
from .opencode_backend import OpenCodeBackend, parse_run_output

__all__ = [
    "AgentBackend",
    "AgentLaunchError",
    "AgentRequest",
    "AgentResult",
    "OpenCodeBackend",
    "parse_run_output",
]
