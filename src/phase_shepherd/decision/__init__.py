"""Escalation paths that resolve ambiguous or AI-routed outcomes."""

from .decision_agent import DecisionAgent, DecisionAgentError, DecisionResult
from .prompt_builder import DecisionPromptBuilder, DecisionResponse, TemplateContext
from .worker_assistant import Directive, WorkerAssistant

__all__ = [
    "DecisionAgent",
    "DecisionAgentError",
    "DecisionPromptBuilder",
    "DecisionResponse",
    "DecisionResult",
    "Directive",
    "TemplateContext",
    "WorkerAssistant",
]
