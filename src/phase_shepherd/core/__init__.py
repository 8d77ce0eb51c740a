"""Core models, policies and the transition engine."""

from .config import ShepherdConfig, load_config
from .issue import Issue, IssueStatus
from .policy import PhaseConfig, PolicyConfig, PolicyLoadError, PolicyResolver, PolicyStore
from .run import DecisionRecord, DecisionType, Outcome, RunRecord, RunStatus
from .transitions import Transition, TransitionEngine, TransitionType

__all__ = [
    "ShepherdConfig",
    "load_config",
    "Issue",
    "IssueStatus",
    "PhaseConfig",
    "PolicyConfig",
    "PolicyLoadError",
    "PolicyResolver",
    "PolicyStore",
    "DecisionRecord",
    "DecisionType",
    "Outcome",
    "RunRecord",
    "RunStatus",
    "Transition",
    "TransitionEngine",
    "TransitionType",
]
