"""Workflow policies: ordered phases plus retry/timeout rules.

Policies are loaded from YAML once at process start and validated up front,
so configuration mistakes never surface in the middle of the worker loop.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import load_yaml_file
from .issue import Issue

logger = logging.getLogger(__name__)

DEFAULT_POLICY_NAME = "default"
DEFAULT_POLICY_PRIORITY = 50
DEFAULT_TIMEOUT_BASE_MS = 300000
DEFAULT_STALL_THRESHOLD_MS = 60000


class PolicyLoadError(ValueError):
    """Raised when a policies file cannot be loaded or fails validation."""


class InvalidWorkflowLabelError(ValueError):
    """Raised when an explicit workflow label names an unknown policy."""


class RetryConfig(BaseModel):
    max_attempts: int = 3
    backoff_strategy: Literal["exponential", "linear", "fixed"] = "exponential"
    initial_delay_ms: Optional[int] = None
    max_delay_ms: Optional[int] = None

    @field_validator('max_attempts')
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_attempts must be at least 1, got {v}")
        return v


class ConfidenceThresholds(BaseModel):
    auto_advance: float = 0.8
    require_approval: float = 0.6


class DecisionConfig(BaseModel):
    """Per-phase routing handed to a decision agent after the phase succeeds."""
    capability: str
    allowed_destinations: List[str] = Field(default_factory=list)
    confidence_thresholds: ConfidenceThresholds = Field(default_factory=ConfidenceThresholds)
    prompt: Optional[str] = None  # Template key in decision-prompts.yaml
    custom_instructions: str = ""
    timeout_ms: int = 300000


class WorkerAssistantOverride(BaseModel):
    enabled: Optional[bool] = None


class PhaseConfig(BaseModel):
    """One named step in a policy."""
    name: str
    description: Optional[str] = None
    capabilities: List[str] = Field(default_factory=list)
    agent: Optional[str] = None  # Pin a specific agent id
    model: Optional[str] = None  # "provider/model" override
    timeout_multiplier: float = 1.0
    require_approval: bool = False
    fallback_agent: Optional[str] = None
    max_visits: Optional[int] = None

    # Session continuation: @shared, @previous, @self, @first or a phase name
    reuse_session_from_phase: Optional[str] = None
    context_window_threshold: Optional[float] = None
    max_context_tokens: Optional[int] = None

    custom_prompt: Optional[str] = None
    decision: Optional[DecisionConfig] = None
    worker_assistant: Optional[WorkerAssistantOverride] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("phase name must not be empty")
        return v

    @field_validator('timeout_multiplier')
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeout_multiplier must be positive, got {v}")
        return v


class PolicyConfig(BaseModel):
    """A named, ordered phase sequence plus retry/timeout rules."""
    name: str
    description: Optional[str] = None
    issue_types: List[str] = Field(default_factory=list)
    priority: int = DEFAULT_POLICY_PRIORITY
    phases: List[PhaseConfig] = Field(default_factory=list)
    retry: Optional[RetryConfig] = None
    timeout_base_ms: int = DEFAULT_TIMEOUT_BASE_MS
    stall_threshold_ms: int = DEFAULT_STALL_THRESHOLD_MS
    require_hitl: bool = False
    fallback_agent: Optional[str] = None
    fallback_mappings: Dict[str, str] = Field(default_factory=dict)
    worker_assistant: Optional[WorkerAssistantOverride] = None

    @model_validator(mode='after')
    def validate_phases(self) -> 'PolicyConfig':
        if not self.phases:
            raise ValueError(f"Policy '{self.name}' must have at least one phase")

        seen = set()
        for phase in self.phases:
            if phase.name in seen:
                raise ValueError(
                    f"Policy '{self.name}' has duplicate phase name '{phase.name}'"
                )
            seen.add(phase.name)

        for phase in self.phases:
            if phase.decision is None:
                continue
            for destination in phase.decision.allowed_destinations:
                if destination not in seen:
                    raise ValueError(
                        f"Phase '{phase.name}' in policy '{self.name}' allows "
                        f"unknown destination '{destination}'"
                    )
        return self

    def phase_names(self) -> List[str]:
        return [phase.name for phase in self.phases]

    def get_phase(self, name: str) -> Optional[PhaseConfig]:
        for phase in self.phases:
            if phase.name == name:
                return phase
        return None


class PolicyStore:
    """Holds named policies in declaration order."""

    def __init__(
        self,
        policies: Optional[Dict[str, PolicyConfig]] = None,
        default_policy: str = DEFAULT_POLICY_NAME,
    ):
        self._policies: Dict[str, PolicyConfig] = dict(policies or {})
        self.default_policy = default_policy

    @classmethod
    def from_file(cls, path: Path) -> "PolicyStore":
        store = cls()
        store.load_policies(path)
        return store

    def load_policies(self, path: Path) -> None:
        """Load policies from a YAML file, replacing any already held."""
        try:
            data = load_yaml_file(path)
            self.load_from_dict(data)
        except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
            raise PolicyLoadError(f"Failed to load policies from {path}: {e}") from e

    def load_from_dict(self, data: Dict[str, Any]) -> None:
        if "policies" not in data or not isinstance(data["policies"], dict):
            raise PolicyLoadError("Invalid policies file: missing 'policies' key")

        policies: Dict[str, PolicyConfig] = {}
        for name, raw in data["policies"].items():
            raw = dict(raw or {})
            raw["name"] = name
            try:
                policies[name] = PolicyConfig(**raw)
            except ValidationError as e:
                raise PolicyLoadError(f"Invalid policy '{name}': {e}") from e

        default_policy = data.get("default_policy")
        if default_policy is not None and default_policy not in policies:
            raise PolicyLoadError(f"Default policy '{default_policy}' not found")

        self._policies = policies
        self.default_policy = default_policy or DEFAULT_POLICY_NAME
        logger.info(f"Loaded {len(policies)} policies (default: {self.default_policy})")

    def get_policy(self, name: str) -> Optional[PolicyConfig]:
        return self._policies.get(name)

    def has_policy(self, name: str) -> bool:
        return name in self._policies

    def policies(self) -> List[PolicyConfig]:
        """All policies in declaration order."""
        return list(self._policies.values())

    def policy_names(self) -> List[str]:
        return list(self._policies.keys())

    def get_phase(self, policy_name: str, phase_name: str) -> Optional[PhaseConfig]:
        policy = self.get_policy(policy_name)
        return policy.get_phase(phase_name) if policy else None

    def phase_sequence(self, policy_name: str) -> List[str]:
        policy = self.get_policy(policy_name)
        return policy.phase_names() if policy else []

    def first_phase(self, policy_name: str) -> Optional[str]:
        sequence = self.phase_sequence(policy_name)
        return sequence[0] if sequence else None

    def next_phase(self, policy_name: str, current_phase: str) -> Optional[str]:
        """Phase following ``current_phase``, or None at the end of the sequence."""
        sequence = self.phase_sequence(policy_name)
        if current_phase not in sequence:
            return None
        index = sequence.index(current_phase)
        if index + 1 < len(sequence):
            return sequence[index + 1]
        return None

    def previous_phase(self, policy_name: str, current_phase: str) -> Optional[str]:
        sequence = self.phase_sequence(policy_name)
        if current_phase not in sequence:
            return None
        index = sequence.index(current_phase)
        return sequence[index - 1] if index > 0 else None


class PolicyResolver:
    """Maps an issue to a policy name.

    Precedence:
    - An explicit ``<prefix>-workflow:<name>`` label naming an existing policy
    - Policies whose ``issue_types`` include the issue type, highest priority
      first, ties going to the first declared
    - The store's default policy
    """

    def __init__(
        self,
        store: PolicyStore,
        label_prefix: str = "ashep",
        invalid_label_strategy: str = "error",
    ):
        self.store = store
        self.label_prefix = label_prefix
        self.invalid_label_strategy = invalid_label_strategy

    @property
    def workflow_label_prefix(self) -> str:
        return f"{self.label_prefix}-workflow:"

    def workflow_from_labels(self, issue: Issue) -> Optional[str]:
        for label in issue.labels:
            if label.startswith(self.workflow_label_prefix):
                return label[len(self.workflow_label_prefix):]
        return None

    def match_policy(self, issue: Issue) -> str:
        explicit = self.workflow_from_labels(issue)
        if explicit:
            if self.store.has_policy(explicit):
                return explicit
            message = (
                f"Invalid workflow label: {self.workflow_label_prefix}{explicit}. "
                f"Policy '{explicit}' does not exist."
            )
            if self.invalid_label_strategy == "error":
                raise InvalidWorkflowLabelError(message)
            if self.invalid_label_strategy == "warning":
                logger.warning(f"{message} Falling back to type-based matching for {issue.id}")

        candidates = [
            (index, policy)
            for index, policy in enumerate(self.store.policies())
            if issue.issue_type in policy.issue_types
        ]
        if candidates:
            # Stable sort keeps declaration order among equal priorities
            candidates.sort(key=lambda item: -item[1].priority)
            return candidates[0][1].name

        return self.store.default_policy
