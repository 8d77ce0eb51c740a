"""Phase state machine: outcome in, transition out."""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from .policy import (
    DEFAULT_STALL_THRESHOLD_MS,
    DEFAULT_TIMEOUT_BASE_MS,
    DecisionConfig,
    PolicyStore,
    RetryConfig,
)
from .run import Outcome

if TYPE_CHECKING:
    from .agent_registry import AgentRegistry

DEFAULT_RETRY_DELAY_MS = 5000
DEFAULT_MAX_RETRY_DELAY_MS = 300000

REASON_APPROVAL_REQUIRED = "Human approval required"
REASON_PHASE_COMPLETED = "Phase completed successfully"
REASON_ALL_PHASES_COMPLETED = "All phases completed"
REASON_DYNAMIC_DECISION = "Dynamic decision required"


class TransitionType(str, Enum):
    ADVANCE = "advance"
    RETRY = "retry"
    BLOCK = "block"
    CLOSE = "close"
    JUMP_BACK = "jump_back"
    DYNAMIC_DECISION = "dynamic_decision"


@dataclass(frozen=True)
class Transition:
    """What happens to an issue after a run completes.

    Computed fresh per completed run and only ever logged, never stored as
    mutable state. ``dynamic_agent`` and ``decision_config`` are set only for
    DYNAMIC_DECISION, which the worker must resolve before applying.
    """
    type: TransitionType
    reason: str = ""
    next_phase: Optional[str] = None
    jump_target_phase: Optional[str] = None
    dynamic_agent: Optional[str] = None
    decision_config: Optional[DecisionConfig] = None

    @property
    def target_phase(self) -> Optional[str]:
        if self.type == TransitionType.JUMP_BACK:
            return self.jump_target_phase or self.next_phase
        return self.next_phase

    @classmethod
    def block(cls, reason: str) -> "Transition":
        return cls(type=TransitionType.BLOCK, reason=reason)


class TransitionEngine:
    """
    Maps (policy, phase, outcome, retry count) to a transition.

    Logic:
    - Approval required by the outcome or the phase blocks, checked first
    - Success advances to the next phase, or closes after the last one
    - Success on a phase with a decision block defers to a decision agent
    - Failure retries while retry_count < max_attempts - 1, then blocks

    ``determine`` reads only the policy store, so identical inputs always
    yield identical transitions.
    """

    def __init__(self, store: PolicyStore):
        self.store = store

    def retry_config(self, policy_name: str) -> RetryConfig:
        policy = self.store.get_policy(policy_name)
        if policy is None or policy.retry is None:
            return RetryConfig()
        return policy.retry

    def determine(
        self,
        policy_name: str,
        current_phase: str,
        outcome: Outcome,
        retry_count: int = 0,
    ) -> Transition:
        policy = self.store.get_policy(policy_name)
        if policy is None:
            return Transition.block("Policy not found")

        phase = policy.get_phase(current_phase)
        if phase is None:
            return Transition.block("Phase not found")

        if outcome.requires_approval or phase.require_approval:
            return Transition.block(REASON_APPROVAL_REQUIRED)

        if outcome.success:
            if phase.decision is not None:
                return Transition(
                    type=TransitionType.DYNAMIC_DECISION,
                    reason=REASON_DYNAMIC_DECISION,
                    dynamic_agent=phase.decision.capability,
                    decision_config=phase.decision,
                )
            next_phase = self.store.next_phase(policy_name, current_phase)
            if next_phase:
                return Transition(
                    type=TransitionType.ADVANCE,
                    next_phase=next_phase,
                    reason=REASON_PHASE_COMPLETED,
                )
            return Transition(type=TransitionType.CLOSE, reason=REASON_ALL_PHASES_COMPLETED)

        retry = self.retry_config(policy_name)
        if retry_count < retry.max_attempts - 1:
            return Transition(
                type=TransitionType.RETRY,
                reason=f"Retry {retry_count + 1}/{retry.max_attempts}",
            )
        return Transition.block(f"Max retries exceeded ({retry.max_attempts})")

    def calculate_retry_delay(self, policy_name: str, attempt_number: int) -> int:
        """
        Delay in ms before the next attempt.

        Formula per strategy, clamped to [initial, max]:
        - exponential: initial * 2^attempt
        - linear: initial * (attempt + 1)
        - fixed: initial
        """
        policy = self.store.get_policy(policy_name)
        if policy is None or policy.retry is None:
            return DEFAULT_RETRY_DELAY_MS

        retry = policy.retry
        initial = retry.initial_delay_ms or DEFAULT_RETRY_DELAY_MS
        maximum = retry.max_delay_ms or DEFAULT_MAX_RETRY_DELAY_MS

        if retry.backoff_strategy == "exponential":
            delay = initial * (2 ** attempt_number)
        elif retry.backoff_strategy == "linear":
            delay = initial * (attempt_number + 1)
        else:
            delay = initial

        return max(initial, min(delay, maximum))

    def calculate_timeout(self, policy_name: str, phase_name: str) -> int:
        """Timeout in ms for one attempt: policy base times phase multiplier."""
        policy = self.store.get_policy(policy_name)
        if policy is None:
            return DEFAULT_TIMEOUT_BASE_MS

        phase = policy.get_phase(phase_name)
        multiplier = phase.timeout_multiplier if phase else 1.0
        return int(policy.timeout_base_ms * multiplier)

    def stall_threshold(self, policy_name: str) -> int:
        policy = self.store.get_policy(policy_name)
        return policy.stall_threshold_ms if policy else DEFAULT_STALL_THRESHOLD_MS

    def requires_hitl(self, policy_name: str) -> bool:
        policy = self.store.get_policy(policy_name)
        return policy.require_hitl if policy else False

    def validate_transition(
        self,
        transition: Transition,
        policy_name: str,
        current_phase: str,
        registry: Optional["AgentRegistry"] = None,
    ) -> List[str]:
        """Return a list of problems with ``transition``; empty when valid."""
        errors: List[str] = []

        if transition.type == TransitionType.JUMP_BACK:
            target = transition.target_phase
            if not target:
                errors.append("jump_back transition requires jump_target_phase or next_phase")
            elif target not in self.store.phase_sequence(policy_name):
                errors.append(f"Target phase '{target}' not found in policy '{policy_name}'")
            elif target == current_phase:
                errors.append(f"Cannot jump from phase '{current_phase}' to itself")

        if transition.type == TransitionType.DYNAMIC_DECISION:
            if not transition.dynamic_agent:
                errors.append("dynamic_decision transition requires dynamic_agent")
            elif registry is not None:
                agents = registry.find_by_capabilities([transition.dynamic_agent], active_only=True)
                if not agents:
                    errors.append(
                        f"No active agents found with capability '{transition.dynamic_agent}'"
                    )

        return errors
