"""Decision Agent: resolves a dynamic_decision transition into a concrete one."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..core.agent_registry import AgentRegistry, SelectionCriteria
from ..core.policy import DecisionConfig
from ..core.transitions import Transition, TransitionType
from ..llm.base import AgentBackend, AgentLaunchError, AgentRequest
from .prompt_builder import (
    REQUIRE_APPROVAL,
    DecisionPromptBuilder,
    DecisionResponse,
    TemplateContext,
)

logger = logging.getLogger(__name__)

MAX_DECISION_RETRIES = 2
DECISION_AGENT_TAG = "decision"

RETRY_NOTE = (
    "\n\nNote: Previous attempts failed. Please provide a clearer, more explicit "
    "decision following the required format."
)


class DecisionAgentError(RuntimeError):
    """The decision agent could not be consulted at all."""


@dataclass
class DecisionResult:
    transition: Transition
    response: Optional[DecisionResponse] = None
    attempts: int = 0
    errors: List[str] = field(default_factory=list)
    agent_id: Optional[str] = None


class DecisionAgent:
    """
    Prompts an agent holding the phase's decision capability for a routing choice.

    Logic:
    - Malformed or out-of-set replies are re-prompted up to two more times
    - Still invalid after that: block, with the last validation error as reason
    - require_approval, requires_approval=true, or confidence below the
      require_approval threshold: block
    - jump_to_<phase>: jump_back; advance_to_<phase>: advance
    """

    def __init__(
        self,
        backend: AgentBackend,
        registry: AgentRegistry,
        prompt_builder: DecisionPromptBuilder,
        max_retries: int = MAX_DECISION_RETRIES,
    ):
        self.backend = backend
        self.registry = registry
        self.prompt_builder = prompt_builder
        self.max_retries = max_retries

    async def decide(
        self,
        decision_config: DecisionConfig,
        context: TemplateContext,
    ) -> DecisionResult:
        capability = decision_config.capability
        agent = self.registry.select_agent(SelectionCriteria(
            required_capabilities=[capability],
            tags=[DECISION_AGENT_TAG],
        ))
        if agent is None:
            raise DecisionAgentError(f"No agent available with decision capability '{capability}'")

        base_instructions = self.prompt_builder.build_decision_instructions(
            decision_config.prompt, context
        )
        max_attempts = self.max_retries + 1
        errors: List[str] = []

        for attempt in range(1, max_attempts + 1):
            instructions = base_instructions if attempt == 1 else base_instructions + RETRY_NOTE
            request = AgentRequest(
                agent_id=agent.id,
                instructions=instructions,
                title=f"Decision: {context.issue.id} [{context.current_phase}]",
                model=agent.model,
            )
            try:
                result = await asyncio.wait_for(
                    self.backend.run_agent(request),
                    timeout=decision_config.timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                errors.append(f"Decision agent timed out after {decision_config.timeout_ms}ms")
                logger.warning(f"Decision attempt {attempt}/{max_attempts} for {context.issue.id}: {errors[-1]}")
                continue
            except AgentLaunchError as e:
                raise DecisionAgentError(f"Decision agent could not be started: {e}") from e

            if not result.outcome.success:
                errors.append(result.outcome.error or "Decision agent run failed")
                logger.warning(f"Decision attempt {attempt}/{max_attempts} for {context.issue.id}: {errors[-1]}")
                continue

            validation = self.prompt_builder.validate_response(
                result.content,
                decision_config.allowed_destinations,
                decision_config.confidence_thresholds,
            )
            if not validation.valid or validation.response is None:
                errors.append("; ".join(validation.errors))
                logger.warning(
                    f"Decision attempt {attempt}/{max_attempts} for {context.issue.id} "
                    f"rejected: {errors[-1]}"
                )
                continue

            response = validation.response
            self.prompt_builder.track_decision(response)
            return DecisionResult(
                transition=self.to_transition(response, decision_config),
                response=response,
                attempts=attempt,
                errors=errors,
                agent_id=agent.id,
            )

        last_error = errors[-1] if errors else "unknown error"
        return DecisionResult(
            transition=Transition.block(
                f"Decision requires approval: Failed to parse AI response after "
                f"{max_attempts} attempts. Last error: {last_error}"
            ),
            attempts=max_attempts,
            errors=errors,
            agent_id=agent.id,
        )

    @staticmethod
    def to_transition(response: DecisionResponse, decision_config: DecisionConfig) -> Transition:
        threshold = decision_config.confidence_thresholds.require_approval
        if response.decision == REQUIRE_APPROVAL or response.requires_approval:
            return Transition.block(f"Decision requires approval: {response.reasoning}")
        if response.confidence < threshold:
            return Transition.block(
                f"Decision requires approval: confidence {response.confidence} "
                f"below threshold {threshold}"
            )

        target = response.target_phase
        if response.decision.startswith("jump_to_"):
            return Transition(
                type=TransitionType.JUMP_BACK,
                jump_target_phase=target,
                reason=f"Decision agent: {response.reasoning}",
            )
        return Transition(
            type=TransitionType.ADVANCE,
            next_phase=target,
            reason=f"Decision agent: {response.reasoning}",
        )
