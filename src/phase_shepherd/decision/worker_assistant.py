"""Worker Assistant: a one-word AI verdict for ambiguous phase outcomes."""

import asyncio
import json
import logging
import re
from enum import Enum
from typing import Optional

from ..core.agent_registry import AgentRegistry, SelectionCriteria
from ..core.config import WorkerAssistantSettings
from ..core.issue import Issue
from ..core.policy import PhaseConfig, PolicyConfig
from ..core.run import Outcome
from ..llm.base import AgentBackend, AgentLaunchError, AgentRequest

logger = logging.getLogger(__name__)

ARTIFACT_TRIGGER_COUNT = 5
SUCCESS_HEDGE_KEYWORDS = ("unclear", "partial", "ambiguous", "review")
FAILURE_KEYWORDS = ("timeout", "incomplete")

_DIRECTIVE_PATTERN = re.compile(r"advance|retry|block", re.IGNORECASE)


class Directive(str, Enum):
    ADVANCE = "advance"
    RETRY = "retry"
    BLOCK = "block"


def should_trigger(outcome: Outcome) -> bool:
    """True when an outcome is ambiguous enough to ask the assistant.

    Triggers:
    - success with warnings
    - success touching more than five artifacts
    - success whose message hedges ("unclear", "partial", "ambiguous", "review")
    - failure with structured error details, or mentioning timeout/incomplete
    """
    message = (outcome.message or "").lower()
    if outcome.success:
        if outcome.warnings:
            return True
        if len(outcome.artifacts) > ARTIFACT_TRIGGER_COUNT:
            return True
        return any(keyword in message for keyword in SUCCESS_HEDGE_KEYWORDS)

    if outcome.error_details is not None:
        return True
    text = f"{message} {(outcome.error or '').lower()}"
    return any(keyword in text for keyword in FAILURE_KEYWORDS)


def parse_response(response: Optional[str], fallback: Directive = Directive.BLOCK) -> Directive:
    """First directive word in the reply wins; anything else is the fallback."""
    if not response or not response.strip():
        return fallback
    match = _DIRECTIVE_PATTERN.search(response)
    if match is None:
        return fallback
    return Directive(match.group(0).lower())


def build_prompt(issue: Issue, phase: str, outcome: Outcome) -> str:
    summary = {
        "success": outcome.success,
        "message": outcome.message,
        "warnings": len(outcome.warnings),
        "artifacts": len(outcome.artifacts),
        "has_error": bool(outcome.error or outcome.error_details),
    }
    sections = [
        "# Worker Assistant Review",
        "",
        "An automated phase run finished with an ambiguous result. "
        "Decide what should happen to the issue next.",
        "",
        "# Issue",
        f"- ID: {issue.id}",
        f"- Title: {issue.title}",
        f"- Type: {issue.issue_type}",
        f"- Phase: {phase}",
        "",
        "# Outcome Summary",
        json.dumps(summary, indent=2),
    ]

    if outcome.warnings:
        sections += ["", "# Warnings"] + [f"- {w}" for w in outcome.warnings]

    details = outcome.error_details
    if details is not None:
        sections += ["", "# Error Details"]
        if details.type:
            sections.append(f"- Type: {details.type}")
        if details.message:
            sections.append(f"- Message: {details.message}")
        if details.file_path:
            location = details.file_path
            if details.line_number is not None:
                location += f":{details.line_number}"
            sections.append(f"- Location: {location}")
    elif outcome.error:
        sections += ["", "# Error Details", f"- Message: {outcome.error}"]

    sections += [
        "",
        "# Directives",
        "- ADVANCE: the work is good enough; move to the next phase",
        "- RETRY: the work is fixable; run this phase again",
        "- BLOCK: a human needs to look at this",
        "",
        "Respond with ONLY one word: ADVANCE, RETRY, or BLOCK",
    ]
    return "\n".join(sections)


class WorkerAssistant:
    """Asks an agent with the worker-assistant capability for a directive.

    Unavailable agent, timeout, launch failure or an unparseable reply all
    resolve to the configured fallback directive.
    """

    def __init__(
        self,
        backend: AgentBackend,
        registry: AgentRegistry,
        settings: Optional[WorkerAssistantSettings] = None,
    ):
        self.backend = backend
        self.registry = registry
        self.settings = settings or WorkerAssistantSettings()

    @property
    def fallback(self) -> Directive:
        return Directive(self.settings.fallback_action)

    def is_enabled(self, policy: PolicyConfig, phase: PhaseConfig) -> bool:
        """Global switch, then policy opt-out, then phase opt-out."""
        if not self.settings.enabled:
            return False
        if policy.worker_assistant and policy.worker_assistant.enabled is False:
            return False
        if phase.worker_assistant and phase.worker_assistant.enabled is False:
            return False
        return True

    def should_consult(self, policy: PolicyConfig, phase: PhaseConfig, outcome: Outcome) -> bool:
        return self.is_enabled(policy, phase) and should_trigger(outcome)

    async def consult(self, issue: Issue, phase: str, outcome: Outcome) -> Directive:
        agent = self.registry.select_agent(
            SelectionCriteria(required_capabilities=[self.settings.agent_capability])
        )
        if agent is None:
            logger.warning(
                f"No agent with capability '{self.settings.agent_capability}' for "
                f"{issue.id}; using fallback {self.fallback.value}"
            )
            return self.fallback

        request = AgentRequest(
            agent_id=agent.id,
            instructions=build_prompt(issue, phase, outcome),
            title=f"Worker assistant: {issue.id} [{phase}]",
            model=agent.model,
        )
        timeout = self.settings.timeout_ms / 1000
        try:
            result = await asyncio.wait_for(self.backend.run_agent(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Worker assistant timed out after {self.settings.timeout_ms}ms for {issue.id}; "
                f"using fallback {self.fallback.value}"
            )
            return self.fallback
        except AgentLaunchError as e:
            logger.warning(f"Worker assistant launch failed for {issue.id}: {e}")
            return self.fallback

        if not result.outcome.success:
            logger.warning(
                f"Worker assistant run failed for {issue.id}: {result.outcome.error}; "
                f"using fallback {self.fallback.value}"
            )
            return self.fallback

        directive = parse_response(result.content, self.fallback)
        logger.info(f"Worker assistant directive for {issue.id} [{phase}]: {directive.value}")
        return directive
