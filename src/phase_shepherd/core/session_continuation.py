"""Decides whether a phase may continue a prior phase's agent session."""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import SessionSettings
from .policy import PhaseConfig, PolicyStore
from .run import RunStatus
from .run_log import RunLog

logger = logging.getLogger(__name__)

SHARED = "@shared"
PREVIOUS = "@previous"
SELF = "@self"
FIRST = "@first"


@dataclass
class SessionDecision:
    session_id: Optional[str]
    should_reuse: bool
    reason: str
    tokens_used: int = 0
    token_limit: int = 0


class SessionContinuation:
    """
    Resolves a phase's ``reuse_session_from_phase`` target to a session id.

    Logic:
    - @self: this phase; @first: the policy's first phase
    - @previous: the phase before this one (the first phase maps to itself)
    - @shared: the issue's most recent completed run in any phase
    - anything else names a phase directly
    - reuse only while tokens summed across the session stay below
      threshold * max_context_tokens
    """

    def __init__(self, store: PolicyStore, run_log: RunLog, settings: Optional[SessionSettings] = None):
        self.store = store
        self.run_log = run_log
        self.settings = settings or SessionSettings()

    def resolve_reuse_target(self, policy_name: str, phase_name: str, target: str) -> Optional[str]:
        if target == SELF:
            return phase_name
        if target == FIRST:
            return self.store.first_phase(policy_name)
        if target == PREVIOUS:
            return self.store.previous_phase(policy_name, phase_name) or phase_name
        return target

    def threshold_for(self, phase: PhaseConfig) -> float:
        if phase.context_window_threshold is not None:
            return phase.context_window_threshold
        return self.settings.context_window_threshold

    def max_tokens_for(self, phase: PhaseConfig) -> int:
        if phase.max_context_tokens is not None:
            return phase.max_context_tokens
        return self.settings.max_context_tokens

    def session_tokens(self, session_id: str) -> int:
        return sum(run.tokens_used for run in self.run_log.get_runs_by_session(session_id))

    def find_reusable_session(self, issue_id: str, policy_name: str, phase: PhaseConfig) -> SessionDecision:
        if not phase.reuse_session_from_phase:
            return SessionDecision(None, False, "Session reuse not configured")

        target = self.resolve_reuse_target(policy_name, phase.name, phase.reuse_session_from_phase)
        completed = self.run_log.query_runs(
            issue_id=issue_id,
            phase=None if target == SHARED else target,
            status=RunStatus.COMPLETED.value,
        )
        source = next((run for run in completed if run.session_id), None)
        if source is None:
            return SessionDecision(None, False, f"No completed run with a session for target '{target}'")

        tokens = self.session_tokens(source.session_id)
        limit = int(self.threshold_for(phase) * self.max_tokens_for(phase))
        if tokens >= limit:
            logger.warning(
                f"Session {source.session_id} for {issue_id} [{phase.name}] used {tokens} tokens "
                f"(limit {limit}); starting a new session"
            )
            return SessionDecision(
                None, False,
                f"Context budget exceeded ({tokens} >= {limit} tokens)",
                tokens_used=tokens, token_limit=limit,
            )

        return SessionDecision(
            source.session_id, True,
            f"Reusing session from phase '{source.phase}' ({tokens}/{limit} tokens)",
            tokens_used=tokens, token_limit=limit,
        )
