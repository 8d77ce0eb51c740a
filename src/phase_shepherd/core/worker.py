"""Worker loop: drives ready issues through their policy's phases."""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..decision.decision_agent import DecisionAgent, DecisionAgentError
from ..decision.prompt_builder import (
    DecisionPromptBuilder,
    TemplateContext,
    recent_decision_entries,
)
from ..decision.worker_assistant import Directive, WorkerAssistant
from ..integrations.beads import BeadsClient, IssueLabels
from ..llm.base import AgentBackend, AgentLaunchError, AgentRequest
from ..utils.rich_logging import ContextLogger
from .agent_registry import AgentDefinition, AgentRegistry, SelectionCriteria
from .config import ShepherdConfig
from .hitl import validate_hitl_reason
from .issue import Issue, IssueStatus
from .messenger import PhaseMessage, PhaseMessenger
from .policy import PhaseConfig, PolicyConfig, PolicyResolver, PolicyStore
from .run import DecisionType, ErrorDetails, Outcome, RunRecord, RunStatus
from .run_log import RunLog
from .session_continuation import SessionContinuation, SessionDecision
from .transitions import (
    REASON_APPROVAL_REQUIRED,
    Transition,
    TransitionEngine,
    TransitionType,
)

HITL_APPROVAL = "approval"
HITL_MANUAL_INTERVENTION = "manual-intervention"
RESULT_MESSAGE_MAX_CHARS = 4000
LAUNCH_ERROR = "launch_error"


@dataclass
class ProcessResult:
    """What happened to one issue in one pass of the loop."""
    issue_id: str
    policy_name: Optional[str] = None
    phase: Optional[str] = None
    run_id: Optional[str] = None
    agent_id: Optional[str] = None
    transition: Optional[Transition] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class WorkerLoop:
    """
    Single sequential control loop over the issue tracker backlog.

    Each eligible issue gets one phase attempt per pass: resolve policy and
    phase, pick an agent, record a Run, execute, compute the transition
    (worker assistant and decision agent included) and apply it back to the
    tracker. Collaborators are injected; anything left out is built from
    ``config``.
    """

    def __init__(
        self,
        config: ShepherdConfig,
        store: PolicyStore,
        registry: AgentRegistry,
        run_log: RunLog,
        beads: BeadsClient,
        backend: AgentBackend,
        resolver: Optional[PolicyResolver] = None,
        engine: Optional[TransitionEngine] = None,
        messenger: Optional[PhaseMessenger] = None,
        worker_assistant: Optional[WorkerAssistant] = None,
        decision_agent: Optional[DecisionAgent] = None,
        session: Optional[SessionContinuation] = None,
        logger: Optional[ContextLogger] = None,
    ):
        self.config = config
        self.store = store
        self.registry = registry
        self.run_log = run_log
        self.beads = beads
        self.backend = backend
        self.labels = IssueLabels(config.labels.prefix)

        self.resolver = resolver or PolicyResolver(
            store,
            label_prefix=config.labels.prefix,
            invalid_label_strategy=config.workflow.invalid_label_strategy,
        )
        self.engine = engine or TransitionEngine(store)
        self.messenger = messenger or PhaseMessenger(
            config.resolve_path(config.data_dir), config.messenger
        )
        self.worker_assistant = worker_assistant or WorkerAssistant(
            backend, registry, config.worker_assistant
        )
        self.decision_agent = decision_agent or DecisionAgent(
            backend,
            registry,
            DecisionPromptBuilder(config.resolve_path(config.decision_prompts_path)),
        )
        self.session = session or SessionContinuation(store, run_log, config.session)
        self.logger = logger or ContextLogger(logging.getLogger(__name__), "worker")

        self._running = False

    @property
    def poll_interval(self) -> float:
        return self.config.worker.poll_interval_ms / 1000

    # --- loop ---

    async def run(self, max_cycles: Optional[int] = None) -> None:
        """Poll until stopped, or for ``max_cycles`` passes when given."""
        self._running = True
        self.logger.info(
            f"🚀 Starting worker (poll every {self.config.worker.poll_interval_ms}ms, "
            f"{len(self.store.policy_names())} policies, {len(self.registry.all_agents())} agents)"
        )

        cycles = 0
        while self._running:
            results = await self.process_ready_issues()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            if not results:
                self.logger.debug(f"No eligible issues, sleeping for {self.poll_interval}s")
            await asyncio.sleep(self.poll_interval)

        self._running = False
        self.logger.info("Worker stopped")

    async def stop(self) -> None:
        """Stop after the issue currently in flight finishes."""
        self.logger.info("Stopping worker")
        self._running = False

    async def process_ready_issues(self) -> List[ProcessResult]:
        try:
            issues = await self.eligible_issues()
        except Exception as e:
            self.logger.error(f"Failed to list ready issues: {e}")
            return []

        results = []
        for issue in issues:
            try:
                results.append(await self.process_issue(issue))
            except Exception as e:
                # Isolate per-issue failures
                self.logger.error(f"Unhandled error processing {issue.id}: {e}", exc_info=True)
                self.logger.clear_context()
                results.append(ProcessResult(issue_id=issue.id, error=str(e)))
        return results

    async def eligible_issues(self) -> List[Issue]:
        """Ready, open issues that are neither excluded nor waiting out a retry delay."""
        eligible = []
        for issue in await self.beads.ready_issues():
            if issue.status != IssueStatus.OPEN.value:
                continue
            if self.labels.is_excluded(issue):
                self.logger.debug(f"Skipping excluded issue {issue.id}")
                continue
            if self._in_retry_backoff(issue):
                continue
            eligible.append(issue)
        return eligible

    def _in_retry_backoff(self, issue: Issue) -> bool:
        latest = self.run_log.query_runs(issue_id=issue.id, limit=1)
        if not latest:
            return False
        run = latest[0]
        delay_ms = run.metadata.get("retry_delay_ms")
        if not delay_ms or run.completed_at is None:
            return False
        return datetime.now(UTC) < run.completed_at + timedelta(milliseconds=delay_ms)

    # --- one issue ---

    async def process_issue(self, issue: Issue) -> ProcessResult:
        policy_name = self.resolver.match_policy(issue)
        policy = self.store.get_policy(policy_name)
        self.logger.issue_started(issue.id, issue.title, policy_name)
        if policy is None:
            error = f"Policy '{policy_name}' not found"
            self.logger.issue_failed(error)
            return ProcessResult(issue_id=issue.id, policy_name=policy_name, error=error)

        phase = await self._resolve_phase(issue, policy)
        self.logger.phase_change(phase.name)
        result = ProcessResult(issue_id=issue.id, policy_name=policy_name, phase=phase.name)

        limit_transition = self._check_visit_limit(issue, phase)
        if limit_transition is not None:
            await self.apply_transition(
                issue, policy_name, phase.name, limit_transition,
                set_hitl=self.config.loop_prevention.trigger_hitl or self.engine.requires_hitl(policy_name),
            )
            result.transition = limit_transition
            self.logger.transition_applied(limit_transition.type.value, limit_transition.reason)
            return result

        agent = self.select_agent(issue, policy, phase)
        if agent is None:
            result.error = f"No suitable agent available for phase '{phase.name}'"
            self.logger.issue_failed(result.error)
            return result
        result.agent_id = agent.id

        retry_count = self.run_log.get_phase_retry_count(issue.id, phase.name)
        attempt_number = self.run_log.get_phase_visit_count(issue.id, phase.name) + 1
        previous_duration_ms = self.run_log.get_phase_total_duration(issue.id, phase.name)
        run = self.run_log.create_run(RunRecord(
            issue_id=issue.id,
            agent_id=agent.id,
            policy_name=policy_name,
            phase=phase.name,
            metadata={
                "attempt_number": attempt_number,
                "retry_count": retry_count,
                "phase_total_duration_ms": previous_duration_ms,
            },
        ))
        result.run_id = run.id
        self.run_log.log_decision(
            run.id, DecisionType.AGENT_SELECTION, agent.id,
            f"Selected for capabilities {phase.capabilities or ['*']}",
            phase=phase.name, priority=agent.priority,
        )

        try:
            await self.beads.update_issue(issue.id, status=IssueStatus.IN_PROGRESS)

            messages = self._receive_messages(issue, phase, run)
            session = self.session.find_reusable_session(issue.id, policy_name, phase)
            if phase.reuse_session_from_phase:
                self.logger.debug(f"Session continuation: {session.reason}")

            outcome, session_id = await self._execute(issue, phase, agent, messages, session)
            outcome = self._enforce_timeout(policy_name, phase, outcome, run)
            if outcome.metrics.tokens_used:
                self.logger.token_usage(outcome.metrics.tokens_used, outcome.metrics.cost)

            transition = self.engine.determine(policy_name, phase.name, outcome, retry_count)
            transition = await self._consult_worker_assistant(
                issue, policy, phase, outcome, transition, retry_count, run
            )
            if transition.type == TransitionType.DYNAMIC_DECISION:
                transition = await self._resolve_decision(issue, policy_name, phase, outcome, transition, run)

            run_metadata: Dict[str, Any] = {
                "transition": transition.type.value,
                "transition_reason": transition.reason,
                "phase_total_duration_ms": previous_duration_ms + (outcome.metrics.duration_ms or 0),
            }
            if transition.type == TransitionType.RETRY:
                run_metadata["retry_delay_ms"] = self.engine.calculate_retry_delay(policy_name, retry_count)
            self.run_log.update_run(
                run.id,
                status=(RunStatus.COMPLETED if outcome.success else RunStatus.FAILED).value,
                outcome=outcome,
                session_id=session_id,
                metadata=run_metadata,
            )
        except Exception as e:
            self._fail_run(run, e)
            raise

        await self.apply_transition(
            issue, policy_name, phase.name, transition,
            run=run, outcome=outcome, details=outcome.error or outcome.message,
        )
        result.transition = transition
        self.logger.transition_applied(transition.type.value, transition.reason, transition.target_phase)
        return result

    def _fail_run(self, run: RunRecord, error: Exception) -> None:
        """Close out a run interrupted before its outcome was recorded."""
        current = self.run_log.get_run(run.id)
        if current is None or current.is_terminal:
            return
        self.run_log.update_run(
            run.id,
            status=RunStatus.FAILED.value,
            outcome=Outcome.failure(f"Run aborted: {error}"),
            metadata={"transition_reason": f"Run aborted: {error}"},
        )

    async def _resolve_phase(self, issue: Issue, policy: PolicyConfig) -> PhaseConfig:
        """Resume from the persisted phase label, or start at the first phase."""
        current = self.labels.current_phase(issue)
        phase = policy.get_phase(current) if current else None

        add: List[str] = []
        remove: List[str] = []
        if phase is None:
            phase = policy.phases[0]
            if current:
                self.logger.warning(
                    f"Phase '{current}' is not part of policy '{policy.name}', "
                    f"restarting at '{phase.name}'"
                )
            remove = self.labels.phase_labels(issue)
            add.append(self.labels.phase(phase.name))
        if not issue.has_label(self.labels.managed):
            add.append(self.labels.managed)

        if add or remove:
            await self.beads.update_labels(issue.id, add=add, remove=remove)
            issue.labels = [label for label in issue.labels if label not in remove] + add
        return phase

    def _check_visit_limit(self, issue: Issue, phase: PhaseConfig) -> Optional[Transition]:
        settings = self.config.loop_prevention
        if not settings.enabled:
            return None

        max_visits = phase.max_visits if phase.max_visits is not None else settings.max_visits_default
        visits = self.run_log.get_phase_visit_count(issue.id, phase.name)
        if visits < max_visits:
            return None

        reason = f"Phase '{phase.name}' exceeded max_visits ({max_visits})"
        self.logger.warning(f"{reason} for {issue.id}")
        latest = self.run_log.query_runs(issue_id=issue.id, phase=phase.name, limit=1)
        if latest:
            self.run_log.log_decision(
                latest[0].id, DecisionType.HITL, "block", reason,
                visits=visits, max_visits=max_visits,
            )
        return Transition.block(reason)

    def select_agent(
        self, issue: Issue, policy: PolicyConfig, phase: PhaseConfig
    ) -> Optional[AgentDefinition]:
        agent = self.registry.select_agent(SelectionCriteria(
            required_capabilities=phase.capabilities,
            tags=[issue.issue_type],
            agent_id=phase.agent,
        ))
        if agent is not None:
            return agent

        for agent_id in self._fallback_candidates(policy, phase):
            fallback = self.registry.get_agent(agent_id)
            if fallback is not None and fallback.active:
                self.logger.warning(f"No agent matched phase '{phase.name}', falling back to {agent_id}")
                return fallback
        return None

    def _fallback_candidates(self, policy: PolicyConfig, phase: PhaseConfig) -> List[str]:
        candidates = []
        if phase.fallback_agent:
            candidates.append(phase.fallback_agent)
        candidates += [policy.fallback_mappings[c] for c in phase.capabilities if c in policy.fallback_mappings]

        settings = self.config.fallback
        if settings.enabled:
            candidates += [settings.mappings[c] for c in phase.capabilities if c in settings.mappings]
            if settings.default_agent:
                candidates.append(settings.default_agent)
        return candidates

    def _receive_messages(self, issue: Issue, phase: PhaseConfig, run: RunRecord) -> List[PhaseMessage]:
        messages = self.messenger.receive(issue.id, phase.name, mark_as_read=True)
        for message in messages:
            self.run_log.log_decision(
                run.id, DecisionType.MESSAGE_RECEIPT, message.id,
                f"{message.message_type} from {message.from_phase}",
                from_phase=message.from_phase, to_phase=message.to_phase,
            )
        return messages

    def build_instructions(self, issue: Issue, phase: PhaseConfig, messages: List[PhaseMessage]) -> str:
        if phase.custom_prompt:
            instructions = (
                phase.custom_prompt
                .replace("{{issue.id}}", issue.id)
                .replace("{{issue.title}}", issue.title)
                .replace("{{issue.description}}", issue.description or "")
                .replace("{{phase}}", phase.name)
            )
        else:
            lines = [
                f"# Task: {issue.title}",
                "",
                f"- Issue: {issue.id}",
                f"- Type: {issue.issue_type}",
                f"- Priority: {issue.priority}",
                "",
                "## Description",
                issue.description or "(no description)",
                "",
                f"## Phase: {phase.name}",
            ]
            if phase.description:
                lines.append(phase.description)
            lines += [
                "",
                "Complete the work for this phase only. Summarize what you did when finished.",
            ]
            instructions = "\n".join(lines)

        if messages:
            notes = [f"- [{m.message_type} from {m.from_phase}] {m.content}" for m in messages]
            instructions += "\n\n## Messages from previous phases\n" + "\n".join(notes)
        return instructions

    def resolve_model(self, phase: PhaseConfig, agent: AgentDefinition) -> Optional[str]:
        """Phase override, then the agent's model, then the platform default."""
        return phase.model or agent.model or self.config.opencode.default_model

    async def _execute(
        self,
        issue: Issue,
        phase: PhaseConfig,
        agent: AgentDefinition,
        messages: List[PhaseMessage],
        session: SessionDecision,
    ) -> Tuple[Outcome, Optional[str]]:
        request = AgentRequest(
            agent_id=agent.id,
            instructions=self.build_instructions(issue, phase, messages),
            title=f"{issue.id} [{phase.name}]: {issue.title}",
            model=self.resolve_model(phase, agent),
            session_id=session.session_id if session.should_reuse else None,
            working_dir=self.config.opencode.working_dir,
        )
        self.logger.info(f"🤖 Dispatching {agent.id} (model: {request.model or 'default'})")

        start = time.monotonic()
        try:
            result = await self.backend.run_agent(request)
        except AgentLaunchError as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            self.logger.error(f"Agent launch failed: {e}")
            return Outcome.failure(
                f"Agent launch failed: {e}",
                duration_ms=duration_ms,
                error_details=ErrorDetails(type=LAUNCH_ERROR, message=str(e)),
            ), request.session_id

        return result.outcome, result.session_id or request.session_id

    def _enforce_timeout(
        self, policy_name: str, phase: PhaseConfig, outcome: Outcome, run: RunRecord
    ) -> Outcome:
        """Mark an outcome failed when its measured duration exceeded the phase timeout."""
        timeout_ms = self.engine.calculate_timeout(policy_name, phase.name)
        duration_ms = outcome.metrics.duration_ms
        if duration_ms is None or duration_ms <= timeout_ms:
            return outcome

        error = f"Execution exceeded timeout of {timeout_ms}ms (actual: {duration_ms}ms)"
        self.logger.warning(error)
        self.run_log.log_decision(
            run.id, DecisionType.TIMEOUT, "timeout_exceeded", error,
            timeout_ms=timeout_ms, duration_ms=duration_ms,
        )
        return outcome.model_copy(update={
            "success": False,
            "error": error,
            "error_details": ErrorDetails(type="timeout", message=error),
        })

    async def _consult_worker_assistant(
        self,
        issue: Issue,
        policy: PolicyConfig,
        phase: PhaseConfig,
        outcome: Outcome,
        transition: Transition,
        retry_count: int,
        run: RunRecord,
    ) -> Transition:
        if transition.type == TransitionType.DYNAMIC_DECISION:
            return transition
        if transition.type == TransitionType.BLOCK and transition.reason == REASON_APPROVAL_REQUIRED:
            return transition
        if outcome.error_details is not None and outcome.error_details.type == LAUNCH_ERROR:
            # Transport failures take the plain retry/block path
            return transition
        if not self.worker_assistant.should_consult(policy, phase, outcome):
            return transition

        directive = await self.worker_assistant.consult(issue, phase.name, outcome)
        overridden = self._directive_transition(directive, policy.name, phase.name, retry_count)
        self.run_log.log_decision(
            run.id, DecisionType.WORKER_ASSISTANT, directive.value,
            f"Base transition {transition.type.value} ({transition.reason}) -> {overridden.type.value}",
            base_transition=transition.type.value,
        )
        return overridden

    def _directive_transition(
        self, directive: Directive, policy_name: str, phase_name: str, retry_count: int
    ) -> Transition:
        if directive == Directive.ADVANCE:
            next_phase = self.store.next_phase(policy_name, phase_name)
            if next_phase:
                return Transition(
                    type=TransitionType.ADVANCE,
                    next_phase=next_phase,
                    reason="Worker assistant: advance",
                )
            return Transition(type=TransitionType.CLOSE, reason="Worker assistant: advance past last phase")

        if directive == Directive.RETRY:
            max_attempts = self.engine.retry_config(policy_name).max_attempts
            if retry_count < max_attempts - 1:
                return Transition(
                    type=TransitionType.RETRY,
                    reason=f"Worker assistant: retry {retry_count + 1}/{max_attempts}",
                )
            return Transition.block(f"Max retries exceeded ({max_attempts})")

        return Transition.block("Worker assistant: block")

    async def _resolve_decision(
        self,
        issue: Issue,
        policy_name: str,
        phase: PhaseConfig,
        outcome: Outcome,
        transition: Transition,
        run: RunRecord,
    ) -> Transition:
        decision_config = transition.decision_config or phase.decision
        context = TemplateContext(
            issue=issue,
            outcome=outcome,
            current_phase=phase.name,
            custom_instructions=decision_config.custom_instructions,
            allowed_destinations=list(decision_config.allowed_destinations),
            recent_decisions=recent_decision_entries(
                self.run_log.recent_decisions(issue.id, DecisionType.DYNAMIC_DECISION)
            ),
            phase_history=self._phase_history(issue.id),
            performance_context=self._performance_context(issue.id, phase.name),
        )

        try:
            decision = await self.decision_agent.decide(decision_config, context)
        except DecisionAgentError as e:
            resolved = Transition.block(f"Decision agent unavailable: {e}")
            self.run_log.log_decision(run.id, DecisionType.DYNAMIC_DECISION, "block", resolved.reason)
            return resolved

        resolved = decision.transition
        response = decision.response
        self.run_log.log_decision(
            run.id, DecisionType.DYNAMIC_DECISION,
            response.decision if response else resolved.type.value,
            resolved.reason,
            confidence=response.confidence if response else None,
            recommendations=response.recommendations if response else None,
            attempts=decision.attempts,
            errors=decision.errors,
            agent_id=decision.agent_id,
        )

        errors = self.engine.validate_transition(resolved, policy_name, phase.name)
        if errors:
            return Transition.block(f"Invalid transition: {'; '.join(errors)}")
        return resolved

    def _phase_history(self, issue_id: str) -> List[Dict[str, Any]]:
        history = []
        for run in reversed(self.run_log.query_runs(issue_id=issue_id)):
            if not run.is_terminal:
                continue
            history.append({
                "phase": run.phase,
                "attempt_number": run.metadata.get("attempt_number", 1),
                "status": run.status,
                "duration_ms": run.duration_ms or 0,
                "error": run.outcome.error if run.outcome else None,
            })
        return history

    def _performance_context(self, issue_id: str, phase_name: str) -> Dict[str, Any]:
        stats = self.run_log.get_duration_stats(issue_id=issue_id)
        return {
            "average_duration_ms": stats["average_ms"],
            "total_duration_ms": stats["total_ms"],
            "phase_visit_count": self.run_log.get_phase_visit_count(issue_id, phase_name),
        }

    # --- applying transitions ---

    async def apply_transition(
        self,
        issue: Issue,
        policy_name: str,
        phase_name: str,
        transition: Transition,
        run: Optional[RunRecord] = None,
        outcome: Optional[Outcome] = None,
        details: Optional[str] = None,
        set_hitl: bool = True,
    ) -> None:
        """Write ``transition`` back to the issue tracker and the decision log."""
        hitl_labels = self.labels.hitl_labels(issue)
        phase_labels = self.labels.phase_labels(issue)

        if run is not None:
            self.run_log.log_decision(
                run.id, DecisionType.PHASE_TRANSITION, transition.type.value, transition.reason,
                policy=policy_name,
                from_phase=phase_name,
                to_phase=transition.target_phase,
            )

        if transition.type in (TransitionType.ADVANCE, TransitionType.JUMP_BACK):
            target = transition.target_phase
            target_label = self.labels.phase(target)
            await self.beads.update_labels(
                issue.id,
                add=[target_label],
                remove=[label for label in phase_labels + hitl_labels if label != target_label],
            )
            await self.beads.update_issue(issue.id, status=IssueStatus.OPEN)
            if transition.type == TransitionType.ADVANCE and run is not None:
                self._send_result(issue, phase_name, target, run, outcome)

        elif transition.type == TransitionType.RETRY:
            if hitl_labels:
                await self.beads.update_labels(issue.id, remove=hitl_labels)
            await self.beads.update_issue(issue.id, status=IssueStatus.OPEN)
            if run is not None:
                self.run_log.log_decision(
                    run.id, DecisionType.RETRY, "retry", transition.reason,
                    retry_delay_ms=self.engine.calculate_retry_delay(
                        policy_name, run.metadata.get("retry_count", 0)
                    ),
                )

        elif transition.type == TransitionType.BLOCK:
            await self._block(issue, transition, run, details, set_hitl)

        elif transition.type == TransitionType.CLOSE:
            await self.beads.close_issue(issue.id, reason=transition.reason)
            if phase_labels or hitl_labels:
                await self.beads.update_labels(issue.id, remove=phase_labels + hitl_labels)

        else:
            raise ValueError(f"Cannot apply unresolved transition {transition.type.value}")

    async def _block(
        self,
        issue: Issue,
        transition: Transition,
        run: Optional[RunRecord],
        details: Optional[str],
        set_hitl: bool,
    ) -> None:
        if not set_hitl:
            await self.beads.update_issue(issue.id, status=IssueStatus.BLOCKED)
            return

        reason = HITL_APPROVAL if "approval" in transition.reason.lower() else HITL_MANUAL_INTERVENTION
        note = (
            f"🔔 HITL Required: {transition.reason}\n\n{details or ''}\n\n"
            "Please review and provide approval to proceed."
        )
        await self.beads.update_issue(issue.id, status=IssueStatus.BLOCKED, notes=note)

        if validate_hitl_reason(reason, self.config.hitl.allowed_reasons):
            await self.beads.add_label(issue.id, self.labels.hitl(reason))
        else:
            self.logger.warning(f"HITL reason '{reason}' is not allowed; blocking without a label")

        if run is not None:
            self.run_log.log_decision(run.id, DecisionType.HITL, reason, transition.reason)

    def _send_result(
        self,
        issue: Issue,
        from_phase: str,
        to_phase: str,
        run: RunRecord,
        outcome: Optional[Outcome],
    ) -> None:
        content = (outcome.message if outcome else "") or f"Phase '{from_phase}' completed"
        metadata = {"run_id": run.id}
        if outcome is not None:
            metadata["artifacts"] = len(outcome.artifacts)
            metadata["tokens_used"] = outcome.metrics.tokens_used
        try:
            message = self.messenger.send(
                issue.id, from_phase, to_phase, "result",
                content[-RESULT_MESSAGE_MAX_CHARS:],
                metadata=metadata,
                run_counter=run.metadata.get("attempt_number", 1),
            )
        except ValueError as e:
            self.logger.warning(f"Could not send result message to '{to_phase}': {e}")
            return
        self.run_log.log_decision(
            run.id, DecisionType.MESSAGE_SEND, message.id,
            f"result from {from_phase} to {to_phase}",
            from_phase=from_phase, to_phase=to_phase,
        )
