"""Tests for the Worker Assistant escalation path."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from phase_shepherd.core.agent_registry import AgentRegistry
from phase_shepherd.core.config import WorkerAssistantSettings
from phase_shepherd.core.policy import PhaseConfig, PolicyConfig, WorkerAssistantOverride
from phase_shepherd.core.run import Artifact, ErrorDetails
from phase_shepherd.decision.worker_assistant import (
    Directive,
    WorkerAssistant,
    build_prompt,
    parse_response,
    should_trigger,
)
from phase_shepherd.llm.base import AgentLaunchError, AgentResult
from tests.unit.shepherd_fixtures import AGENTS, make_issue, make_outcome


def _make_assistant(content="ADVANCE", registry=None, settings=None, **backend_kwargs):
    backend = AsyncMock()
    if backend_kwargs:
        backend.run_agent = AsyncMock(**backend_kwargs)
    else:
        backend.run_agent = AsyncMock(return_value=AgentResult(outcome=make_outcome(), content=content))
    assistant = WorkerAssistant(
        backend,
        registry if registry is not None else AgentRegistry(AGENTS),
        settings,
    )
    return assistant, backend


class TestShouldTrigger:
    def test_clean_success_does_not_trigger(self):
        assert should_trigger(make_outcome()) is False

    def test_success_with_warnings(self):
        assert should_trigger(make_outcome(warnings=["deprecated API"])) is True

    def test_success_with_many_artifacts(self):
        artifacts = [Artifact(path=f"f{i}.py") for i in range(6)]
        assert should_trigger(make_outcome(artifacts=artifacts)) is True
        assert should_trigger(make_outcome(artifacts=artifacts[:5])) is False

    @pytest.mark.parametrize("message", ["Partial fix applied", "Result UNCLEAR", "needs review"])
    def test_success_with_hedging_message(self, message):
        assert should_trigger(make_outcome(message=message)) is True

    def test_plain_failure_does_not_trigger(self):
        assert should_trigger(make_outcome(success=False)) is False

    def test_failure_with_error_details(self):
        outcome = make_outcome(success=False, error_details=ErrorDetails(type="SyntaxError"))
        assert should_trigger(outcome) is True

    def test_failure_mentioning_timeout(self):
        assert should_trigger(make_outcome(success=False, error="Request timeout")) is True
        assert should_trigger(make_outcome(success=False, message="Work incomplete")) is True


class TestParseResponse:
    def test_first_directive_wins(self):
        assert parse_response("I'd say retry, not block") == Directive.RETRY

    def test_case_insensitive(self):
        assert parse_response("  Advance.\n") == Directive.ADVANCE

    def test_garbage_uses_fallback(self):
        assert parse_response("no idea") == Directive.BLOCK
        assert parse_response("", Directive.RETRY) == Directive.RETRY
        assert parse_response(None) == Directive.BLOCK


def test_prompt_includes_error_location():
    outcome = make_outcome(
        success=False,
        error_details=ErrorDetails(type="AssertionError", message="expected 3", file_path="t.py", line_number=12),
    )

    prompt = build_prompt(make_issue(), "test", outcome)

    assert "- Location: t.py:12" in prompt
    assert "- Phase: test" in prompt
    assert prompt.endswith("Respond with ONLY one word: ADVANCE, RETRY, or BLOCK")


class TestIsEnabled:
    def test_enabled_by_default(self):
        assistant, _ = _make_assistant()
        assert assistant.is_enabled(PolicyConfig(name="p"), PhaseConfig(name="a")) is True

    def test_global_switch(self):
        assistant, _ = _make_assistant(settings=WorkerAssistantSettings(enabled=False))
        assert assistant.is_enabled(PolicyConfig(name="p"), PhaseConfig(name="a")) is False

    def test_policy_and_phase_opt_out(self):
        assistant, _ = _make_assistant()
        off = WorkerAssistantOverride(enabled=False)

        assert assistant.is_enabled(PolicyConfig(name="p", worker_assistant=off), PhaseConfig(name="a")) is False
        assert assistant.is_enabled(PolicyConfig(name="p"), PhaseConfig(name="a", worker_assistant=off)) is False


class TestConsult:
    @pytest.mark.asyncio
    async def test_returns_parsed_directive(self):
        assistant, backend = _make_assistant(content="RETRY")

        directive = await assistant.consult(make_issue(), "implement", make_outcome(warnings=["w"]))

        assert directive == Directive.RETRY
        request = backend.run_agent.call_args.args[0]
        assert request.agent_id == "assistant"
        assert request.title == "Worker assistant: bd-1 [implement]"

    @pytest.mark.asyncio
    async def test_no_agent_uses_fallback(self):
        assistant, backend = _make_assistant(registry=AgentRegistry())

        assert await assistant.consult(make_issue(), "implement", make_outcome()) == Directive.BLOCK
        backend.run_agent.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_uses_configured_fallback(self):
        async def slow(_request):
            await asyncio.sleep(1)

        settings = WorkerAssistantSettings(timeout_ms=10, fallback_action="ADVANCE")
        assistant, _ = _make_assistant(settings=settings, side_effect=slow)

        assert await assistant.consult(make_issue(), "implement", make_outcome()) == Directive.ADVANCE

    @pytest.mark.asyncio
    async def test_launch_failure_uses_fallback(self):
        assistant, _ = _make_assistant(side_effect=AgentLaunchError("opencode missing"))
        assert await assistant.consult(make_issue(), "implement", make_outcome()) == Directive.BLOCK

    @pytest.mark.asyncio
    async def test_failed_run_uses_fallback(self):
        assistant, _ = _make_assistant(
            return_value=AgentResult(outcome=make_outcome(success=False), content="ADVANCE"),
        )
        assert await assistant.consult(make_issue(), "implement", make_outcome()) == Directive.BLOCK
