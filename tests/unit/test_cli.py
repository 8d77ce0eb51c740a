"""Tests for the shepherd CLI."""

import copy
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner
from rich.console import Console

from phase_shepherd.cli.main import cli
from phase_shepherd.core.run import DecisionType, RunRecord
from phase_shepherd.core.run_log import RunLog
from phase_shepherd.core.messenger import PhaseMessenger
from phase_shepherd.core.transitions import Transition, TransitionType
from phase_shepherd.core.worker import ProcessResult
from tests.unit.shepherd_fixtures import POLICIES_DATA, make_issue, make_outcome

AGENTS_YAML = """\
agents:
  - id: planner
    name: Planner
    capabilities: [planning]
  - id: builder
    name: Builder
    capabilities: [coding, testing]
  - id: reviewer
    name: Reviewer
    capabilities: [review, decision-review]
  - id: assistant
    name: Assistant
    capabilities: [worker-assistant]
"""


@pytest.fixture
def workspace(tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "policies.yaml").write_text(yaml.safe_dump(POLICIES_DATA, sort_keys=False))
    (config_dir / "agents.yaml").write_text(AGENTS_YAML)
    return tmp_path


@pytest.fixture(autouse=True)
def wide_console():
    # Keep table cells on one line so assertions can match them
    with patch("phase_shepherd.cli.main.console", Console(width=200)):
        yield


def _invoke(workspace, *args):
    return CliRunner().invoke(cli, ["--workspace", str(workspace), *args])


class TestPolicies:
    def test_lists_policies_with_markers(self, workspace):
        result = _invoke(workspace, "policies")

        assert result.exit_code == 0
        assert "Policies (default: default)" in result.output
        assert "plan → implement → test" in result.output
        assert "review* → merge!" in result.output

    def test_missing_policies_file(self, tmp_path):
        result = _invoke(tmp_path, "policies")

        assert result.exit_code == 1
        assert "Error:" in result.output


class TestValidate:
    def test_valid_configuration(self, workspace):
        result = _invoke(workspace, "validate")

        assert result.exit_code == 0, result.output
        assert "Policies: 4 loaded" in result.output
        assert "Agents: 4 loaded" in result.output
        assert "Configuration is valid" in result.output

    def test_missing_capabilities_reported(self, workspace):
        (workspace / "config" / "agents.yaml").write_text(
            "agents:\n  - id: planner\n    name: Planner\n    capabilities: [planning]\n"
        )

        result = _invoke(workspace, "validate")

        assert result.exit_code == 1
        assert "feature/implement: no active agent has capabilities ['coding']" in result.output
        assert "reviewed/review: no active agent for decision capability 'decision-review'" in result.output
        assert "worker assistant will always fall back to block" in result.output
        assert "Validation failed with" in result.output

    def test_undefined_decision_template_warns(self, workspace):
        policies = copy.deepcopy(POLICIES_DATA)
        policies["policies"]["reviewed"]["phases"][2]["decision"]["prompt"] = "review-routing"
        (workspace / "config" / "policies.yaml").write_text(yaml.safe_dump(policies, sort_keys=False))
        (workspace / "config" / "decision-prompts.yaml").write_text(
            "templates:\n  fallback-template:\n    prompt_template: Route {{issue.id}}\n"
        )

        result = _invoke(workspace, "validate")

        assert result.exit_code == 0, result.output
        assert "reviewed/review: decision template 'review-routing' is not defined" in result.output


class TestRunHistory:
    def _seed(self, workspace):
        run_log = RunLog(workspace / ".shepherd")
        run = run_log.create_run(RunRecord(
            issue_id="bd-1", agent_id="builder", policy_name="feature", phase="implement",
        ))
        run_log.log_decision(run.id, DecisionType.AGENT_SELECTION, "builder", "highest priority")
        run_log.update_run(run.id, status="completed", outcome=make_outcome())
        return run

    def test_runs_empty(self, workspace):
        result = _invoke(workspace, "runs")
        assert "No runs recorded" in result.output

    def test_runs_table(self, workspace):
        run = self._seed(workspace)

        result = _invoke(workspace, "runs", "--issue", "bd-1")

        assert result.exit_code == 0
        assert run.id in result.output
        assert "completed" in result.output
        assert "1.0s" in result.output

    def test_decisions(self, workspace):
        run = self._seed(workspace)

        result = _invoke(workspace, "decisions", run.id)

        assert result.exit_code == 0
        assert "agent_selection" in result.output
        assert "highest priority" in result.output

    def test_decisions_unknown_run(self, workspace):
        result = _invoke(workspace, "decisions", "run-missing")

        assert result.exit_code == 1
        assert "run run-missing not found" in result.output


class TestMessages:
    def test_json_output(self, workspace):
        messenger = PhaseMessenger(workspace / ".shepherd")
        messenger.send("bd-1", "plan", "implement", "result", "Plan: add exporter")

        result = _invoke(workspace, "messages", "bd-1", "--json")

        data = json.loads(result.output)
        assert [m["content"] for m in data] == ["Plan: add exporter"]
        assert data[0]["read"] is False

    def test_no_messages(self, workspace):
        result = _invoke(workspace, "messages", "bd-1")
        assert "No messages" in result.output


class TestProcess:
    def _worker(self, result):
        worker = MagicMock()
        worker.beads.get_issue = AsyncMock(return_value=make_issue())
        worker.process_issue = AsyncMock(return_value=result)
        return worker

    def test_reports_transition(self, workspace):
        result = ProcessResult(
            issue_id="bd-1", policy_name="feature", phase="plan",
            transition=Transition(type=TransitionType.ADVANCE, next_phase="implement", reason="Phase completed successfully"),
        )
        with patch("phase_shepherd.cli.main.build_worker", return_value=self._worker(result)):
            outcome = _invoke(workspace, "process", "bd-1")

        assert outcome.exit_code == 0
        assert "bd-1 [plan] advance → implement: Phase completed successfully" in outcome.output

    def test_reports_failure(self, workspace):
        result = ProcessResult(issue_id="bd-1", phase="plan", error="No suitable agent available for phase 'plan'")
        with patch("phase_shepherd.cli.main.build_worker", return_value=self._worker(result)):
            outcome = _invoke(workspace, "process", "bd-1")

        assert outcome.exit_code == 1
        assert "No suitable agent available" in outcome.output


def test_match_shows_policy_and_phase(workspace):
    beads = MagicMock()
    beads.get_issue = AsyncMock(return_value=make_issue(labels=["ashep-phase:implement"]))

    with patch("phase_shepherd.cli.main.BeadsClient", return_value=beads):
        result = _invoke(workspace, "match", "bd-1")

    assert result.exit_code == 0
    assert "Policy: feature" in result.output
    assert "Phases: plan → implement → test" in result.output
    assert "Current phase: implement" in result.output
