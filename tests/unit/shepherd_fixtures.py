"""Policy, agent and issue builders shared across unit tests."""

from phase_shepherd.core.agent_registry import AgentDefinition
from phase_shepherd.core.issue import Issue
from phase_shepherd.core.policy import PolicyStore
from phase_shepherd.core.run import Outcome, RunMetrics

# Mirrors the shape of config/policies.yaml, trimmed to what tests need.
POLICIES_DATA = {
    "default_policy": "default",
    "policies": {
        "hotfix": {
            "issue_types": ["bug"],
            "priority": 50,
            "phases": [
                {"name": "implement", "capabilities": ["coding"]},
                {"name": "test", "capabilities": ["testing"]},
            ],
        },
        "default": {
            "issue_types": ["bug", "task"],
            "priority": 50,
            "phases": [
                {"name": "plan", "capabilities": ["planning"]},
                {"name": "implement", "capabilities": ["coding"]},
            ],
        },
        "feature": {
            "issue_types": ["feature"],
            "priority": 60,
            "timeout_base_ms": 600000,
            "retry": {
                "max_attempts": 3,
                "backoff_strategy": "exponential",
                "initial_delay_ms": 5000,
                "max_delay_ms": 300000,
            },
            "phases": [
                {"name": "plan", "capabilities": ["planning"]},
                {"name": "implement", "capabilities": ["coding"], "timeout_multiplier": 2.0},
                {"name": "test", "capabilities": ["testing"]},
            ],
        },
        "reviewed": {
            "issue_types": ["epic"],
            "phases": [
                {"name": "implement", "capabilities": ["coding"]},
                {"name": "test", "capabilities": ["testing"]},
                {
                    "name": "review",
                    "capabilities": ["review"],
                    "decision": {
                        "capability": "decision-review",
                        "allowed_destinations": ["implement", "test", "merge"],
                        "confidence_thresholds": {"auto_advance": 0.8, "require_approval": 0.6},
                    },
                },
                {"name": "merge", "capabilities": ["coding"], "require_approval": True},
            ],
        },
    },
}

AGENTS = [
    AgentDefinition(id="planner", name="Planner", capabilities=["planning"], priority=10),
    AgentDefinition(
        id="builder", name="Builder", capabilities=["coding", "testing"],
        provider_id="anthropic", model_id="claude-sonnet-4", priority=10,
    ),
    AgentDefinition(id="reviewer", name="Reviewer", capabilities=["review", "decision-review"], priority=10),
    AgentDefinition(id="assistant", name="Assistant", capabilities=["worker-assistant"]),
]


def make_store() -> PolicyStore:
    store = PolicyStore()
    store.load_from_dict(POLICIES_DATA)
    return store


def make_issue(**overrides) -> Issue:
    defaults = dict(
        id="bd-1",
        title="Add CSV export",
        description="Users want to export reports as CSV",
        issue_type="feature",
        priority=1,
        status="open",
        labels=[],
    )
    defaults.update(overrides)
    return Issue(**defaults)


def make_outcome(success: bool = True, **overrides) -> Outcome:
    defaults = dict(
        success=success,
        message="Done" if success else "Tests failed",
        error=None if success else "Tests failed",
        metrics=RunMetrics(duration_ms=1000, tokens_used=500),
    )
    defaults.update(overrides)
    return Outcome(**defaults)
