"""Tests for AgentRegistry selection."""

import pytest
from pydantic import ValidationError

from phase_shepherd.core.agent_registry import (
    AgentConstraints,
    AgentDefinition,
    AgentRegistry,
    SelectionCriteria,
)


def _make_agent(**overrides):
    defaults = dict(id="builder", name="Builder", capabilities=["coding"], priority=10)
    defaults.update(overrides)
    return AgentDefinition(**defaults)


class TestAgentDefinition:
    def test_requires_capabilities(self):
        with pytest.raises(ValidationError, match="at least one capability"):
            _make_agent(capabilities=[])

    def test_model_combines_provider_and_model(self):
        assert _make_agent(provider_id="anthropic", model_id="claude").model == "anthropic/claude"
        assert _make_agent(model_id="claude").model == "claude"
        assert _make_agent().model is None


class TestSelectAgent:
    def test_highest_priority_wins(self):
        registry = AgentRegistry([
            _make_agent(id="slow", priority=1),
            _make_agent(id="fast", priority=20),
        ])

        agent = registry.select_agent(SelectionCriteria(required_capabilities=["coding"]))

        assert agent.id == "fast"

    def test_ties_keep_declaration_order(self):
        registry = AgentRegistry([_make_agent(id="a"), _make_agent(id="b")])
        assert registry.select_agent(SelectionCriteria(required_capabilities=["coding"])).id == "a"

    def test_all_capabilities_required(self):
        registry = AgentRegistry([
            _make_agent(id="coder", capabilities=["coding"]),
            _make_agent(id="both", capabilities=["coding", "testing"], priority=0),
        ])

        agent = registry.select_agent(SelectionCriteria(required_capabilities=["coding", "testing"]))

        assert agent.id == "both"

    def test_inactive_agents_skipped(self):
        registry = AgentRegistry([_make_agent(active=False)])
        assert registry.select_agent(SelectionCriteria(required_capabilities=["coding"])) is None
        assert registry.find_by_capabilities(["coding"], active_only=False)[0].id == "builder"

    def test_pinned_agent(self):
        registry = AgentRegistry([_make_agent(id="a", priority=50), _make_agent(id="b")])
        criteria = SelectionCriteria(required_capabilities=["coding"], agent_id="b")
        assert registry.select_agent(criteria).id == "b"

    def test_tag_constraints(self):
        registry = AgentRegistry([
            _make_agent(id="docs-only", priority=50, constraints=AgentConstraints(allowed_tags=["docs"])),
            _make_agent(id="anything"),
        ])

        assert registry.select_agent(SelectionCriteria(required_capabilities=["coding"], tags=["bug"])).id == "anything"
        assert registry.select_agent(SelectionCriteria(required_capabilities=["coding"], tags=["docs"])).id == "docs-only"

    def test_read_only_and_performance(self):
        registry = AgentRegistry([
            _make_agent(id="writer", priority=50),
            _make_agent(id="reader", constraints=AgentConstraints(read_only=True, performance_tier="slow")),
            _make_agent(id="quick-reader", constraints=AgentConstraints(read_only=True, performance_tier="fast")),
        ])

        assert registry.select_agent(SelectionCriteria(required_capabilities=["coding"], read_only=True)).id == "reader"
        criteria = SelectionCriteria(required_capabilities=["coding"], read_only=True, performance_preference="fast")
        assert registry.select_agent(criteria).id == "quick-reader"

    def test_no_match_returns_none(self):
        registry = AgentRegistry([_make_agent()])
        assert registry.select_agent(SelectionCriteria(required_capabilities=["review"])) is None


class TestRegistryFile:
    def test_load_agents(self, tmp_path):
        path = tmp_path / "agents.yaml"
        path.write_text(
            "agents:\n"
            "  - id: planner\n"
            "    name: Planner\n"
            "    capabilities: [planning]\n"
            "  - id: builder\n"
            "    name: Builder\n"
            "    capabilities: [coding]\n"
            "    constraints:\n"
            "      read_only: true\n"
        )

        registry = AgentRegistry.from_file(path)

        assert [a.id for a in registry.all_agents()] == ["planner", "builder"]
        assert registry.get_agent("builder").constraints.read_only is True

    def test_agent_without_capabilities_rejected(self, tmp_path):
        path = tmp_path / "agents.yaml"
        path.write_text("agents:\n  - id: empty\n    name: Empty\n    capabilities: []\n")

        with pytest.raises(ValueError, match="Failed to load agents"):
            AgentRegistry.from_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError, match="Failed to load agents"):
            AgentRegistry.from_file(tmp_path / "agents.yaml")

    def test_register_and_unregister(self):
        registry = AgentRegistry()
        registry.register(_make_agent())
        assert registry.unregister("builder") is True
        assert registry.unregister("builder") is False
