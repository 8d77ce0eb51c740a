"""Tests for policy loading, phase sequencing and policy matching."""

import pytest

from phase_shepherd.core.policy import (
    InvalidWorkflowLabelError,
    PolicyLoadError,
    PolicyResolver,
    PolicyStore,
)
from tests.unit.shepherd_fixtures import POLICIES_DATA, make_issue, make_store


def _policies(**policies):
    return {"policies": policies}


class TestPolicyStoreLoading:
    def test_loads_policies_in_declaration_order(self, store):
        assert store.policy_names() == ["hotfix", "default", "feature", "reviewed"]
        assert store.default_policy == "default"

    def test_missing_policies_key_fails(self):
        with pytest.raises(PolicyLoadError, match="missing 'policies' key"):
            PolicyStore().load_from_dict({"default_policy": "default"})

    def test_policy_without_phases_fails(self):
        with pytest.raises(PolicyLoadError, match="at least one phase"):
            PolicyStore().load_from_dict(_policies(empty={"phases": []}))

    def test_duplicate_phase_names_fail(self):
        data = _policies(dup={"phases": [{"name": "plan"}, {"name": "plan"}]})
        with pytest.raises(PolicyLoadError, match="duplicate phase name 'plan'"):
            PolicyStore().load_from_dict(data)

    def test_phase_without_name_fails(self):
        with pytest.raises(PolicyLoadError):
            PolicyStore().load_from_dict(_policies(bad={"phases": [{"capabilities": ["coding"]}]}))

    def test_unknown_default_policy_fails(self):
        data = {"default_policy": "missing", **_policies(only={"phases": [{"name": "plan"}]})}
        with pytest.raises(PolicyLoadError, match="Default policy 'missing' not found"):
            PolicyStore().load_from_dict(data)

    def test_decision_destination_must_be_a_phase(self):
        data = _policies(routed={"phases": [
            {"name": "review", "decision": {"capability": "d", "allowed_destinations": ["ship"]}},
        ]})
        with pytest.raises(PolicyLoadError, match="unknown destination 'ship'"):
            PolicyStore().load_from_dict(data)

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(
            "policies:\n"
            "  default:\n"
            "    phases:\n"
            "      - name: plan\n"
            "      - name: build\n"
        )

        store = PolicyStore.from_file(path)

        assert store.phase_sequence("default") == ["plan", "build"]

    def test_missing_file_raises_policy_load_error(self, tmp_path):
        with pytest.raises(PolicyLoadError, match="Failed to load policies"):
            PolicyStore.from_file(tmp_path / "nope.yaml")

    def test_malformed_yaml_raises_policy_load_error(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text("policies: [unclosed\n")

        with pytest.raises(PolicyLoadError):
            PolicyStore.from_file(path)


class TestPhaseSequence:
    def test_next_phase_walks_sequence(self, store):
        assert store.first_phase("feature") == "plan"
        assert store.next_phase("feature", "plan") == "implement"
        assert store.next_phase("feature", "implement") == "test"

    def test_last_phase_has_no_next(self, store):
        for policy in store.policies():
            last = policy.phases[-1].name
            assert store.next_phase(policy.name, last) is None

    def test_unknown_phase_or_policy(self, store):
        assert store.next_phase("feature", "deploy") is None
        assert store.phase_sequence("nope") == []
        assert store.get_phase("nope", "plan") is None

    def test_previous_phase(self, store):
        assert store.previous_phase("feature", "test") == "implement"
        assert store.previous_phase("feature", "plan") is None


class TestPolicyResolver:
    def _resolver(self, store, strategy="error"):
        return PolicyResolver(store, label_prefix="ashep", invalid_label_strategy=strategy)

    def test_matches_by_issue_type(self, store):
        resolver = self._resolver(store)
        assert resolver.match_policy(make_issue(issue_type="feature")) == "feature"

    def test_equal_priority_tie_goes_to_first_declared(self, store):
        """hotfix and default both match bug at priority 50; hotfix is declared first."""
        resolver = self._resolver(store)
        assert resolver.match_policy(make_issue(issue_type="bug")) == "hotfix"

    def test_higher_priority_wins_over_declaration_order(self):
        data = {
            "policies": {
                "low": {"issue_types": ["bug"], "priority": 10, "phases": [{"name": "a"}]},
                "high": {"issue_types": ["bug"], "priority": 90, "phases": [{"name": "b"}]},
            }
        }
        store = PolicyStore()
        store.load_from_dict(data)

        assert self._resolver(store).match_policy(make_issue(issue_type="bug")) == "high"

    def test_falls_back_to_default_policy(self, store):
        resolver = self._resolver(store)
        assert resolver.match_policy(make_issue(issue_type="chore")) == "default"

    def test_workflow_label_overrides_type(self, store):
        issue = make_issue(issue_type="bug", labels=["ashep-workflow:feature"])
        assert self._resolver(store).match_policy(issue) == "feature"

    def test_invalid_workflow_label_raises_under_error_strategy(self, store):
        issue = make_issue(labels=["ashep-workflow:nope"])
        with pytest.raises(InvalidWorkflowLabelError, match="Policy 'nope' does not exist"):
            self._resolver(store).match_policy(issue)

    def test_invalid_workflow_label_warns_and_falls_through(self, store, caplog):
        issue = make_issue(issue_type="bug", labels=["ashep-workflow:nope"])

        with caplog.at_level("WARNING"):
            policy = self._resolver(store, "warning").match_policy(issue)

        assert policy == "hotfix"
        assert "Invalid workflow label" in caplog.text

    def test_invalid_workflow_label_ignored_silently(self, store, caplog):
        issue = make_issue(issue_type="bug", labels=["ashep-workflow:nope"])

        with caplog.at_level("WARNING"):
            policy = self._resolver(store, "ignore").match_policy(issue)

        assert policy == "hotfix"
        assert "Invalid workflow label" not in caplog.text

    def test_resolver_is_prefix_aware(self):
        store = make_store()
        resolver = PolicyResolver(store, label_prefix="team")
        issue = make_issue(issue_type="task", labels=["ashep-workflow:feature", "team-workflow:hotfix"])

        assert resolver.match_policy(issue) == "hotfix"

    def test_fixture_data_is_not_mutated(self, store):
        assert "name" not in POLICIES_DATA["policies"]["feature"]
