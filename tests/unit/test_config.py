"""Tests for configuration loading, env expansion and caching."""

import pytest
from pydantic import ValidationError

from phase_shepherd.core.config import (
    ShepherdConfig,
    WorkerAssistantSettings,
    _expand_env_vars,
    load_config,
    load_yaml_file,
)


def _write_config(tmp_path, body: str):
    path = tmp_path / "shepherd.yaml"
    path.write_text(body)
    return path


class TestDefaults:
    def test_defaults_when_file_missing(self, tmp_path, caplog):
        with caplog.at_level("WARNING"):
            config = load_config(tmp_path / "missing.yaml")

        assert isinstance(config, ShepherdConfig)
        assert config.worker.poll_interval_ms == 30000
        assert config.workflow.invalid_label_strategy == "error"
        assert config.worker_assistant.fallback_action == "block"
        assert config.session.max_context_tokens == 130000
        assert config.session.context_window_threshold == 0.8
        assert config.labels.prefix == "ashep"
        assert config.loop_prevention.max_visits_default == 10
        assert "Config file not found" in caplog.text

    def test_default_hitl_reasons(self):
        reasons = ShepherdConfig().hitl.allowed_reasons
        assert reasons.predefined == ["approval", "manual-intervention", "timeout", "error", "review-request"]
        assert reasons.custom_validation == "alphanumeric-dash-underscore"


class TestLoadConfig:
    def test_reads_sections(self, tmp_path):
        path = _write_config(tmp_path, (
            "worker:\n"
            "  poll_interval_ms: 5000\n"
            "workflow:\n"
            "  invalid_label_strategy: warning\n"
            "labels:\n"
            "  prefix: team\n"
            "fallback:\n"
            "  enabled: true\n"
            "  default_agent: general\n"
        ))

        config = load_config(path)

        assert config.worker.poll_interval_ms == 5000
        assert config.workflow.invalid_label_strategy == "warning"
        assert config.labels.prefix == "team"
        assert config.fallback.enabled is True
        assert config.fallback.default_agent == "general"

    def test_invalid_strategy_rejected(self, tmp_path):
        path = _write_config(tmp_path, "workflow:\n  invalid_label_strategy: explode\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_nonpositive_poll_interval_rejected(self, tmp_path):
        path = _write_config(tmp_path, "worker:\n  poll_interval_ms: 0\n")
        with pytest.raises(ValidationError, match="poll_interval_ms must be positive"):
            load_config(path)

    def test_threshold_must_be_fraction(self, tmp_path):
        path = _write_config(tmp_path, "session:\n  context_window_threshold: 1.5\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_cached_until_file_changes(self, tmp_path):
        import os

        path = _write_config(tmp_path, "worker:\n  poll_interval_ms: 5000\n")
        first = load_config(path)
        assert load_config(path) is first

        path.write_text("worker:\n  poll_interval_ms: 7000\n")
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

        second = load_config(path)
        assert second is not first
        assert second.worker.poll_interval_ms == 7000

    def test_resolve_path_relative_to_workspace(self, tmp_path):
        config = ShepherdConfig(workspace=tmp_path)
        assert config.resolve_path(config.data_dir) == tmp_path / ".shepherd"
        assert config.resolve_path(tmp_path / "abs") == tmp_path / "abs"


class TestEnvExpansion:
    def test_expands_set_variables(self, monkeypatch):
        monkeypatch.setenv("SHEPHERD_TEST_MODEL", "anthropic/claude")
        data = {"opencode": {"default_model": "${SHEPHERD_TEST_MODEL}"}, "list": ["${SHEPHERD_TEST_MODEL}"]}

        expanded = _expand_env_vars(data)

        assert expanded["opencode"]["default_model"] == "anthropic/claude"
        assert expanded["list"] == ["anthropic/claude"]

    def test_unset_variable_left_literal_with_warning(self, monkeypatch, caplog):
        monkeypatch.delenv("SHEPHERD_UNSET_VAR", raising=False)

        with caplog.at_level("WARNING"):
            value = _expand_env_vars({"a": {"b": "${SHEPHERD_UNSET_VAR}"}})

        assert value == {"a": {"b": "${SHEPHERD_UNSET_VAR}"}}
        assert "a.b" in caplog.text

    def test_load_yaml_file_requires_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="Expected a mapping"):
            load_yaml_file(path)

    def test_load_yaml_file_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml_file(tmp_path / "nope.yaml")


def test_fallback_action_is_case_insensitive():
    assert WorkerAssistantSettings(fallback_action="RETRY").fallback_action == "retry"
