"""Tests for HITL reason validation."""

import pytest

from phase_shepherd.core.config import AllowedReasonsConfig
from phase_shepherd.core.hitl import validate_hitl_reason


@pytest.mark.parametrize("reason", ["approval", "manual-intervention", "timeout", "error", "review-request"])
def test_predefined_reasons_pass(reason):
    assert validate_hitl_reason(reason, AllowedReasonsConfig()) is True


def test_no_config_accepts_anything():
    assert validate_hitl_reason("whatever you like") is True


class TestCustomReasons:
    def test_rejected_when_custom_disallowed(self):
        config = AllowedReasonsConfig(allow_custom=False)
        assert validate_hitl_reason("security_review", config) is False

    @pytest.mark.parametrize("reason,expected", [
        ("security_review", True),
        ("Security-Review", True),
        ("needs-legal", True),
        ("1st-review", False),
        ("has space", False),
        ("", False),
    ])
    def test_dash_underscore_pattern(self, reason, expected):
        assert validate_hitl_reason(reason, AllowedReasonsConfig()) is expected

    @pytest.mark.parametrize("reason,expected", [
        ("legal2", True),
        ("needs-legal", False),
        ("security_review", False),
    ])
    def test_alphanumeric_pattern(self, reason, expected):
        config = AllowedReasonsConfig(custom_validation="alphanumeric")
        assert validate_hitl_reason(reason, config) is expected

    def test_none_accepts_any_non_empty(self):
        config = AllowedReasonsConfig(custom_validation="none")
        assert validate_hitl_reason("anything goes!", config) is True
        assert validate_hitl_reason("  ", config) is False
