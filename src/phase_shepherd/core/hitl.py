"""Validation for human-in-the-loop label reasons."""

import re
from typing import Optional

from .config import AllowedReasonsConfig

_CUSTOM_PATTERNS = {
    "alphanumeric": re.compile(r"^[a-z0-9]+$", re.IGNORECASE),
    "alphanumeric-dash-underscore": re.compile(r"^[a-z][a-z0-9_-]*$", re.IGNORECASE),
}


def validate_hitl_reason(reason: str, allowed: Optional[AllowedReasonsConfig] = None) -> bool:
    """Return True if ``reason`` may be written as a ``<prefix>-hitl:<reason>`` label.

    Predefined reasons always pass. Custom reasons pass only when custom
    reasons are allowed and the configured pattern matches.
    """
    if allowed is None:
        return True
    if reason in allowed.predefined:
        return True
    if not allowed.allow_custom:
        return False
    if allowed.custom_validation == "none":
        return bool(reason.strip())
    pattern = _CUSTOM_PATTERNS[allowed.custom_validation]
    return bool(pattern.match(reason))
