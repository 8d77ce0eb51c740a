"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_HITL_REASONS = [
    "approval",
    "manual-intervention",
    "timeout",
    "error",
    "review-request",
]


class WorkerSettings(BaseModel):
    """Worker loop configuration."""
    poll_interval_ms: int = 30000
    # Advisory only: the loop dispatches one execution at a time
    max_concurrent_runs: int = 3

    @field_validator('poll_interval_ms')
    @classmethod
    def validate_poll_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"poll_interval_ms must be positive, got {v}")
        return v


class WorkflowSettings(BaseModel):
    """How explicit workflow labels are handled."""
    invalid_label_strategy: Literal["error", "warning", "ignore"] = "error"


class AllowedReasonsConfig(BaseModel):
    """Allow-list for HITL label reasons."""
    predefined: List[str] = Field(default_factory=lambda: list(DEFAULT_HITL_REASONS))
    allow_custom: bool = True
    custom_validation: Literal[
        "none", "alphanumeric", "alphanumeric-dash-underscore"
    ] = "alphanumeric-dash-underscore"


class HITLSettings(BaseModel):
    """Human-in-the-loop configuration."""
    allowed_reasons: AllowedReasonsConfig = Field(default_factory=AllowedReasonsConfig)


class LoopPreventionSettings(BaseModel):
    """Caps on how often one issue may revisit the same phase."""
    enabled: bool = True
    max_visits_default: int = 10
    trigger_hitl: bool = True


class FallbackSettings(BaseModel):
    """Agents used when no registered agent satisfies a phase."""
    enabled: bool = False
    default_agent: Optional[str] = None
    mappings: Dict[str, str] = Field(default_factory=dict)


class WorkerAssistantSettings(BaseModel):
    """Worker Assistant escalation defaults."""
    enabled: bool = True
    agent_capability: str = "worker-assistant"
    timeout_ms: int = 10000
    fallback_action: Literal["advance", "retry", "block"] = "block"

    @field_validator('fallback_action', mode='before')
    @classmethod
    def normalize_fallback_action(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class SessionSettings(BaseModel):
    """Session continuation budget."""
    max_context_tokens: int = 130000
    context_window_threshold: float = 0.8

    @field_validator('context_window_threshold')
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError(f"context_window_threshold must be in (0, 1], got {v}")
        return v


class LabelSettings(BaseModel):
    """Issue label conventions."""
    prefix: str = "ashep"


class OpenCodeSettings(BaseModel):
    """Agent execution platform settings."""
    executable: str = "opencode"
    default_model: Optional[str] = None
    working_dir: Optional[str] = None


class MessengerSettings(BaseModel):
    """Inter-phase message size limits."""
    max_content_length: int = 10000
    max_metadata_length: int = 5000
    max_messages_per_issue_phase: int = 100
    max_messages_per_issue: int = 500


class ShepherdConfig(BaseSettings):
    """Main orchestrator configuration."""
    workspace: Path = Field(default=Path("."))
    data_dir: Path = Field(default=Path(".shepherd"))
    policies_path: Path = Field(default=Path("config/policies.yaml"))
    agents_path: Path = Field(default=Path("config/agents.yaml"))
    decision_prompts_path: Path = Field(default=Path("config/decision-prompts.yaml"))

    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)
    hitl: HITLSettings = Field(default_factory=HITLSettings)
    loop_prevention: LoopPreventionSettings = Field(default_factory=LoopPreventionSettings)
    fallback: FallbackSettings = Field(default_factory=FallbackSettings)
    worker_assistant: WorkerAssistantSettings = Field(default_factory=WorkerAssistantSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    labels: LabelSettings = Field(default_factory=LabelSettings)
    opencode: OpenCodeSettings = Field(default_factory=OpenCodeSettings)
    messenger: MessengerSettings = Field(default_factory=MessengerSettings)

    class Config:
        env_prefix = "SHEPHERD_"
        env_file = ".env"
        extra = "allow"

    def resolve_path(self, path: Path) -> Path:
        """Resolve a configured path relative to the workspace."""
        return path if path.is_absolute() else self.workspace / path


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload.

    Works for any config loader that takes a Path and returns a parsed object.
    """
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> ShepherdConfig:
    """Internal loader for orchestrator config (no caching)."""
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    data = _expand_env_vars(data)
    return ShepherdConfig(**data)


def load_config(config_path: Path = Path("config/shepherd.yaml")) -> ShepherdConfig:
    """Load orchestrator configuration from YAML file.

    Uses mtime-based caching, so an unchanged file returns the cached config.
    """
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration. "
            "To customize settings, create a config file at this path."
        )
        return ShepherdConfig()

    resolved = config_path.resolve()
    result = _get_cached_or_load(resolved, _load_config_from_file)
    return result if result is not None else ShepherdConfig()


def load_yaml_file(path: Path) -> Dict[str, Any]:
    """Read a YAML mapping with env var expansion, cached by mtime."""
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    def _loader(resolved: Path) -> Dict[str, Any]:
        with open(resolved) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Expected a mapping at the top of {resolved}")
        return _expand_env_vars(data)

    result = _get_cached_or_load(path.resolve(), _loader)
    if result is None:
        raise FileNotFoundError(f"Config not found: {path}")
    return result


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand environment variables in config data.

    Args:
        data: Config data to process
        _path: Internal tracking for error messages (e.g., "opencode.executable")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used, which may cause errors."
            )
            return data
        return value
    return data
