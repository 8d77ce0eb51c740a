"""Decision prompt templates, response validation and decision analytics."""

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..core.config import load_yaml_file
from ..core.issue import Issue
from ..core.policy import ConfidenceThresholds
from ..core.run import Outcome

logger = logging.getLogger(__name__)

FALLBACK_TEMPLATE_NAME = "fallback-template"
REQUIRE_APPROVAL = "require_approval"
DECISION_PREFIXES = ("jump_to_", "advance_to_")


class DecisionTemplate(BaseModel):
    name: str = ""
    description: str = ""
    system_prompt: str = ""
    prompt_template: str


class DecisionPromptsFile(BaseModel):
    version: str = "1.0"
    templates: Dict[str, DecisionTemplate] = Field(default_factory=dict)
    default_template: Optional[str] = None


BUILTIN_FALLBACK = DecisionTemplate(
    name="Fallback decision",
    description="Used when no configured template matches",
    system_prompt=(
        "You are a workflow routing agent. You decide which phase an issue "
        "should move to next. Respond with a single JSON object only."
    ),
    prompt_template="""# Routing decision for {{issue.id}}: {{issue.title}}

Type: {{issue.issue_type}} | Priority: P{{issue.priority}} | Status: {{issue.status}}
Current phase: {{current_phase}}

## Description
{{issue.description}}

## Labels
{{#each issue.labels}}{{/each}}

## Last outcome
- Success: {{outcome.success}}
- Message: {{outcome.message}}
- Error: {{outcome.error}}
- Duration: {{outcome.metrics.duration_ms}}ms
{{#each outcome.warnings}}{{/each}}

## Phase history
{{#each phase_history}}{{/each}}

## Recent decisions
{{#each recent_decisions}}{{/each}}

{{#performance_context}}{{/performance_context}}

## Instructions
{{custom_instructions}}

## Allowed destinations
{{#each allowed_destinations}}{{/each}}

Respond with JSON:
{"decision": "advance_to_<phase>" | "jump_to_<phase>" | "require_approval",
 "reasoning": "...", "confidence": 0.0-1.0, "recommendations": ["..."]}
""",
)


@dataclass
class TemplateContext:
    issue: Issue
    outcome: Outcome
    current_phase: str
    custom_instructions: str = ""
    allowed_destinations: List[str] = field(default_factory=list)
    recent_decisions: List[Dict[str, Any]] = field(default_factory=list)
    phase_history: List[Dict[str, Any]] = field(default_factory=list)
    performance_context: Optional[Dict[str, Any]] = None


class DecisionResponse(BaseModel):
    decision: str
    reasoning: str
    confidence: float
    recommendations: Optional[List[str]] = None
    requires_approval: bool = False

    @property
    def target_phase(self) -> Optional[str]:
        for prefix in DECISION_PREFIXES:
            if self.decision.startswith(prefix):
                return self.decision[len(prefix):]
        return None


@dataclass
class DecisionValidation:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    response: Optional[DecisionResponse] = None


@dataclass
class DecisionAnalytics:
    total_decisions: int = 0
    decisions_by_type: Dict[str, int] = field(default_factory=dict)
    confidence_distribution: Dict[str, int] = field(
        default_factory=lambda: {"high": 0, "medium": 0, "low": 0}
    )
    # bucket -> [approved, total]; "approved" means routed without asking a human
    approval_rate_by_confidence: Dict[str, List[int]] = field(
        default_factory=lambda: {"high": [0, 0], "medium": [0, 0], "low": [0, 0]}
    )
    target_counts: Counter = field(default_factory=Counter)

    @property
    def most_common_targets(self) -> List[Dict[str, Any]]:
        return [{"target": t, "count": c} for t, c in self.target_counts.most_common()]


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _each_block(name: str) -> re.Pattern:
    return re.compile(r"\{\{#each " + re.escape(name) + r"\}\}.*?\{\{/each\}\}", re.DOTALL)


_PERFORMANCE_BLOCK = re.compile(r"\{\{#performance_context\}\}.*?\{\{/performance_context\}\}", re.DOTALL)


class DecisionPromptBuilder:
    """Builds decision-agent prompts from YAML templates and validates replies."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path
        self.config: Optional[DecisionPromptsFile] = None
        self.analytics = DecisionAnalytics()
        self.reload_config()

    def reload_config(self) -> None:
        if self.config_path is None:
            self.config = None
            return
        try:
            self.config = DecisionPromptsFile(**load_yaml_file(self.config_path))
        except (FileNotFoundError, ValueError, ValidationError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load decision prompts config: {e}")
            self.config = None

    def available_templates(self) -> List[str]:
        return list(self.config.templates.keys()) if self.config else []

    def get_template(self, name: Optional[str] = None) -> Optional[DecisionTemplate]:
        if self.config is None:
            return None
        if name and name in self.config.templates:
            return self.config.templates[name]
        default_name = self.config.default_template or FALLBACK_TEMPLATE_NAME
        return self.config.templates.get(default_name)

    def substitute(self, template: str, context: TemplateContext) -> str:
        """Fill ``{{path}}`` placeholders and ``{{#each}}`` blocks from ``context``.

        Placeholders whose value is missing are left untouched.
        """
        issue, outcome = context.issue, context.outcome
        values = {
            "issue.id": issue.id,
            "issue.title": issue.title,
            "issue.description": issue.description,
            "issue.issue_type": issue.issue_type,
            "issue.priority": issue.priority,
            "issue.status": issue.status,
            "current_phase": context.current_phase,
            "custom_instructions": context.custom_instructions,
            "outcome.success": outcome.success,
            "outcome.message": outcome.message,
            "outcome.error": outcome.error,
            "outcome.metrics.duration_ms": outcome.metrics.duration_ms,
        }
        result = template
        for key, value in values.items():
            if value is None:
                continue
            result = result.replace("{{" + key + "}}", _format_value(value))

        sections = {
            "issue.labels": "\n".join(f"- {label}" for label in issue.labels),
            "recent_decisions": "\n".join(
                f"- {d.get('timestamp', '')}: {d.get('decision', '')} ({d.get('reasoning', '')})"
                for d in context.recent_decisions
            ),
            "phase_history": "\n".join(self._history_line(h) for h in context.phase_history),
            "outcome.warnings": "\n".join(f"  - {w}" for w in outcome.warnings),
            "allowed_destinations": "\n".join(
                f"- **{d}**" for d in context.allowed_destinations
            ),
        }
        for name, section in sections.items():
            result = _each_block(name).sub(lambda _m, s=section: s, result)

        perf = context.performance_context
        perf_section = ""
        if perf:
            perf_section = (
                f"- Average phase duration: {perf.get('average_duration_ms', 0)}ms\n"
                f"- Total time spent: {perf.get('total_duration_ms', 0)}ms\n"
                f"- Visits to current phase: {perf.get('phase_visit_count', 0)}"
            )
        return _PERFORMANCE_BLOCK.sub(lambda _m: perf_section, result)

    @staticmethod
    def _history_line(entry: Dict[str, Any]) -> str:
        line = (
            f"- {entry.get('phase')} (Attempt {entry.get('attempt_number')}): "
            f"{entry.get('status')} ({entry.get('duration_ms', 0)}ms)"
        )
        if entry.get("error"):
            line += f"\n    Error: {entry['error']}"
        return line

    def build_prompt(self, template_name: Optional[str], context: TemplateContext) -> Dict[str, str]:
        """Return ``system_prompt`` and ``user_prompt`` for the named template.

        Unknown names fall back to the configured default template, then to
        the built-in fallback.
        """
        template = self.get_template(template_name)
        if template is None:
            if template_name:
                logger.debug(f"Decision template '{template_name}' not found, using built-in fallback")
            template = BUILTIN_FALLBACK
        return {
            "system_prompt": template.system_prompt,
            "user_prompt": self.substitute(template.prompt_template, context),
        }

    @staticmethod
    def sanitize_response(response: str) -> str:
        sanitized = response.strip()
        sanitized = re.sub(r"^```json\s*", "", sanitized)
        sanitized = re.sub(r"^```\s*", "", sanitized)
        sanitized = re.sub(r"\s*```$", "", sanitized)
        sanitized = sanitized.replace('\\"', '"').replace("\\'", "'")
        sanitized = "".join(ch for ch in sanitized if ord(ch) >= 32 and ord(ch) != 127)
        return sanitized.strip()

    @staticmethod
    def _strip_fences(response: str) -> str:
        stripped = response.strip()
        stripped = re.sub(r"^```(?:json)?\s*", "", stripped)
        return re.sub(r"\s*```$", "", stripped)

    def _parse_json(self, response: str) -> Any:
        # Well-formed JSON inside fences parses as-is; only mangled replies
        # need the lossy sanitizer
        try:
            return json.loads(self._strip_fences(response))
        except json.JSONDecodeError:
            return json.loads(self.sanitize_response(response))

    def validate_response(
        self,
        response: str,
        allowed_destinations: List[str],
        thresholds: Optional[ConfidenceThresholds] = None,
    ) -> DecisionValidation:
        result = DecisionValidation()
        try:
            parsed = self._parse_json(response)
        except json.JSONDecodeError as e:
            result.valid = False
            result.errors.append(f"Failed to parse JSON: {e}")
            return result

        if not isinstance(parsed, dict):
            result.valid = False
            result.errors.append("Response must be a JSON object")
            return result

        decision = parsed.get("decision")
        if not decision:
            result.valid = False
            result.errors.append("Missing required field: decision")
        if not parsed.get("reasoning"):
            result.valid = False
            result.errors.append("Missing required field: reasoning")

        confidence = parsed.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
            result.valid = False
            result.errors.append("Invalid confidence value: must be a number between 0.0 and 1.0")
            confidence = None

        if isinstance(decision, str) and decision:
            if decision != REQUIRE_APPROVAL and not decision.startswith(DECISION_PREFIXES):
                result.valid = False
                result.errors.append(
                    f"Invalid decision action: {decision}. Must start with 'jump_to_', "
                    "'advance_to_', or be 'require_approval'"
                )
            for prefix in DECISION_PREFIXES:
                if decision.startswith(prefix):
                    target = decision[len(prefix):]
                    if target not in allowed_destinations:
                        result.valid = False
                        result.errors.append(
                            f"Target phase '{target}' not in allowed destinations: "
                            f"{', '.join(allowed_destinations)}"
                        )
        elif decision:
            result.valid = False
            result.errors.append("Invalid decision action: must be a string")

        recommendations = parsed.get("recommendations")
        if recommendations is not None and not isinstance(recommendations, list):
            result.valid = False
            result.errors.append("Invalid recommendations: must be an array")

        thresholds = thresholds or ConfidenceThresholds()
        if confidence is not None and confidence < thresholds.require_approval:
            result.warnings.append(
                f"Confidence {confidence} below require_approval threshold {thresholds.require_approval}"
            )

        if result.valid:
            result.response = DecisionResponse(
                decision=decision,
                reasoning=str(parsed["reasoning"]),
                confidence=float(confidence),
                recommendations=[str(r) for r in recommendations] if recommendations else None,
                requires_approval=parsed.get("requires_approval") is True,
            )
        return result

    def track_decision(self, response: DecisionResponse) -> None:
        analytics = self.analytics
        analytics.total_decisions += 1

        kind = response.decision.split("_")[0]
        analytics.decisions_by_type[kind] = analytics.decisions_by_type.get(kind, 0) + 1

        if response.confidence >= 0.8:
            bucket = "high"
        elif response.confidence >= 0.5:
            bucket = "medium"
        else:
            bucket = "low"
        analytics.confidence_distribution[bucket] += 1
        rate = analytics.approval_rate_by_confidence[bucket]
        rate[1] += 1
        if "approval" not in response.decision:
            rate[0] += 1

        if response.target_phase:
            analytics.target_counts[response.target_phase] += 1

    def reset_analytics(self) -> None:
        self.analytics = DecisionAnalytics()

    def build_decision_instructions(
        self,
        template_name: Optional[str],
        context: TemplateContext,
    ) -> str:
        """Full prompt text for the decision agent: system prompt then user prompt."""
        prompt = self.build_prompt(template_name, context)
        if prompt["system_prompt"]:
            return f"{prompt['system_prompt']}\n\n{prompt['user_prompt']}"
        return prompt["user_prompt"]


def recent_decision_entries(records: List[Any]) -> List[Dict[str, Any]]:
    """Shape DecisionRecords for the ``recent_decisions`` template block."""
    entries = []
    for record in records:
        timestamp = record.timestamp
        entries.append({
            "timestamp": timestamp.isoformat() if isinstance(timestamp, datetime) else timestamp,
            "decision": record.decision,
            "reasoning": record.reasoning or "",
        })
    return entries
