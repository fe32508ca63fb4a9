"""
Routing Rules
=============
Deterministic selection of models from contextual conditions.

A rule matches when every condition field it specifies (preset,
content-length bucket, code presence) equals the input; absent fields are
wildcards. Rules are scanned in stored order and the first *enabled*
match wins. There is no scoring: if a broad rule is stored before a
narrow one, the broad rule wins.

Everything in this module is pure. ``simulate`` runs the same matching
against a hypothetical input so a rule editor can dry-run changes.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .adapters import known_model_ids
from .errors import ValidationError
from .presets import PRESET_NAMES

SHORT_LIMIT = 500
MEDIUM_LIMIT = 2000


class ContentLength(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


CONTENT_LENGTHS = tuple(c.value for c in ContentLength)


def bucket_content_length(length: int) -> ContentLength:
    """Bucket a character count; each bucket includes its lower bound."""
    if length < SHORT_LIMIT:
        return ContentLength.SHORT
    if length < MEDIUM_LIMIT:
        return ContentLength.MEDIUM
    return ContentLength.LONG


CODE_PATTERNS = [
    re.compile(r"```"),
    re.compile(
        r"^\s*(def|class|import|from\s+\S+\s+import|function|const|let|var|"
        r"public|private|package|func|fn|#include)\b",
        re.MULTILINE,
    ),
    re.compile(r"^\s*(SELECT|INSERT\s+INTO|UPDATE|DELETE\s+FROM)\s", re.MULTILINE | re.IGNORECASE),
    re.compile(r"\b(console\.log|System\.out\.println|printf)\s*\("),
    re.compile(r"\)\s*(=>|->)\s*[{\w]"),
]


def detect_code(text: str) -> bool:
    """Heuristic: does the text contain source code?"""
    if not text:
        return False
    return any(pattern.search(text) for pattern in CODE_PATTERNS)


@dataclass(frozen=True)
class RuleCondition:
    """All-None means "matches anything"."""

    preset: str | None = None
    content_length: ContentLength | None = None
    has_code: bool | None = None

    def __post_init__(self) -> None:
        if isinstance(self.content_length, str) and not isinstance(
            self.content_length, ContentLength
        ) and self.content_length in CONTENT_LENGTHS:
            object.__setattr__(self, "content_length", ContentLength(self.content_length))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.preset is not None:
            data["preset"] = self.preset
        if self.content_length is not None:
            data["contentLength"] = _length_value(self.content_length)
        if self.has_code is not None:
            data["hasCode"] = self.has_code
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuleCondition:
        return cls(
            preset=data.get("preset"),
            content_length=data.get("contentLength"),
            has_code=data.get("hasCode"),
        )


def _length_value(value: ContentLength | str) -> str:
    return value.value if isinstance(value, ContentLength) else str(value)


@dataclass(frozen=True)
class RoutingRule:
    """User-owned condition → preferred-models mapping"""

    id: str
    name: str
    condition: RuleCondition
    preferred_models: tuple[str, ...]
    enabled: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "preferred_models", tuple(self.preferred_models))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "condition": self.condition.to_dict(),
            "preferredModels": list(self.preferred_models),
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoutingRule:
        return cls(
            id=data["id"],
            name=data["name"],
            condition=RuleCondition.from_dict(data.get("condition") or {}),
            preferred_models=tuple(data.get("preferredModels") or ()),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass(frozen=True)
class RoutingInput:
    preset: str
    content_length: ContentLength
    has_code: bool = False


@dataclass(frozen=True)
class RoutingDecision:
    """Outcome of an evaluation; ``matched_rule is None`` means no match."""

    matched_rule: RoutingRule | None
    selected_models: tuple[str, ...] = field(default_factory=tuple)

    @property
    def matched(self) -> bool:
        return self.matched_rule is not None


NO_MATCH = RoutingDecision(None, ())


def rule_matches(rule: RoutingRule, routing_input: RoutingInput) -> bool:
    condition = rule.condition
    if condition.preset is not None and condition.preset != routing_input.preset:
        return False
    if (
        condition.content_length is not None
        and _length_value(condition.content_length)
        != _length_value(routing_input.content_length)
    ):
        return False
    if condition.has_code is not None and condition.has_code != routing_input.has_code:
        return False
    return True


def evaluate(rules: Iterable[RoutingRule], routing_input: RoutingInput) -> RoutingDecision:
    """First enabled rule, in stored order, whose specified fields all match."""
    for rule in rules:
        if rule.enabled and rule_matches(rule, routing_input):
            return RoutingDecision(rule, rule.preferred_models)
    return NO_MATCH


def route_prompt(rules: Iterable[RoutingRule], prompt: str, preset: str) -> RoutingDecision:
    """Evaluate the rules against real prompt text."""
    routing_input = RoutingInput(
        preset=preset,
        content_length=bucket_content_length(len(prompt)),
        has_code=detect_code(prompt),
    )
    return evaluate(rules, routing_input)


def simulate(
    rules: Iterable[RoutingRule],
    preset: str,
    prompt_length: int,
    has_code: bool = False,
) -> RoutingDecision:
    """Dry-run the matcher against a hypothetical prompt."""
    routing_input = RoutingInput(
        preset=preset,
        content_length=bucket_content_length(prompt_length),
        has_code=has_code,
    )
    return evaluate(rules, routing_input)


# Validation


def validate_rule(rule: RoutingRule, known_models: Sequence[str] | None = None) -> list[str]:
    """Return every problem with the rule; empty list means valid."""
    known = set(known_model_ids() if known_models is None else known_models)
    errors: list[str] = []

    if not rule.name or not rule.name.strip():
        errors.append("Name is required")

    if not rule.preferred_models:
        errors.append("At least one model must be selected")

    invalid_models = [m for m in rule.preferred_models if m not in known]
    if invalid_models:
        errors.append(f"Invalid models: {', '.join(invalid_models)}")

    condition = rule.condition
    if condition.preset is not None and condition.preset not in PRESET_NAMES:
        errors.append("Invalid preset value")

    if (
        condition.content_length is not None
        and _length_value(condition.content_length) not in CONTENT_LENGTHS
    ):
        errors.append("Invalid content length value")

    if condition.has_code is not None and not isinstance(condition.has_code, bool):
        errors.append("Invalid hasCode value")

    return errors


def ensure_valid_rules(
    rules: Sequence[RoutingRule], known_models: Sequence[str] | None = None
) -> None:
    """Raise ValidationError listing every problem across the rule set."""
    known = known_model_ids() if known_models is None else known_models
    errors: list[str] = []
    seen_ids: set[str] = set()
    for rule in rules:
        for error in validate_rule(rule, known):
            errors.append(f"{rule.name or rule.id}: {error}")
        if rule.id in seen_ids:
            errors.append(f"{rule.name or rule.id}: Duplicate rule id {rule.id!r}")
        seen_ids.add(rule.id)
    if errors:
        raise ValidationError(errors)


# JSON round-trip

_REQUIRED_KEYS = {
    "id": str,
    "name": str,
    "condition": dict,
    "preferredModels": list,
    "enabled": bool,
}
_CONDITION_TYPES = {"preset": str, "contentLength": str, "hasCode": bool}


def _check_shape(item: Any, index: int) -> list[str]:
    prefix = f"Rule {index}"
    if not isinstance(item, dict):
        return [f"{prefix}: must be an object"]

    errors: list[str] = []
    for key, expected in _REQUIRED_KEYS.items():
        if key not in item:
            errors.append(f"{prefix}: missing required field '{key}'")
        elif not isinstance(item[key], expected):
            errors.append(f"{prefix}: '{key}' must be {expected.__name__}")

    condition = item.get("condition")
    if isinstance(condition, dict):
        for key, value in condition.items():
            expected = _CONDITION_TYPES.get(key)
            if expected is None:
                errors.append(f"{prefix}: unknown condition field '{key}'")
            elif not isinstance(value, expected):
                errors.append(f"{prefix}: condition '{key}' must be {expected.__name__}")

    models = item.get("preferredModels")
    if isinstance(models, list) and not all(isinstance(m, str) for m in models):
        errors.append(f"{prefix}: 'preferredModels' must contain strings")

    return errors


def rules_to_data(rules: Iterable[RoutingRule]) -> list[dict[str, Any]]:
    return [rule.to_dict() for rule in rules]


def rules_to_json(rules: Iterable[RoutingRule]) -> str:
    return json.dumps(rules_to_data(rules), indent=2)


def rules_from_data(
    data: Any, known_models: Sequence[str] | None = None
) -> list[RoutingRule]:
    """Schema-check then validate a decoded rule list. Never coerces."""
    if not isinstance(data, list):
        raise ValidationError(["Routing rules must be a JSON array"])

    errors: list[str] = []
    for index, item in enumerate(data):
        errors.extend(_check_shape(item, index))
    if errors:
        raise ValidationError(errors)

    rules = [RoutingRule.from_dict(item) for item in data]
    ensure_valid_rules(rules, known_models)
    return rules


def rules_from_json(text: str, known_models: Sequence[str] | None = None) -> list[RoutingRule]:
    """Raw-JSON edit path: parse, schema-check and validate."""
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ValidationError([f"Invalid JSON: {e}"]) from e
    return rules_from_data(data, known_models)
