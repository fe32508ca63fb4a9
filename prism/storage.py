"""
Routing Rule Storage
====================

Durable JSON persistence for the user's routing rule set. The file keeps
rules in their stored order, which is also their evaluation order.
Saving validates the whole set first and refuses to write anything if a
single rule is invalid.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Sequence
from pathlib import Path

from .config import ensure_config_dir
from .errors import StorageError, ValidationError
from .routing import (
    ContentLength,
    RoutingRule,
    RuleCondition,
    ensure_valid_rules,
    rules_from_data,
    rules_to_data,
)

logger = logging.getLogger(__name__)

RULES_FILENAME = "routing_rules.json"

DEFAULT_RULES: tuple[RoutingRule, ...] = (
    RoutingRule(
        id="default-code",
        name="Code Bench - Claude for long code",
        condition=RuleCondition(preset="code", content_length=ContentLength.LONG),
        preferred_models=(
            "anthropic:claude-3-5-sonnet-20241022",
            "openai:gpt-4o",
            "gemini:gemini-1.5-pro",
        ),
        enabled=True,
    ),
    RoutingRule(
        id="default-research",
        name="Research - GPT-4 primary",
        condition=RuleCondition(preset="research"),
        preferred_models=("openai:gpt-4o", "anthropic:claude-3-5-sonnet-20241022"),
        enabled=True,
    ),
)


def get_storage_path() -> Path:
    """Get the storage directory path, creating it if needed."""
    return ensure_config_dir()


class RoutingRuleStore:
    """File-backed routing rule set."""

    def __init__(
        self,
        path: Path | None = None,
        known_models: Sequence[str] | None = None,
    ) -> None:
        if path is None:
            path = get_storage_path() / RULES_FILENAME
        self.path = path
        self.known_models = known_models

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> list[RoutingRule]:
        """Stored rules, or the built-in defaults when nothing is stored."""
        if not self.path.exists():
            return list(DEFAULT_RULES)

        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read routing rules from {self.path}: {e}")
            return list(DEFAULT_RULES)

        try:
            return rules_from_data(data, self.known_models)
        except ValidationError as e:
            logger.error(f"Stored routing rules are invalid, using defaults: {e}")
            return list(DEFAULT_RULES)

    def save(self, rules: Sequence[RoutingRule]) -> None:
        """Validate then persist; raises ValidationError without writing."""
        ensure_valid_rules(rules, self.known_models)

        temp_file = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(rules_to_data(rules), f, indent=2)
            os.replace(temp_file, self.path)
        except OSError as e:
            logger.error(f"Failed to save routing rules to {self.path}: {e}")
            temp_file.unlink(missing_ok=True)
            raise StorageError("Failed to persist routing rules") from e
        logger.info(f"Saved {len(rules)} routing rule(s)")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
