"""Rule registry: an explicit, ordered and configurable rule collection."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Type

import yaml

from auditengine.analyzer.static.base_rule import BaseRule
from auditengine.analyzer.static.rules.access_control import MissingAccessControlRule, MissingSignerRule
from auditengine.analyzer.static.rules.arithmetic import DivisionByZeroRule, IntegerOverflowRule
from auditengine.analyzer.static.rules.error_handling import UncheckedReturnRule, UnsafeUnwrapRule
from auditengine.analyzer.static.rules.reentrancy import ReentrancyRule
from auditengine.analyzer.static.rules.time_manipulation import TimestampDependenceRule
from auditengine.core.types import Severity

logger = logging.getLogger(__name__)

DEFAULT_RULES: tuple[Type[BaseRule], ...] = (
    IntegerOverflowRule,
    DivisionByZeroRule,
    MissingAccessControlRule,
    MissingSignerRule,
    ReentrancyRule,
    UncheckedReturnRule,
    UnsafeUnwrapRule,
    TimestampDependenceRule,
)


class RuleConfigError(ValueError):
    """Invalid rule registry configuration."""


class RuleRegistry:
    """Ordered collection of rule instances keyed by RULE_ID.

    Rules run in registration order. Use `default()` for the built-in set
    or `from_yaml()` to enable/disable and re-tune rules from a file::

        rules:
          - id: timestamp-dependence
            enabled: false
          - id: integer-overflow
            severity: medium
            confidence: 0.6
    """

    def __init__(self, rules: list[BaseRule] | None = None) -> None:
        self._rules: dict[str, BaseRule] = {}
        for rule in rules or []:
            self.register(rule)

    @classmethod
    def default(cls) -> "RuleRegistry":
        return cls([rule_cls() for rule_cls in DEFAULT_RULES])

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RuleRegistry":
        try:
            raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise RuleConfigError(f"Cannot load rule config {path}: {e}") from e
        return cls.from_config(raw)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "RuleRegistry":
        """Build a registry from a parsed `{"rules": [...]}` mapping."""
        if not isinstance(config, dict) or not isinstance(config.get("rules", []), list):
            raise RuleConfigError("Rule config must be a mapping with a 'rules' list")

        known = {rule_cls.RULE_ID: rule_cls for rule_cls in DEFAULT_RULES}
        overrides: dict[str, dict[str, Any]] = {}
        for entry in config.get("rules", []):
            if not isinstance(entry, dict) or "id" not in entry:
                raise RuleConfigError(f"Rule entry needs an 'id': {entry!r}")
            rule_id = entry["id"]
            if rule_id not in known:
                raise RuleConfigError(f"Unknown rule id: {rule_id}")
            overrides[rule_id] = entry

        rules: list[BaseRule] = []
        for rule_id, rule_cls in known.items():
            entry = overrides.get(rule_id, {})
            if not entry.get("enabled", True):
                logger.info("Rule %s disabled by config", rule_id, extra={"rule_id": rule_id})
                continue
            severity = None
            if "severity" in entry:
                severity = Severity.parse(entry["severity"])
                if severity is None:
                    raise RuleConfigError(f"Invalid severity for {rule_id}: {entry['severity']!r}")
            confidence = entry.get("confidence")
            if confidence is not None:
                if not isinstance(confidence, (int, float)) or not 0.0 <= confidence <= 1.0:
                    raise RuleConfigError(f"Confidence for {rule_id} must be within [0, 1]")
                confidence = float(confidence)
            rules.append(rule_cls(severity=severity, confidence=confidence))
        return cls(rules)

    def register(self, rule: BaseRule) -> None:
        if not rule.RULE_ID:
            raise RuleConfigError(f"{type(rule).__name__} has no RULE_ID")
        self._rules[rule.RULE_ID] = rule

    def unregister(self, rule_id: str) -> None:
        self._rules.pop(rule_id, None)

    def get(self, rule_id: str) -> BaseRule | None:
        return self._rules.get(rule_id)

    def rules(self) -> list[BaseRule]:
        """Rule instances in execution order."""
        return list(self._rules.values())

    def ids(self) -> list[str]:
        return list(self._rules)

    def categories(self) -> list[str]:
        return sorted({r.CATEGORY for r in self._rules.values() if r.CATEGORY})

    def __len__(self) -> int:
        return len(self._rules)
