"""Rule-based static analyzer."""

from __future__ import annotations

import logging

from auditengine.analyzer.base import AnalyzerPlugin
from auditengine.analyzer.static.registry import RuleRegistry
from auditengine.core.types import AnalyzerKind, Finding, ParsedData

logger = logging.getLogger(__name__)


class StaticAnalyzer(AnalyzerPlugin):
    """Runs every registered rule, isolating failures per rule."""

    NAME = "static-analyzer"
    KIND = AnalyzerKind.STATIC

    def __init__(self, registry: RuleRegistry | None = None) -> None:
        self.registry = registry or RuleRegistry.default()

    async def analyze(
        self,
        parsed: ParsedData,
        prior_findings: list[Finding] | None = None,
    ) -> list[Finding]:
        findings: list[Finding] = []
        for rule in self.registry.rules():
            if not rule.applies_to(parsed.language):
                continue
            try:
                results = rule.check(parsed)
            except Exception:
                logger.exception(
                    "Rule %s failed, skipping", rule.RULE_ID, extra={"rule_id": rule.RULE_ID},
                )
                continue
            logger.debug("Rule %s: %d findings", rule.RULE_ID, len(results))
            findings.extend(results)

        # Stable: ties keep rule order
        findings.sort(key=lambda f: f.severity.weight, reverse=True)
        return findings
