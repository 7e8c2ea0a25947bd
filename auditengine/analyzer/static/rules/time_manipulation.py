"""Timestamp dependence rule."""

from __future__ import annotations

import re

from auditengine.analyzer.static.base_rule import BaseRule
from auditengine.core.types import Finding, ParsedData, Severity

_TIMESTAMP_RE = re.compile(
    r"\bunix_timestamp\b|Clock::get\s*\("
    r"|timestamp::now_(?:seconds|microseconds)"
    r"|get_block_timestamp|get_block_info"
)


class TimestampDependenceRule(BaseRule):
    """Logic keyed on validator-controlled block time."""

    RULE_ID = "timestamp-dependence"
    NAME = "Timestamp Dependence"
    DESCRIPTION = (
        "Function reads the block timestamp. Validators/sequencers can skew it "
        "slightly, which matters for deadlines, auctions and randomness."
    )
    SEVERITY = Severity.LOW
    CATEGORY = "Time Manipulation"
    CONFIDENCE = 0.5
    CWE = "CWE-829"
    EXPLOITABILITY = 0.3
    RECOMMENDATION = "Avoid tight time windows and never use timestamps as a randomness source."

    def check(self, parsed: ParsedData) -> list[Finding]:
        findings: list[Finding] = []
        for view in self.functions(parsed):
            # First read per function is enough
            for lineno, line, masked in view.body():
                if _TIMESTAMP_RE.search(masked):
                    findings.append(self._make_finding(
                        view.fn.file, lineno, line, metadata={"function": view.fn.name},
                    ))
                    break
        return findings
