"""Reentrancy rule: state written after an external call."""

from __future__ import annotations

import re

from auditengine.analyzer.static.base_rule import ASSIGN_RE, BaseRule
from auditengine.core.types import Finding, ParsedData, Severity

LOOKAHEAD = 15

_EXTERNAL_CALL_RE = re.compile(
    r"\binvoke(?:_signed)?\s*\("
    r"|CpiContext::new"
    r"|\w+::transfer\s*[(<]"
    r"|\.call\s*\("
    r"|call_contract_syscall"
    r"|\w+Dispatcher\s*\{"
    r"|dispatcher\.\w+\s*\("
)


class ReentrancyRule(BaseRule):
    """External call followed by a state assignment in the same function."""

    RULE_ID = "reentrancy"
    NAME = "Potential Reentrancy"
    DESCRIPTION = (
        "State is updated after an external call. A callee that re-enters "
        "the program observes stale state (checks-effects-interactions violated)."
    )
    SEVERITY = Severity.CRITICAL
    CATEGORY = "Reentrancy"
    CONFIDENCE = 0.6
    CWE = "CWE-367"
    EXPLOITABILITY = 0.7
    RECOMMENDATION = "Apply checks-effects-interactions: update state before making external calls."

    def check(self, parsed: ParsedData) -> list[Finding]:
        findings: list[Finding] = []
        for view in self.functions(parsed):
            body = list(view.body())
            for i, (lineno, line, masked) in enumerate(body):
                if not _EXTERNAL_CALL_RE.search(masked):
                    continue
                later = next(
                    (n for n, _, m in body[i + 1:i + 1 + LOOKAHEAD] if ASSIGN_RE.search(m)),
                    None,
                )
                if later is None:
                    continue
                findings.append(self._make_finding(
                    view.fn.file, lineno, line,
                    metadata={"function": view.fn.name, "state_write_line": later},
                ))
        return findings
