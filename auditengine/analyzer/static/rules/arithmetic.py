"""Arithmetic safety rules: integer overflow and division by zero."""

from __future__ import annotations

import re

from auditengine.analyzer.static.base_rule import COMPARISON_RE, BaseRule
from auditengine.core.types import Finding, ParsedData, Severity

_ARITH_RE = re.compile(r"\b(\w+)\s*([+\-*])=?\s*(\w+)")
_SAFE_MARKERS = re.compile(r"\b(?:checked|saturating|wrapping|overflowing)_")
_NON_OPERANDS = frozenset({
    "mut", "let", "return", "in", "as", "const", "static", "ref", "fn", "fun",
    "if", "else", "match", "while", "for", "use", "pub", "impl", "where", "dyn",
})

_DIV_RE = re.compile(r"\b(\w+)\s*[/%]=?\s*([A-Za-z_]\w*(?:\.\w+)*)")
_SAFE_DIV = re.compile(r"\bchecked_(?:div|rem)\b|\bsafe_div\b")


class IntegerOverflowRule(BaseRule):
    """Arithmetic on integers with no checked/saturating/wrapping marker."""

    RULE_ID = "integer-overflow"
    NAME = "Integer Overflow"
    DESCRIPTION = (
        "Unchecked arithmetic operation may overflow or underflow. Release builds "
        "of Rust wrap silently, and Move/Cairo abort the whole transaction."
    )
    SEVERITY = Severity.HIGH
    CATEGORY = "Arithmetic Safety"
    CONFIDENCE = 0.7
    CWE = "CWE-190"
    EXPLOITABILITY = 0.8
    RECOMMENDATION = (
        "Use checked_add/checked_sub/checked_mul (or saturating_* where clamping is "
        "intended) and handle the None case explicitly."
    )

    def check(self, parsed: ParsedData) -> list[Finding]:
        findings: list[Finding] = []
        seen: set[tuple[str, int]] = set()
        for view in self.functions(parsed):
            for lineno, line, masked in view.body():
                key = (view.fn.file, lineno)
                if key in seen or masked.lstrip().startswith(("#", "use ")):
                    continue
                if _SAFE_MARKERS.search(masked) or COMPARISON_RE.search(masked):
                    continue
                if not self._has_unchecked_op(masked):
                    continue
                seen.add(key)
                findings.append(self._make_finding(view.fn.file, lineno, line))
        return findings

    @staticmethod
    def _has_unchecked_op(masked: str) -> bool:
        for m in _ARITH_RE.finditer(masked):
            left, right = m.group(1), m.group(3)
            if left in _NON_OPERANDS or right in _NON_OPERANDS:
                continue
            return True
        return False


class DivisionByZeroRule(BaseRule):
    """Division or modulo by a variable never compared against zero."""

    RULE_ID = "division-by-zero"
    NAME = "Potential Division by Zero"
    DESCRIPTION = (
        "Division or remainder by a runtime value that is not checked for zero "
        "first. The transaction panics or aborts when the divisor is zero."
    )
    SEVERITY = Severity.MEDIUM
    CATEGORY = "Arithmetic Safety"
    CONFIDENCE = 0.6
    CWE = "CWE-369"
    EXPLOITABILITY = 0.5
    RECOMMENDATION = "Validate the divisor is non-zero or use checked_div/checked_rem."

    def check(self, parsed: ParsedData) -> list[Finding]:
        findings: list[Finding] = []
        for view in self.functions(parsed):
            checked_so_far: list[str] = [view.masked[view.fn.start_line - 1]]
            for lineno, line, masked in view.body():
                if not _SAFE_DIV.search(masked):
                    for m in _DIV_RE.finditer(masked):
                        divisor = m.group(2)
                        if m.group(1) in ("use", "as") or self._guarded(divisor, checked_so_far):
                            continue
                        findings.append(self._make_finding(
                            view.fn.file, lineno, line,
                            metadata={"divisor": divisor},
                        ))
                        break
                checked_so_far.append(masked)
        return findings

    @staticmethod
    def _guarded(divisor: str, previous: list[str]) -> bool:
        name = re.escape(divisor)
        guard = re.compile(rf"{name}\s*(?:!=|>)\s*0|0\s*(?:!=|<)\s*{name}|{name}\.is_zero\(\)|{name}\s*>=\s*1")
        return any(guard.search(text) for text in previous)
