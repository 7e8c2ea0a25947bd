"""Error handling rules: discarded results and panicking unwraps."""

from __future__ import annotations

import re

from auditengine.analyzer.static.base_rule import BaseRule
from auditengine.core.types import Finding, Language, ParsedData, Severity

_FALLIBLE_CALL_RE = re.compile(
    r"\b(?:invoke|invoke_signed|transfer|transfer_from|send|call|call_contract_syscall|close)\s*\("
)
_DISCARD_RE = re.compile(r"^\s*let\s+_\s*=")
_UNWRAP_RE = re.compile(r"\.(?:unwrap|expect)\s*\(")


class UncheckedReturnRule(BaseRule):
    """Result of a fallible call is discarded."""

    RULE_ID = "unchecked-return"
    NAME = "Unchecked Return Value"
    DESCRIPTION = (
        "The result of a fallible call is ignored, so a failed transfer or "
        "cross-program invocation goes unnoticed."
    )
    SEVERITY = Severity.MEDIUM
    CATEGORY = "Error Handling"
    CONFIDENCE = 0.5
    CWE = "CWE-252"
    EXPLOITABILITY = 0.4
    RECOMMENDATION = "Propagate the result with `?` or handle the error case explicitly."
    LANGUAGES = frozenset({Language.RUST, Language.CAIRO})

    def check(self, parsed: ParsedData) -> list[Finding]:
        findings: list[Finding] = []
        for view in self.functions(parsed):
            for lineno, line, masked in view.body():
                if not _FALLIBLE_CALL_RE.search(masked):
                    continue
                stripped = masked.strip()
                discarded = bool(_DISCARD_RE.match(masked))
                bare_statement = (
                    stripped.endswith(");")
                    and "?" not in stripped
                    and not stripped.startswith(("let ", "return", "if ", "match "))
                    and "=" not in stripped.split("(", 1)[0]
                    and not _UNWRAP_RE.search(stripped)
                )
                if discarded or bare_statement:
                    findings.append(self._make_finding(view.fn.file, lineno, line))
        return findings


class UnsafeUnwrapRule(BaseRule):
    """unwrap()/expect() in non-test code."""

    RULE_ID = "unsafe-unwrap"
    NAME = "Unsafe Unwrap"
    DESCRIPTION = "unwrap()/expect() panics on None or Err and aborts the transaction."
    SEVERITY = Severity.MEDIUM
    CATEGORY = "Error Handling"
    CONFIDENCE = 0.8
    CWE = "CWE-754"
    EXPLOITABILITY = 0.3
    RECOMMENDATION = "Return a descriptive error instead, e.g. `.ok_or(ErrorCode::X)?`."
    LANGUAGES = frozenset({Language.RUST, Language.CAIRO})

    def check(self, parsed: ParsedData) -> list[Finding]:
        findings: list[Finding] = []
        for view in self.functions(parsed):
            if view.is_test:
                continue
            for lineno, line, masked in view.body():
                if _UNWRAP_RE.search(masked):
                    findings.append(self._make_finding(view.fn.file, lineno, line))
        return findings
