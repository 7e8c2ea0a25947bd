"""Semantic / call-graph analyzer.

Heuristics over the call graph and windowed text proximity:
  - Recursion with no visible termination (call cycles)
  - Privilege escalation (public caller into private callee)
  - State-changing public entry points with no input validation
  - External calls with no error handling / followed by state writes
  - Token movements with no balance check or unchecked arithmetic

Findings co-located (same file, within 5 lines) with a prior static finding
get a confidence boost instead of being deduplicated here.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable

from auditengine.analyzer.base import AnalyzerPlugin, snippet
from auditengine.analyzer.static.base_rule import ASSIGN_RE, masked_lines
from auditengine.core.call_graph import CallGraph
from auditengine.core.types import (
    AnalyzerKind,
    Finding,
    FunctionInfo,
    Location,
    ParsedData,
    Severity,
    Visibility,
)

logger = logging.getLogger(__name__)

CO_LOCATION_LINES = 5
CONFIDENCE_BOOST = 0.1
ERROR_WINDOW = 200
BALANCE_WINDOW = 200
STATE_CHANGE_OFFSET = 50

_VALIDATION_RE = re.compile(r"require|assert|if\b.*return|\bmatch\b|ensure|abort", re.IGNORECASE)
_ERROR_HANDLING_RE = re.compile(r"\?|try|catch|match|Result|Option|unwrap_or|expect|map_err", re.IGNORECASE)
_BALANCE_RE = re.compile(r"balance|amount|sufficient|check", re.IGNORECASE)
_OVERFLOW_GUARD_RE = re.compile(r"checked_|safe_|overflow|saturating_", re.IGNORECASE)
_ARITH_RE = re.compile(r"\b\w+\s*[+\-*/]=?\s*\w+")
_TRANSFER_RE = re.compile(r"\b(?:transfer|send|mint|burn)\w*\s*[(<]", re.IGNORECASE)
_EXTERNAL_CALL_RE = re.compile(
    r"\binvoke(?:_signed)?\s*\("
    r"|\b\w+::(?:transfer|transfer_from|withdraw|deposit|mint_to|mint|burn|swap|call|invoke)\b\s*[(<]"
    r"|dispatcher\.\w+\s*\("
    r"|call_contract_syscall\s*\("
)
_CONTEXT_PARAMS = frozenset({"self", "ctx", "account", "signer", "_ctx"})

Check = Callable[[ParsedData, CallGraph], list[Finding]]


def _finding(
    id: str,
    title: str,
    description: str,
    severity: Severity,
    confidence: float,
    category: str,
    file: str,
    line: int,
    code: str,
    recommendation: str,
    cwe: str,
    exploitability: float,
    **metadata,
) -> Finding:
    return Finding(
        id=id,
        title=title,
        description=description,
        severity=severity,
        confidence=confidence,
        category=category,
        location=Location(file=file, line=line),
        code=code,
        recommendation=recommendation,
        references=[f"https://cwe.mitre.org/data/definitions/{cwe.split('-')[-1]}.html"],
        cwe=cwe,
        exploitability=exploitability,
        source="semantic",
        metadata=metadata,
    )


class _Body:
    """Masked function text with offset → line mapping."""

    def __init__(self, parsed: ParsedData, fn: FunctionInfo) -> None:
        entry = parsed.ast[fn.file]
        self.fn = fn
        self.text = "\n".join(masked_lines(entry.content)[fn.start_line - 1:fn.end_line])

    def line_at(self, offset: int) -> int:
        return self.fn.start_line + self.text.count("\n", 0, offset)

    def has_state_change(self, start: int = 0) -> bool:
        return any(ASSIGN_RE.search(line) for line in self.text[start:].split("\n"))


class SemanticAnalyzer(AnalyzerPlugin):
    NAME = "semantic-analyzer"
    KIND = AnalyzerKind.SEMANTIC

    def __init__(self) -> None:
        self._checks: list[tuple[str, Check]] = [
            ("recursion", self._recursion),
            ("privilege-escalation", self._privilege_escalation),
            ("unvalidated-input", self._unvalidated_input),
            ("external-calls", self._external_calls),
            ("economic-logic", self._economic_logic),
        ]

    async def analyze(
        self,
        parsed: ParsedData,
        prior_findings: list[Finding] | None = None,
    ) -> list[Finding]:
        graph = CallGraph.build([f for f in parsed.functions if f.file in parsed.ast])
        findings: list[Finding] = []
        for name, check in self._checks:
            try:
                findings.extend(check(parsed, graph))
            except Exception:
                logger.exception("Semantic check %s failed, skipping", name)
        if prior_findings:
            findings = self.boost_co_located(findings, prior_findings)
        return findings

    @staticmethod
    def boost_co_located(findings: list[Finding], prior: list[Finding]) -> list[Finding]:
        """Raise confidence of findings near a prior finding; `prior` is not modified."""
        boosted: list[Finding] = []
        for finding in findings:
            related = [
                p.id for p in prior
                if p.location.file == finding.location.file
                and abs(p.location.line - finding.location.line) <= CO_LOCATION_LINES
            ]
            if related:
                finding = finding.model_copy(update={
                    "confidence": min(1.0, finding.confidence + CONFIDENCE_BOOST),
                    "metadata": {**finding.metadata, "corroborated_by": related},
                })
            boosted.append(finding)
        return boosted

    # ── Inter-procedural ──────────────────────────────────────────────────

    def _recursion(self, parsed: ParsedData, graph: CallGraph) -> list[Finding]:
        findings = []
        for name, fn in graph.nodes.items():
            cycle = graph.find_cycle(name)
            if cycle is None:
                continue
            findings.append(_finding(
                f"recursion-{fn.file}-{name}",
                "Potential Infinite Recursion",
                f"Function '{name}' can call itself through {' -> '.join(cycle)} with no "
                "visible termination bound.",
                Severity.MEDIUM, 0.5, "Control Flow",
                fn.file, fn.start_line, snippet(parsed, fn.file, fn.start_line),
                "Bound the recursion depth or rewrite iteratively; on-chain compute "
                "and stack are limited.",
                "CWE-674", 0.3, function=name, cycle=cycle,
            ))
        return findings

    def _privilege_escalation(self, parsed: ParsedData, graph: CallGraph) -> list[Finding]:
        findings = []
        for edge in graph.escalation_edges():
            caller = graph.nodes[edge.caller]
            findings.append(_finding(
                f"privilege-escalation-{caller.file}-{edge.caller}-{edge.callee}",
                "Privilege Escalation Risk",
                f"Public function '{edge.caller}' calls private function '{edge.callee}'. "
                "Any restrictions assumed by the private helper must be enforced by the caller.",
                Severity.HIGH, 0.7, "Access Control",
                caller.file, caller.start_line, snippet(parsed, caller.file, caller.start_line),
                "Verify the public entry point enforces every precondition the private "
                "function relies on.",
                "CWE-269", 0.8, caller=edge.caller, callee=edge.callee,
            ))
        return findings

    # ── Business logic ────────────────────────────────────────────────────

    def _unvalidated_input(self, parsed: ParsedData, graph: CallGraph) -> list[Finding]:
        findings = []
        for fn in parsed.functions:
            if fn.visibility is not Visibility.PUBLIC or fn.file not in parsed.ast:
                continue
            inputs = [p for p in fn.parameters if p not in _CONTEXT_PARAMS]
            if not inputs:
                continue
            body = _Body(parsed, fn)
            if not body.has_state_change() or _VALIDATION_RE.search(body.text):
                continue
            findings.append(_finding(
                f"business-logic-validation-{fn.file}-{fn.name}",
                "Missing Business Logic Validation",
                f"Function '{fn.name}' changes state from caller input "
                f"({', '.join(inputs)}) without validating it.",
                Severity.MEDIUM, 0.7, "Business Logic",
                fn.file, fn.start_line, snippet(parsed, fn.file, fn.start_line),
                "Add input validation and business rule checks before mutating state.",
                "CWE-20", 0.6, function=fn.name, parameters=inputs,
            ))
        return findings

    # ── Contract interactions ─────────────────────────────────────────────

    def _external_calls(self, parsed: ParsedData, graph: CallGraph) -> list[Finding]:
        findings = []
        for fn in parsed.functions:
            if fn.file not in parsed.ast:
                continue
            body = _Body(parsed, fn)
            for m in _EXTERNAL_CALL_RE.finditer(body.text):
                line = body.line_at(m.start())
                code = snippet(parsed, fn.file, line)
                after = body.text[m.start():m.start() + ERROR_WINDOW]
                if not _ERROR_HANDLING_RE.search(after):
                    findings.append(_finding(
                        f"unchecked-external-call-{fn.file}-{line}",
                        "Unchecked External Call",
                        f"External call in '{fn.name}' has no visible error handling.",
                        Severity.MEDIUM, 0.7, "Contract Interaction",
                        fn.file, line, code,
                        "Handle the call result explicitly (`?`, match, or map_err).",
                        "CWE-252", 0.5, function=fn.name,
                    ))
                if body.has_state_change(m.start() + STATE_CHANGE_OFFSET):
                    findings.append(_finding(
                        f"cross-contract-reentrancy-{fn.file}-{line}",
                        "Cross-Contract Reentrancy Risk",
                        f"'{fn.name}' writes state after an external call; the callee may "
                        "re-enter before the write lands.",
                        Severity.HIGH, 0.6, "Reentrancy",
                        fn.file, line, code,
                        "Move state updates before the external call or add a reentrancy lock.",
                        "CWE-367", 0.8, function=fn.name,
                    ))
        return findings

    # ── Economic logic ────────────────────────────────────────────────────

    def _economic_logic(self, parsed: ParsedData, graph: CallGraph) -> list[Finding]:
        findings = []
        for fn in parsed.functions:
            if fn.file not in parsed.ast:
                continue
            body = _Body(parsed, fn)
            header_end = body.text.find("{")
            inner = body.text[header_end + 1:] if header_end >= 0 else ""
            arithmetic = bool(_ARITH_RE.search(inner))
            guarded = bool(_OVERFLOW_GUARD_RE.search(body.text))
            flagged_overflow = False
            for m in _TRANSFER_RE.finditer(body.text):
                if m.start() < header_end:
                    continue
                line = body.line_at(m.start())
                code = snippet(parsed, fn.file, line)
                before = body.text[max(0, m.start() - BALANCE_WINDOW):m.start()]
                if not _BALANCE_RE.search(before):
                    findings.append(_finding(
                        f"missing-balance-check-{fn.file}-{line}",
                        "Missing Balance Check",
                        f"Token movement in '{fn.name}' is not preceded by a balance or "
                        "amount check.",
                        Severity.HIGH, 0.8, "Economic Logic",
                        fn.file, line, code,
                        "Check the sender's balance and the requested amount before moving funds.",
                        "CWE-682", 0.7, function=fn.name,
                    ))
                if arithmetic and not guarded and not flagged_overflow:
                    flagged_overflow = True
                    findings.append(_finding(
                        f"economic-overflow-{fn.file}-{line}",
                        "Economic Logic Overflow Risk",
                        f"'{fn.name}' moves value and performs unchecked arithmetic.",
                        Severity.CRITICAL, 0.7, "Economic Logic",
                        fn.file, line, code,
                        "Use checked arithmetic for every value calculation.",
                        "CWE-190", 0.9, function=fn.name,
                    ))
        return findings
