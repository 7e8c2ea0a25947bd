"""Access control rules: unguarded state mutation and missing signer accounts."""

from __future__ import annotations

import re

from auditengine.analyzer.static.base_rule import ASSIGN_RE, BaseRule
from auditengine.core.types import Finding, Language, ParsedData, Severity, Visibility

WINDOW = 20

_STATE_CALL_RE = re.compile(
    r"\.(?:push|pop|insert|remove|write)\s*\("
    r"|\b(?:transfer|send|call|mint|mint_to|burn|destroy|move_to|move_from|borrow_global_mut)\b\s*[(<:]"
)
_ACCESS_RE = re.compile(
    r"require!|require_keys_eq!|require_eq!|assert!|assert_eq!|\bonly_owner\b|\bis_signer\b"
    r"|\bsigner\b|has_one|access_control|\bauthority\b|\bowner\b|\badmin\b"
    r"|get_caller_address|signer::address_of",
    re.IGNORECASE,
)
_CONTEXT_RE = re.compile(r"Context\s*<\s*(?:'\w+\s*,\s*)*(\w+)")


class MissingAccessControlRule(BaseRule):
    """Public function mutates state with no authorization check nearby."""

    RULE_ID = "missing-access-control"
    NAME = "Missing Access Control"
    DESCRIPTION = (
        "Publicly callable function modifies state without any visible "
        "authorization check (signer, owner or authority validation)."
    )
    SEVERITY = Severity.HIGH
    CATEGORY = "Access Control"
    CONFIDENCE = 0.8
    CWE = "CWE-284"
    EXPLOITABILITY = 0.9
    RECOMMENDATION = (
        "Verify the caller's authority before mutating state, e.g. require a "
        "signer and compare it against the stored owner/authority."
    )

    def check(self, parsed: ParsedData) -> list[Finding]:
        findings: list[Finding] = []
        for view in self.functions(parsed):
            if view.fn.visibility is not Visibility.PUBLIC or view.fn.end_line <= view.fn.start_line:
                continue
            window = view.window(WINDOW)
            # Attribute lines directly above the signature count as guards
            above = view.masked[max(0, view.fn.start_line - 3):view.fn.start_line - 1]
            text = [masked for _, _, masked in window]
            if any(_ACCESS_RE.search(t) for t in text + above):
                continue
            mutation = next(
                (
                    n for n, _, masked in window[1:]
                    if ASSIGN_RE.search(masked) or _STATE_CALL_RE.search(masked)
                ),
                None,
            )
            if mutation is None:
                continue
            findings.append(self._make_finding(
                view.fn.file,
                view.fn.start_line,
                view.lines[view.fn.start_line - 1],
                title=f"Missing Access Control in {view.fn.name}",
                metadata={"function": view.fn.name, "mutation_line": mutation},
            ))
        return findings


class MissingSignerRule(BaseRule):
    """Anchor instruction whose accounts struct declares no Signer."""

    RULE_ID = "missing-signer-check"
    NAME = "Missing Signer Check"
    DESCRIPTION = (
        "Instruction accounts context has no Signer account, so anyone can "
        "submit the instruction on behalf of any authority."
    )
    SEVERITY = Severity.MEDIUM
    CATEGORY = "Access Control"
    CONFIDENCE = 0.6
    CWE = "CWE-862"
    EXPLOITABILITY = 0.7
    RECOMMENDATION = "Add a `Signer<'info>` account (or `#[account(signer)]`) for the acting authority."
    LANGUAGES = frozenset({Language.RUST})

    def check(self, parsed: ParsedData) -> list[Finding]:
        findings: list[Finding] = []
        structs = {s.name: s for s in parsed.structs()}
        for view in self.functions(parsed):
            if view.fn.visibility is not Visibility.PUBLIC:
                continue
            header = " ".join(view.masked[view.fn.start_line - 1:view.fn.start_line + 2])
            m = _CONTEXT_RE.search(header)
            if not m:
                continue
            accounts = structs.get(m.group(1))
            if accounts is not None:
                lines = parsed.lines(accounts.file)
                text = "\n".join(lines[accounts.line - 1:accounts.end_line])
            else:
                text = "\n".join(line for _, line, _ in view.window(15))
            if "Signer" in text or re.search(r"\bsigner\b|is_signer", text):
                continue
            findings.append(self._make_finding(
                view.fn.file,
                view.fn.start_line,
                view.lines[view.fn.start_line - 1],
                title=f"Missing Signer Check in {view.fn.name}",
                metadata={"function": view.fn.name, "accounts": m.group(1)},
            ))
        return findings
