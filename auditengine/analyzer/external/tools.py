"""External tool adapters and the analyzer that drives them.

Each adapter gets its own scoped workspace holding the project's sources and
manifests, runs one tool with a bounded timeout, and maps the tool's native
output onto the shared Finding schema. Adapters are isolated from each other:
a missing binary, non-zero exit, timeout or malformed output costs only that
adapter's findings.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any

from auditengine.analyzer.base import AnalyzerPlugin, snippet
from auditengine.analyzer.external.runner import ToolOutput, ToolRunner, scoped_workspace
from auditengine.analyzer.static.base_rule import masked_lines
from auditengine.core.config import Settings, get_settings
from auditengine.core.types import (
    AnalyzerKind,
    Finding,
    Language,
    Location,
    ParsedData,
    Severity,
)

logger = logging.getLogger(__name__)

_CWE_RE = re.compile(r"CWE-\d+")
_PROVER_LOCATION_RE = re.compile(r"┌─\s*(?P<file>[^:\s]+):(?P<line>\d+):(?P<col>\d+)")

_CLIPPY_CWE = {
    "clippy::unwrap_used": "CWE-248",
    "clippy::panic": "CWE-248",
    "clippy::unreachable": "CWE-561",
    "clippy::integer_arithmetic": "CWE-190",
    "clippy::arithmetic_side_effects": "CWE-190",
}
_SEMGREP_SEVERITY = {
    "ERROR": Severity.HIGH,
    "WARNING": Severity.MEDIUM,
    "INFO": Severity.LOW,
}


def _cwe_link(cwe: str | None) -> list[str]:
    return [f"https://cwe.mitre.org/data/definitions/{cwe.split('-')[-1]}.html"] if cwe else []


def workspace_files(parsed: ParsedData) -> dict[str, str]:
    """Sources plus manifests, with a stub manifest when none was submitted."""
    files = {name: entry.content for name, entry in parsed.ast.items()}
    files.update(parsed.config_files)
    names = {Path(n).name for n in files}
    if parsed.language is Language.RUST and "Cargo.toml" not in names:
        files["Cargo.toml"] = (
            '[package]\nname = "audit_target"\nversion = "0.1.0"\nedition = "2021"\n\n'
            "[dependencies]\n"
        )
        lib = next((n for n in parsed.ast if n.endswith("lib.rs")), None)
        if lib:
            files["Cargo.toml"] += f'\n[lib]\npath = "{lib}"\n'
    elif parsed.language is Language.MOVE and "Move.toml" not in names:
        files["Move.toml"] = '[package]\nname = "AuditTarget"\nversion = "0.0.1"\n\n[addresses]\n'
    return files


# ── Adapters ─────────────────────────────────────────────────────────────────


class ExternalTool(abc.ABC):
    """One external tool: which languages it covers, how to run and parse it."""

    NAME: str = ""
    LANGUAGES: frozenset[Language] = frozenset(Language)

    def __init__(self, settings: Settings, runner: ToolRunner) -> None:
        self.settings = settings
        self.runner = runner

    @property
    def timeout(self) -> float:
        return self.settings.external_tool_timeout_seconds

    @abc.abstractmethod
    def command(self) -> list[str]:
        ...

    @abc.abstractmethod
    def parse(self, output: ToolOutput, parsed: ParsedData) -> list[Finding]:
        ...

    def available(self) -> bool:
        return self.runner.is_available(self.command()[0])

    async def run(self, parsed: ParsedData) -> list[Finding]:
        async with scoped_workspace(workspace_files(parsed), prefix=self.settings.workspace_prefix) as root:
            output = await self.runner.run(self.command(), cwd=root, timeout=self.timeout)
            if output is None:
                return []
            findings = self.parse(output, parsed)
        logger.info("%s produced %d findings", self.NAME, len(findings), extra={"tool": self.NAME})
        return findings

    def _finding(self, id: str, **fields: Any) -> Finding:
        fields.setdefault("references", _cwe_link(fields.get("cwe")))
        return Finding(id=id, source="external", metadata={"tool": self.NAME}, **fields)


class ClippyTool(ExternalTool):
    NAME = "clippy"
    LANGUAGES = frozenset({Language.RUST})

    def command(self) -> list[str]:
        return [self.settings.cargo_bin, "clippy", "--message-format", "json", "--quiet"]

    def parse(self, output: ToolOutput, parsed: ParsedData) -> list[Finding]:
        findings = []
        for raw in output.stdout.splitlines():
            try:
                record = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(record, dict) or record.get("reason") != "compiler-message":
                continue
            message = record.get("message") or {}
            level = message.get("level")
            if level not in ("warning", "error"):
                continue
            spans = message.get("spans") or []
            span = next((s for s in spans if s.get("is_primary")), spans[0] if spans else {})
            file = span.get("file_name", "")
            line = int(span.get("line_start") or 0) if file in parsed.ast else 0
            code = ((message.get("code") or {}).get("code")) or "unknown"
            text = (span.get("text") or [{}])[0].get("text", "") if span else ""
            help_text = "; ".join(
                c.get("message", "") for c in message.get("children") or [] if c.get("level") == "help"
            )
            cwe = _CLIPPY_CWE.get(code)
            findings.append(self._finding(
                f"clippy-{code}-{line}",
                title=f"Clippy: {message.get('message', code)}",
                description=message.get("rendered") or message.get("message", ""),
                severity=Severity.HIGH if level == "error" else Severity.MEDIUM,
                confidence=0.9,
                category="Code Quality",
                location=Location(file=file, line=line, column=span.get("column_start")),
                code=text.strip(),
                recommendation=help_text or "Address the clippy diagnostic",
                cwe=cwe,
                exploitability=0.6 if level == "error" else 0.2,
            ))
        return findings


class CargoAuditTool(ExternalTool):
    NAME = "cargo-audit"
    LANGUAGES = frozenset({Language.RUST})

    def command(self) -> list[str]:
        return [self.settings.cargo_bin, "audit", "--json"]

    def parse(self, output: ToolOutput, parsed: ParsedData) -> list[Finding]:
        try:
            report = json.loads(output.stdout or "{}")
        except json.JSONDecodeError:
            logger.warning("cargo audit produced invalid JSON", extra={"tool": self.NAME})
            return []
        manifest = next((n for n in parsed.config_files if Path(n).name == "Cargo.toml"), "Cargo.toml")
        manifest_lines = parsed.config_files.get(manifest, "").split("\n")

        findings = []
        for vuln in (report.get("vulnerabilities") or {}).get("list") or []:
            advisory = vuln.get("advisory") or {}
            package = vuln.get("package") or {}
            name = package.get("name", "unknown")
            patched = (vuln.get("versions") or {}).get("patched") or []
            severity = Severity.parse(advisory.get("severity"), default=Severity.MEDIUM)
            if severity is Severity.INFORMATIONAL:
                severity = Severity.LOW
            line = next(
                (i + 1 for i, text in enumerate(manifest_lines) if re.match(rf"\s*{re.escape(name)}\s*=", text)),
                0,
            )
            findings.append(self._finding(
                f"cargo-audit-{advisory.get('id', name)}",
                title=f"Vulnerable dependency {name}: {advisory.get('title', '')}".strip(),
                description=advisory.get("description", ""),
                severity=severity,
                confidence=0.95,
                category="Dependency Vulnerability",
                location=Location(file=manifest, line=line),
                code=f"{name} {package.get('version', '')}".strip(),
                recommendation=(
                    f"Update {name} to {patched[0]}" if patched
                    else f"Replace {name}; no patched version is available"
                ),
                references=[advisory["url"]] if advisory.get("url") else [],
                exploitability=0.8,
            ))
        return findings


class MoveProverTool(ExternalTool):
    NAME = "move-prover"
    LANGUAGES = frozenset({Language.MOVE})

    @property
    def timeout(self) -> float:
        return self.settings.move_prover_timeout_seconds

    def command(self) -> list[str]:
        return [self.settings.move_bin, "prove"]

    def parse(self, output: ToolOutput, parsed: ParsedData) -> list[Finding]:
        lines = (output.stdout + "\n" + output.stderr).splitlines()
        findings = []
        for i, text in enumerate(lines):
            if "FAILED" not in text and "ERROR" not in text.upper().split(":")[0]:
                continue
            file, line = "", 0
            for follow in lines[i + 1:i + 4]:
                m = _PROVER_LOCATION_RE.search(follow)
                if m:
                    candidate = m.group("file").removeprefix("./")
                    if candidate in parsed.ast:
                        file, line = candidate, int(m.group("line"))
                    break
            findings.append(self._finding(
                f"move-prover-{file or 'project'}-{line or i}",
                title="Move Prover verification failure",
                description=text.strip(),
                severity=Severity.HIGH,
                confidence=0.95,
                category="Formal Verification",
                location=Location(file=file, line=line),
                code=snippet(parsed, file, line),
                recommendation="Fix the specification violation reported by the prover",
                cwe="CWE-697",
                exploitability=0.7,
            ))
        return findings


class SemgrepTool(ExternalTool):
    NAME = "semgrep"

    def command(self) -> list[str]:
        return [self.settings.semgrep_bin, "--config=auto", "--json", "--quiet", "."]

    def parse(self, output: ToolOutput, parsed: ParsedData) -> list[Finding]:
        try:
            report = json.loads(output.stdout or "{}")
        except json.JSONDecodeError:
            logger.warning("semgrep produced invalid JSON", extra={"tool": self.NAME})
            return []
        findings = []
        for result in report.get("results") or []:
            extra = result.get("extra") or {}
            file = str(result.get("path", "")).removeprefix("./")
            line = int((result.get("start") or {}).get("line") or 0) if file in parsed.ast else 0
            cwe_raw = (extra.get("metadata") or {}).get("cwe") or []
            if isinstance(cwe_raw, str):
                cwe_raw = [cwe_raw]
            cwe_match = _CWE_RE.search(" ".join(cwe_raw))
            check_id = result.get("check_id", "semgrep")
            findings.append(self._finding(
                f"semgrep-{check_id}-{file}-{line}",
                title=f"Semgrep: {check_id.split('.')[-1]}",
                description=extra.get("message", ""),
                severity=_SEMGREP_SEVERITY.get(str(extra.get("severity", "")).upper(), Severity.MEDIUM),
                confidence=0.8,
                category="Static Analysis",
                location=Location(file=file, line=line, column=(result.get("start") or {}).get("col")),
                code=str(extra.get("lines", "")).strip(),
                recommendation=extra.get("fix") or "Review the flagged code",
                cwe=cwe_match.group(0) if cwe_match else None,
                exploitability=0.6,
            ))
        return findings


# ── In-process scanner ───────────────────────────────────────────────────────


_BUILTIN_PATTERNS: list[dict[str, Any]] = [
    {
        "key": "unsafe-block", "languages": {Language.RUST},
        "pattern": re.compile(r"\bunsafe\s*\{"),
        "title": "Unsafe Block", "severity": Severity.HIGH, "confidence": 0.7,
        "category": "Pattern Matching", "cwe": "CWE-119", "exploitability": 0.4,
        "recommendation": "Remove the unsafe block or document and test its invariants",
    },
    {
        "key": "panic", "languages": {Language.RUST, Language.CAIRO},
        "pattern": re.compile(r"\bpanic!\s*\(|\bpanic\s*\(\s*array!"),
        "title": "Explicit Panic", "severity": Severity.MEDIUM, "confidence": 0.7,
        "category": "Pattern Matching", "cwe": "CWE-248", "exploitability": 0.4,
        "recommendation": "Return an error instead of panicking",
    },
    {
        "key": "todo", "languages": {Language.RUST, Language.CAIRO},
        "pattern": re.compile(r"\b(?:todo|unimplemented)!\s*\("),
        "title": "Unimplemented Code Path", "severity": Severity.LOW, "confidence": 0.7,
        "category": "Pattern Matching", "cwe": "CWE-561", "exploitability": 0.4,
        "recommendation": "Implement the code path before deployment",
    },
    {
        "key": "transmute", "languages": {Language.RUST},
        "pattern": re.compile(r"\btransmute\b"),
        "title": "Unsafe Transmute Usage", "severity": Severity.HIGH, "confidence": 0.8,
        "category": "Memory Safety", "cwe": "CWE-119", "exploitability": 0.7,
        "recommendation": "Use safe conversions (from_le_bytes, bytemuck, TryFrom) instead of transmute",
    },
    {
        "key": "cairo-assert-zero", "languages": {Language.CAIRO},
        "pattern": re.compile(r"\bassert\w*!?\s*\([^;\n]*(?:==\s*0\b|,\s*0\s*\))"),
        "title": "Potential Assert Zero", "severity": Severity.LOW, "confidence": 0.5,
        "category": "Assertion", "cwe": "CWE-617", "exploitability": 0.2,
        "recommendation": "Review the assertion; zero comparisons often guard uninitialized state",
    },
]
_MOVE_FROM_RE = re.compile(r"\bmove_from\s*<")
_MOVE_GUARD_RE = re.compile(r"\bassert!|\bexists\s*<")


class BuiltinPatternScanner(ExternalTool):
    """Line-level anti-pattern scan that needs no external binary."""

    NAME = "builtin-patterns"

    def command(self) -> list[str]:
        return []

    def available(self) -> bool:
        return True

    async def run(self, parsed: ParsedData) -> list[Finding]:
        return self.scan(parsed)

    def parse(self, output: ToolOutput, parsed: ParsedData) -> list[Finding]:
        return self.scan(parsed)

    def scan(self, parsed: ParsedData) -> list[Finding]:
        findings = []
        for file, entry in parsed.ast.items():
            original = entry.content.split("\n")
            masked = masked_lines(entry.content)
            for rule in _BUILTIN_PATTERNS:
                if parsed.language not in rule["languages"]:
                    continue
                for lineno, text in enumerate(masked, start=1):
                    if rule["pattern"].search(text):
                        findings.append(self._pattern_finding(rule, file, lineno, original[lineno - 1]))
            if parsed.language is Language.MOVE and not any(_MOVE_GUARD_RE.search(t) for t in masked):
                for lineno, text in enumerate(masked, start=1):
                    if _MOVE_FROM_RE.search(text):
                        findings.append(self._finding(
                            f"move-unvalidated-move-from-{file}-{lineno}",
                            title="Unvalidated move_from",
                            description="Resource is moved out with no existence or ownership assertion in the module.",
                            severity=Severity.MEDIUM,
                            confidence=0.7,
                            category="Resource Management",
                            location=Location(file=file, line=lineno),
                            code=original[lineno - 1].strip(),
                            recommendation="Assert `exists<T>(addr)` and the caller's authority before move_from",
                            cwe="CWE-20",
                            exploitability=0.5,
                        ))
        return findings

    def _pattern_finding(self, rule: dict[str, Any], file: str, line: int, code: str) -> Finding:
        return self._finding(
            f"pattern-{rule['key']}-{file}-{line}",
            title=rule["title"],
            description=f"{rule['title']} detected by pattern scan",
            severity=rule["severity"],
            confidence=rule["confidence"],
            category=rule["category"],
            location=Location(file=file, line=line),
            code=code.strip(),
            recommendation=rule["recommendation"],
            cwe=rule["cwe"],
            exploitability=rule["exploitability"],
        )


# ── Analyzer ─────────────────────────────────────────────────────────────────


DEFAULT_TOOLS: tuple[type[ExternalTool], ...] = (
    ClippyTool,
    CargoAuditTool,
    MoveProverTool,
    SemgrepTool,
    BuiltinPatternScanner,
)


class ExternalToolsAnalyzer(AnalyzerPlugin):
    """Runs every applicable tool concurrently, each in its own workspace."""

    NAME = "external-tools"
    KIND = AnalyzerKind.EXTERNAL

    def __init__(
        self,
        settings: Settings | None = None,
        runner: ToolRunner | None = None,
        tools: list[ExternalTool] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.runner = runner or ToolRunner()
        self.tools = tools if tools is not None else [
            tool_cls(self.settings, self.runner) for tool_cls in DEFAULT_TOOLS
        ]

    async def analyze(
        self,
        parsed: ParsedData,
        prior_findings: list[Finding] | None = None,
    ) -> list[Finding]:
        applicable = [
            t for t in self.tools
            if parsed.language in t.LANGUAGES and t.available()
        ]
        if not applicable:
            return []
        results = await asyncio.gather(
            *(self._run_tool(tool, parsed) for tool in applicable)
        )
        return [f for batch in results for f in batch]

    async def _run_tool(self, tool: ExternalTool, parsed: ParsedData) -> list[Finding]:
        try:
            return await tool.run(parsed)
        except Exception:
            logger.exception("External tool %s failed", tool.NAME, extra={"tool": tool.NAME})
            return []
