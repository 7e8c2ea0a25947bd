"""Base rule class: every static analysis rule inherits from this."""

from __future__ import annotations

import abc
import re
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from auditengine.analyzer.parser.extractor import mask_source
from auditengine.core.types import (
    Finding,
    FunctionInfo,
    Language,
    Location,
    ParsedData,
    Severity,
)

# Plain or compound assignment to an existing place (not `let`, not a comparison)
ASSIGN_RE = re.compile(
    r"^\s*(?!let\b|const\b|static\b|if\b|while\b|return\b)[\w.\[\]()*&:]+\s*"
    r"(?:[+\-*/%|&^]|<<|>>)?=(?![=>])"
)
COMPARISON_RE = re.compile(r"[<>]=?|==|!=")


@lru_cache(maxsize=256)
def masked_lines(content: str) -> tuple[str, ...]:
    """Lines of `content` with comments and string contents blanked out."""
    return tuple(mask_source(content).split("\n"))


@dataclass
class FunctionView:
    """A function together with its original and masked source lines."""
    fn: FunctionInfo
    lines: list[str]
    masked: list[str]

    def body(self) -> Iterator[tuple[int, str, str]]:
        """(line number, original, masked) for each line after the signature."""
        for lineno in range(self.fn.start_line + 1, self.fn.end_line + 1):
            if lineno > len(self.lines):
                break
            yield lineno, self.lines[lineno - 1], self.masked[lineno - 1]

    def window(self, size: int) -> list[tuple[int, str, str]]:
        """Declaration line plus up to `size` lines, stopping at the function end."""
        end = min(self.fn.start_line + size, self.fn.end_line, len(self.lines))
        return [
            (n, self.lines[n - 1], self.masked[n - 1])
            for n in range(self.fn.start_line, end + 1)
        ]

    @property
    def is_test(self) -> bool:
        if self.fn.name.startswith("test_"):
            return True
        above = self.lines[max(0, self.fn.start_line - 3):self.fn.start_line - 1]
        return any("#[test" in line for line in above)


class BaseRule(abc.ABC):
    """Abstract base class for static analysis rules.

    Each rule implements `check()`, which receives the parsed project and
    returns findings. A rule with nothing to report returns an empty list;
    it should only raise on genuinely unexpected input.

    Rule metadata:
        - RULE_ID: Stable identifier, also used in the YAML rule config
        - NAME: Human-readable rule name
        - SEVERITY / CONFIDENCE: Defaults, overridable per registry
        - CATEGORY, CWE, EXPLOITABILITY, RECOMMENDATION: Copied onto findings
        - LANGUAGES: Dialects the rule applies to
    """

    RULE_ID: str = ""
    NAME: str = ""
    DESCRIPTION: str = ""
    SEVERITY: Severity = Severity.MEDIUM
    CATEGORY: str = ""
    CONFIDENCE: float = 0.7
    CWE: str = ""
    EXPLOITABILITY: float = 0.5
    RECOMMENDATION: str = ""
    LANGUAGES: frozenset[Language] = frozenset(Language)

    def __init__(self, severity: Severity | None = None, confidence: float | None = None) -> None:
        self.severity = severity or self.SEVERITY
        self.confidence = self.CONFIDENCE if confidence is None else confidence

    @abc.abstractmethod
    def check(self, parsed: ParsedData) -> list[Finding]:
        ...

    def applies_to(self, language: Language) -> bool:
        return language in self.LANGUAGES

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    def functions(parsed: ParsedData) -> Iterator[FunctionView]:
        for fn in parsed.functions:
            entry = parsed.ast.get(fn.file)
            if entry is None:
                continue
            yield FunctionView(fn, entry.content.split("\n"), list(masked_lines(entry.content)))

    def _make_finding(
        self,
        file: str,
        line: int,
        code: str,
        *,
        title: str | None = None,
        description: str | None = None,
        severity: Severity | None = None,
        confidence: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Finding:
        """Create a Finding carrying this rule's metadata."""
        return Finding(
            id=f"{self.RULE_ID}-{file}-{line}",
            title=title or self.NAME,
            description=description or self.DESCRIPTION,
            severity=severity or self.severity,
            confidence=confidence if confidence is not None else self.confidence,
            category=self.CATEGORY,
            location=Location(file=file, line=line),
            code=code.strip(),
            recommendation=self.RECOMMENDATION,
            references=[f"https://cwe.mitre.org/data/definitions/{self.CWE.split('-')[-1]}.html"]
            if self.CWE else [],
            cwe=self.CWE or None,
            exploitability=self.EXPLOITABILITY,
            source="static",
            metadata={"rule_id": self.RULE_ID, **(metadata or {})},
        )
