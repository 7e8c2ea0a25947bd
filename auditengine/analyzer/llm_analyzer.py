"""LLM-powered analysis: model-detected business logic and cross-file issues.

Passes (run concurrently, bounded by `llm_max_concurrent`):
  per-file       one call per source file
  cross-file     all files together, only for multi-file projects
  business-logic function signatures and imports, no bodies
  verification   prior high/critical findings, asks for root causes and
                 related issues the other analyzers missed

Every call is independently time-bounded; a failed, timed-out or
unparseable call contributes no findings and never fails the stage.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from auditengine.analyzer.base import AnalyzerPlugin
from auditengine.core.config import Settings, get_settings
from auditengine.core.llm_client import LLMClient
from auditengine.core.types import (
    AnalyzerKind,
    Finding,
    Location,
    ParsedData,
    Severity,
    clamp_unit,
)

logger = logging.getLogger(__name__)


# ── Prompt templates ─────────────────────────────────────────────────────────

_FINDING_FORMAT = """\
Return JSON:
{
  "findings": [
    {
      "title": "...",
      "description": "Explanation of the issue and how it is exploited",
      "severity": "critical|high|medium|low|informational",
      "confidence": 0.8,
      "category": "...",
      "file": "path/as/given",
      "line": 42,
      "code": "vulnerable code",
      "recommendation": "How to fix",
      "references": ["..."],
      "cwe": "CWE-...",
      "exploitability": 0.6
    }
  ]
}
Return an empty findings list when nothing is exploitable."""

_FILE_SYSTEM = """\
You are an expert {language} smart contract security auditor. Analyze the \
source file for vulnerabilities: access control gaps, arithmetic errors, \
reentrancy, missing account/resource validation, unchecked results, and \
business logic flaws. Report only issues you can tie to specific lines.

""" + _FINDING_FORMAT

_CROSS_FILE_SYSTEM = """\
You are an expert smart contract security auditor. Analyze this multi-file \
project for issues that only appear across file boundaries: cross-module \
reentrancy, inconsistent access control, state synchronization, privilege \
escalation through module interaction. Limit to the most critical issues.

""" + _FINDING_FORMAT

_BUSINESS_LOGIC_SYSTEM = """\
You are a smart contract auditor specializing in business logic. From the \
function signatures and imports below, identify missing authorization, \
economic logic flaws, time-based manipulation, oracle/flash-loan exposure \
and admin privilege abuse that could lead to financial loss.

""" + _FINDING_FORMAT

_VERIFICATION_SYSTEM = """\
You are an expert smart contract auditor. Other analyzers reported the \
high-severity findings below. Determine root causes, related attack vectors \
and exploitation chains they imply, and report any additional issues.

""" + _FINDING_FORMAT


class LLMAnalyzer(AnalyzerPlugin):
    """External-model analyzer behind the shared plugin contract."""

    NAME = "ai-analyzer"
    KIND = AnalyzerKind.AI

    def __init__(self, settings: Settings | None = None, client: LLMClient | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> LLMClient | None:
        if self._client is None and self.settings.llm_configured:
            self._client = LLMClient(self.settings)
        return self._client

    async def analyze(
        self,
        parsed: ParsedData,
        prior_findings: list[Finding] | None = None,
    ) -> list[Finding]:
        client = self.client
        if client is None:
            logger.warning("No LLM API key configured, skipping AI analysis")
            return []

        language = parsed.language.display_name
        limit = self.settings.llm_max_file_chars
        calls: list[tuple[str, str, str]] = []

        for file_name, entry in parsed.ast.items():
            calls.append((
                file_name,
                _FILE_SYSTEM.replace("{language}", language),
                f"## Project: {parsed.project_id}\n## File: {file_name}\n"
                f"```{parsed.language.value}\n{_truncate(entry.content, limit)}\n```",
            ))

        if len(parsed.ast) > 1:
            joined = "\n\n---\n\n".join(
                f"File: {name}\n{entry.content}" for name, entry in parsed.ast.items()
            )
            calls.append((
                "cross-file-analysis",
                _CROSS_FILE_SYSTEM,
                f"## Project: {parsed.project_id} ({language})\n\n{_truncate(joined, limit * 2)}",
            ))

        if parsed.functions:
            signatures = [
                {"name": f.name, "visibility": f.visibility.value,
                 "parameters": f.parameters, "file": f.file, "line": f.start_line}
                for f in parsed.functions
            ]
            calls.append((
                "business-logic-analysis",
                _BUSINESS_LOGIC_SYSTEM,
                f"## Project: {parsed.project_id} ({language})\n\n"
                f"## Functions\n{json.dumps(signatures, indent=2)}\n\n"
                f"## Imports\n{json.dumps([i.model_dump() for i in parsed.imports], indent=2)}",
            ))

        serious = [
            f for f in prior_findings or []
            if f.severity in (Severity.CRITICAL, Severity.HIGH)
        ]
        if serious:
            listing = "\n".join(
                f"- [{f.severity.value.upper()}] {f.title}: {f.description[:160]} "
                f"({f.location.file}:{f.location.line})"
                for f in serious[:20]
            )
            calls.append((
                "enhanced-analysis",
                _VERIFICATION_SYSTEM,
                f"## Project: {parsed.project_id} ({language})\n\n## Findings\n{listing}",
            ))

        semaphore = asyncio.Semaphore(max(1, self.settings.llm_max_concurrent))

        async def _one(tag: str, system: str, user: str) -> list[Finding]:
            async with semaphore:
                try:
                    response = await asyncio.wait_for(
                        client.analyze(
                            system, user,
                            temperature=self.settings.llm_temperature,
                            max_tokens=self.settings.llm_max_tokens,
                        ),
                        timeout=self.settings.llm_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    logger.warning("LLM pass %s timed out", tag, extra={"analyzer": self.NAME})
                    return []
                except Exception as e:
                    logger.warning("LLM pass %s failed: %s", tag, e, extra={"analyzer": self.NAME})
                    return []
            return self.parse_response(response, tag, parsed)

        results = await asyncio.gather(*(_one(*c) for c in calls))
        findings = [f for batch in results for f in batch]
        logger.info("AI analysis found %d potential issues", len(findings))
        return findings

    @staticmethod
    def parse_response(response: dict[str, Any], tag: str, parsed: ParsedData) -> list[Finding]:
        """Validate and default raw model output into Findings."""
        if not isinstance(response, dict) or response.get("parse_error"):
            logger.warning("Unparseable LLM response for %s", tag)
            return []
        items = response.get("findings", response.get("items"))
        if items is None and "title" in response:
            items = [response]
        if not isinstance(items, list):
            return []

        findings: list[Finding] = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                continue
            file = tag if tag in parsed.ast else str(item.get("file") or "")
            if file not in parsed.ast:
                file, line = tag, 0
            else:
                line = _as_int(item.get("line"))
                if line > parsed.line_count(file):
                    line = 0
            references = item.get("references") or []
            findings.append(Finding(
                id=str(item.get("id") or f"ai-{tag}-{index}"),
                title=str(item.get("title") or "AI-Detected Issue"),
                description=str(item.get("description") or "Issue detected by AI analysis"),
                severity=Severity.parse(item.get("severity"), default=Severity.MEDIUM),
                confidence=clamp_unit(item.get("confidence")),
                category=str(item.get("category") or "AI Analysis"),
                location=Location(file=file, line=line),
                code=str(item.get("code") or ""),
                recommendation=str(
                    item.get("recommendation")
                    or "Review the identified issue and implement appropriate fixes"
                ),
                references=[str(r) for r in references] if isinstance(references, list) else [],
                cwe=str(item["cwe"]) if item.get("cwe") else None,
                exploitability=clamp_unit(item.get("exploitability")),
                source="ai",
                metadata={"pass": tag},
            ))
        return findings


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n// ... truncated for analysis ..."


def _as_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0
