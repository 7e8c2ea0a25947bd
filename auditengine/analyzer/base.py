"""Analyzer plugin contract shared by all four analyzer kinds."""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass, field

from auditengine.core.types import AnalyzerKind, Finding, ParsedData

logger = logging.getLogger(__name__)


class AnalyzerPlugin(abc.ABC):
    """Base class for analyzers that run against a ParsedData snapshot.

    Implementations read only the snapshot and `prior_findings`, and return
    their own list of findings. They may raise; the pipeline isolates each
    plugin with `run_isolated` so a failure costs only that plugin's output.
    """

    NAME: str = ""
    KIND: AnalyzerKind = AnalyzerKind.STATIC

    @abc.abstractmethod
    async def analyze(
        self,
        parsed: ParsedData,
        prior_findings: list[Finding] | None = None,
    ) -> list[Finding]:
        ...


@dataclass
class PluginOutcome:
    """What one plugin run produced, including a swallowed error if any."""
    analyzer: str
    findings: list[Finding] = field(default_factory=list)
    error: str | None = None
    duration_ms: float = 0.0


async def run_isolated(
    plugin: AnalyzerPlugin,
    parsed: ParsedData,
    prior_findings: list[Finding] | None = None,
    *,
    job_id: str | None = None,
) -> PluginOutcome:
    """Run a plugin, converting any exception into an empty outcome.

    Cancellation is not an Exception and propagates to the caller.
    """
    start = time.monotonic()
    try:
        findings = await plugin.analyze(parsed, prior_findings)
        error = None
    except Exception as e:
        logger.exception(
            "Analyzer %s failed, continuing without its findings", plugin.NAME,
            extra={"job_id": job_id, "analyzer": plugin.NAME},
        )
        findings, error = [], f"{type(e).__name__}: {e}"
    duration_ms = round((time.monotonic() - start) * 1000, 2)
    return PluginOutcome(plugin.NAME, list(findings), error, duration_ms)


def snippet(parsed: ParsedData, file: str, line: int, context: int = 0) -> str:
    """Source text around a 1-based line (empty for line 0 / unknown files)."""
    lines = parsed.lines(file)
    if line < 1 or line > len(lines):
        return ""
    start = max(0, line - 1 - context)
    return "\n".join(lines[start:line + context]).strip()
