"""Result aggregation: merge analyzer output into one scored, ranked report."""

from __future__ import annotations

import logging
import re

from auditengine.core.config import Settings, get_settings
from auditengine.core.types import (
    AuditConfiguration,
    AuditMetadata,
    AuditReport,
    AuditResult,
    AuditSummary,
    Finding,
    GasOptimization,
    Language,
    ParsedData,
    Recommendations,
    ReportMetadata,
    SecurityScore,
    Severity,
    TargetContract,
    platform_for,
    risk_level,
    severity_counts,
)

logger = logging.getLogger(__name__)

_GAS_CATEGORIES = frozenset({"Gas Optimization", "Performance", "Efficiency"})
_GAS_SAVINGS = {
    "loop optimization": 1000,
    "storage optimization": 2000,
    "function optimization": 500,
    "arithmetic optimization": 200,
    "memory optimization": 800,
}
_EFFORT_KEYWORDS = {
    "low": ("replace", "change", "use"),
    "medium": ("refactor", "modify", "update"),
    "high": ("redesign", "rewrite", "restructure"),
}
_USE_RE = re.compile(r"\buse (.+)", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")

_BASE_PRACTICES = [
    "Follow secure coding guidelines for blockchain smart contracts",
    "Implement comprehensive unit and integration testing",
    "Use established security patterns and avoid known anti-patterns",
    "Conduct regular code reviews with security focus",
]
_LANGUAGE_PRACTICES = {
    Language.RUST: [
        "Use Rust's ownership system to prevent memory safety issues",
        "Leverage Cargo audit for dependency vulnerability scanning",
    ],
    Language.MOVE: [
        "Assert resource existence and signer authority before moving resources",
        "Use the Move Prover to specify and verify critical invariants",
    ],
    Language.CAIRO: [
        "Validate caller addresses with get_caller_address before privileged writes",
        "Prefer u256 and checked felt252 conversions for value arithmetic",
    ],
}
_BASE_IMPROVEMENTS = [
    "Integrate automated security scanning in CI/CD pipeline",
    "Implement runtime monitoring for anomaly detection",
    "Consider formal verification for critical functions",
]


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'s' if count > 1 else ''}"


class ResultAggregator:
    """Turns the combined finding list of one job into an AuditResult.

    Steps, in order:
    1. Threshold filtering (confidence and/or severity)
    2. Optional signature deduplication
    3. Ranking: severity, then exploitability, then confidence
    4. Summary counts, security score and risk level
    5. Recommendation buckets and gas optimizations
    6. Report assembly with run metadata

    Aggregation is a pure function of its inputs: the same findings and
    metadata always produce the same summary, score and report.
    """

    def __init__(self, settings: Settings | None = None, *, deduplicate: bool | None = None) -> None:
        self.settings = settings or get_settings()
        self.deduplicate = (
            self.settings.aggregator_deduplicate if deduplicate is None else deduplicate
        )

    def aggregate(
        self,
        findings: list[Finding],
        parsed: ParsedData | None,
        metadata: AuditMetadata,
        *,
        audit_id: str,
        project_id: str,
        project_name: str = "",
        declared_language: str = "",
        configuration: AuditConfiguration | None = None,
        status: str = "completed",
    ) -> AuditResult:
        selected = self.filter(findings, configuration)
        if self.deduplicate:
            selected = self.deduplicate_findings(selected)
        ranked = self.rank(selected)

        counts = severity_counts(ranked)
        score = SecurityScore.calculate(ranked)
        summary = AuditSummary(
            total_issues=len(ranked),
            critical=counts[Severity.CRITICAL],
            high=counts[Severity.HIGH],
            medium=counts[Severity.MEDIUM],
            low=counts[Severity.LOW],
            informational=counts[Severity.INFORMATIONAL],
            security_score=score.score,
            overall_risk_level=risk_level(counts),
            recommendation=self.overall_recommendation(counts),
        )
        gas = self.gas_optimizations(ranked)
        language = parsed.language if parsed is not None else _language_or_none(metadata.language)
        recommendations = self.recommendations(ranked, language, bool(gas))

        report = self.build_report(
            audit_id=audit_id,
            project_id=project_id,
            project_name=project_name,
            declared_language=declared_language,
            language=language,
            files=list(parsed.ast) if parsed is not None else [],
            summary=summary,
            findings=ranked,
            recommendations=recommendations,
            metadata=metadata,
        )
        logger.info(
            "Aggregated %d findings (score %.0f, risk %s)",
            len(ranked), summary.security_score, summary.overall_risk_level.value,
            extra={"job_id": audit_id, "stage": "aggregation", "findings": len(ranked)},
        )
        return AuditResult(
            audit_id=audit_id,
            project_id=project_id,
            status=status,
            summary=summary,
            findings=ranked,
            recommendations=recommendations,
            gas_optimizations=gas,
            metadata=metadata,
            report=report,
        )

    def failed(
        self,
        reason: str,
        metadata: AuditMetadata,
        *,
        audit_id: str,
        project_id: str,
        project_name: str = "",
        declared_language: str = "",
    ) -> AuditResult:
        """Result for a job whose input could not be preprocessed or parsed."""
        metadata = metadata.model_copy(update={"error": reason})
        summary = AuditSummary(security_score=0.0, recommendation=f"Audit failed: {reason}")
        recommendations = Recommendations(
            immediate_actions=[f"Resolve the input error and resubmit: {reason}"],
        )
        report = self.build_report(
            audit_id=audit_id,
            project_id=project_id,
            project_name=project_name,
            declared_language=declared_language,
            language=_language_or_none(metadata.language),
            files=[],
            summary=summary,
            findings=[],
            recommendations=recommendations,
            metadata=metadata,
        )
        return AuditResult(
            audit_id=audit_id,
            project_id=project_id,
            status="failed",
            summary=summary,
            findings=[],
            recommendations=recommendations,
            metadata=metadata,
            report=report,
        )

    # ── Filtering & ranking ──────────────────────────────────────────────

    def filter(self, findings: list[Finding], configuration: AuditConfiguration | None) -> list[Finding]:
        min_confidence = self.settings.default_confidence_threshold
        min_severity = None
        if configuration is not None:
            if configuration.confidence_threshold is not None:
                min_confidence = configuration.confidence_threshold
            min_severity = configuration.severity_threshold
        return [
            f for f in findings
            if (min_confidence is None or f.confidence >= min_confidence)
            and (min_severity is None or f.severity.weight >= min_severity.weight)
        ]

    @staticmethod
    def signature(finding: Finding) -> str:
        code = _WHITESPACE_RE.sub(" ", finding.code).strip().lower()
        return f"{finding.category}-{finding.location.file}-{finding.location.line}-{code}"

    def deduplicate_findings(self, findings: list[Finding]) -> list[Finding]:
        """Collapse findings with the same signature, keeping the highest confidence."""
        seen: dict[str, Finding] = {}
        for finding in findings:
            key = self.signature(finding)
            existing = seen.get(key)
            if existing is None:
                seen[key] = finding
            elif finding.confidence > existing.confidence:
                seen[key] = existing.model_copy(update={"confidence": finding.confidence})
        return list(seen.values())

    @staticmethod
    def rank(findings: list[Finding]) -> list[Finding]:
        return sorted(
            findings,
            key=lambda f: (f.severity.weight, f.exploitability, f.confidence),
            reverse=True,
        )

    # ── Recommendations ──────────────────────────────────────────────────

    @staticmethod
    def overall_recommendation(counts: dict[Severity, int]) -> str:
        critical = counts.get(Severity.CRITICAL, 0)
        high = counts.get(Severity.HIGH, 0)
        medium = counts.get(Severity.MEDIUM, 0)
        if critical:
            return f"URGENT: Fix {_plural(critical, 'critical issue')} immediately before any deployment."
        if high:
            return f"Fix {_plural(high, 'high severity issue')} before deployment. Review medium priority items."
        if medium:
            return f"Address {_plural(medium, 'medium severity issue')} to improve security posture."
        return "Code shows good security practices. Consider implementing suggested improvements."

    @staticmethod
    def recommendations(
        findings: list[Finding],
        language: Language | None,
        has_gas_optimizations: bool = False,
    ) -> Recommendations:
        critical = [f for f in findings if f.severity is Severity.CRITICAL]
        high = [f for f in findings if f.severity is Severity.HIGH]

        immediate: list[str] = []
        if critical:
            immediate.append(f"Address {len(critical)} critical vulnerability/vulnerabilities immediately")
            immediate.append("Halt deployment until critical issues are resolved")
        if high:
            immediate.append(f"Review and fix {len(high)} high severity issue(s)")
        if not immediate:
            immediate.append("Review medium and low priority findings")
            immediate.append("Implement recommended security improvements")

        fixes = [
            f"[{f.severity.value.upper()}] {f.title} at {f.location.file}:{f.location.line}"
            + (f": {f.recommendation}" if f.recommendation else "")
            for f in critical + high
        ]

        practices = list(_BASE_PRACTICES)
        if language is not None:
            practices.extend(_LANGUAGE_PRACTICES.get(language, []))

        improvements = list(_BASE_IMPROVEMENTS)
        if has_gas_optimizations:
            improvements.append("Implement gas optimization recommendations to reduce transaction costs")
        if critical or high:
            improvements.append("Establish regular third-party security audit schedule")

        return Recommendations(
            immediate_actions=immediate,
            high_priority_fixes=fixes,
            security_best_practices=practices,
            future_improvements=improvements,
        )

    # ── Gas optimizations ────────────────────────────────────────────────

    def gas_optimizations(self, findings: list[Finding]) -> list[GasOptimization]:
        optimizations = []
        for finding in findings:
            text = f"{finding.title} {finding.description}".lower()
            if finding.category not in _GAS_CATEGORIES and "gas" not in text:
                continue
            savings = next((v for k, v in _GAS_SAVINGS.items() if k in text), 0)
            if not savings:
                continue
            match = _USE_RE.search(finding.recommendation)
            optimizations.append(GasOptimization(
                id=f"gas-opt-{finding.id}",
                title=finding.title,
                description=finding.description,
                location=finding.location,
                original_code=finding.code,
                optimized_code=match.group(1) if match else finding.code,
                gas_savings=savings,
                effort=self._effort(finding),
            ))
        return optimizations

    @staticmethod
    def _effort(finding: Finding) -> str:
        text = finding.recommendation.lower()
        for effort, keywords in _EFFORT_KEYWORDS.items():
            if any(k in text for k in keywords):
                return effort
        if finding.severity in (Severity.CRITICAL, Severity.HIGH):
            return "high"
        return "medium" if finding.severity is Severity.MEDIUM else "low"

    # ── Report ───────────────────────────────────────────────────────────

    def build_report(
        self,
        *,
        audit_id: str,
        project_id: str,
        project_name: str,
        declared_language: str,
        language: Language | None,
        files: list[str],
        summary: AuditSummary,
        findings: list[Finding],
        recommendations: Recommendations,
        metadata: AuditMetadata,
    ) -> AuditReport:
        audited_at = metadata.audited_at
        return AuditReport(
            report_metadata=ReportMetadata(
                report_id=f"AUDIT-{audited_at.year}-{audit_id[-4:].upper()}",
                platform=platform_for(declared_language, language),
                language=language.display_name if language is not None else declared_language,
                auditor=self.settings.report_auditor,
                audit_date=audited_at.isoformat(),
                version=self.settings.report_version,
                target_contract=TargetContract(
                    name=project_name or project_id,
                    files=[f.replace("\\", "/") for f in files],
                    total_lines=metadata.lines_of_code,
                    complexity_score=metadata.complexity,
                ),
            ),
            summary=summary,
            findings=[f.model_dump(mode="json", exclude={"source", "metadata"}) for f in findings],
            recommendations=recommendations,
        )


def _language_or_none(value: str) -> Language | None:
    try:
        return Language.resolve(value)
    except ValueError:
        return None
