"""Tests for result aggregation: filtering, scoring, ranking and reports."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from auditengine.core.types import (
    AuditConfiguration,
    AuditMetadata,
    Language,
    RiskLevel,
    Severity,
)
from auditengine.pipeline.aggregator import ResultAggregator

from conftest import make_finding


def _metadata(**fields) -> AuditMetadata:
    fields.setdefault("audited_at", datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    fields.setdefault("language", "rust")
    return AuditMetadata(**fields)


def _aggregate(aggregator, findings, parsed=None, configuration=None, **kwargs):
    kwargs.setdefault("audit_id", "job-abcdef12")
    kwargs.setdefault("project_id", "vault")
    return aggregator.aggregate(
        findings, parsed, kwargs.pop("metadata", _metadata()),
        configuration=configuration, **kwargs,
    )


@pytest.fixture
def aggregator(settings) -> ResultAggregator:
    return ResultAggregator(settings)


class TestScoring:
    def test_score_and_counts(self, aggregator, rust_parsed):
        findings = [
            make_finding("c", Severity.CRITICAL),
            make_finding("h", Severity.HIGH),
            make_finding("m", Severity.MEDIUM),
        ]
        result = _aggregate(aggregator, findings, rust_parsed)
        summary = result.summary
        assert summary.security_score == 52.0
        assert (summary.critical, summary.high, summary.medium, summary.low) == (1, 1, 1, 0)
        assert summary.total_issues == len(result.findings) == 3
        assert summary.overall_risk_level is RiskLevel.CRITICAL
        assert summary.recommendation.startswith("URGENT: Fix 1 critical issue immediately")

    def test_no_findings(self, aggregator, rust_parsed):
        summary = _aggregate(aggregator, [], rust_parsed).summary
        assert summary.security_score == 100.0
        assert summary.overall_risk_level is RiskLevel.LOW
        assert "good security practices" in summary.recommendation

    def test_score_floors_at_zero(self, aggregator):
        findings = [make_finding(f"c{i}", Severity.CRITICAL) for i in range(5)]
        assert _aggregate(aggregator, findings).summary.security_score == 0.0

    @pytest.mark.parametrize("severities,expected", [
        ([Severity.HIGH] * 3, RiskLevel.HIGH),
        ([Severity.HIGH] * 2, RiskLevel.MEDIUM),
        ([Severity.MEDIUM] * 5, RiskLevel.MEDIUM),
        ([Severity.MEDIUM] * 4 + [Severity.LOW] * 10, RiskLevel.LOW),
    ])
    def test_risk_levels(self, aggregator, severities, expected):
        findings = [make_finding(f"f{i}", sev) for i, sev in enumerate(severities)]
        assert _aggregate(aggregator, findings).summary.overall_risk_level is expected

    def test_idempotent(self, aggregator, rust_parsed):
        findings = [make_finding("a", Severity.HIGH), make_finding("b", Severity.LOW, line=3)]
        metadata = _metadata()
        first = _aggregate(aggregator, findings, rust_parsed, metadata=metadata)
        second = _aggregate(aggregator, findings, rust_parsed, metadata=metadata)
        assert first.model_dump() == second.model_dump()


class TestFilteringAndRanking:
    def test_confidence_threshold(self, aggregator):
        findings = [make_finding("lo", confidence=0.3), make_finding("hi", confidence=0.9)]
        result = _aggregate(aggregator, findings, configuration=AuditConfiguration(confidence_threshold=0.5))
        assert [f.id for f in result.findings] == ["hi"]
        assert result.summary.total_issues == 1

    def test_severity_threshold(self, aggregator):
        findings = [make_finding("l", Severity.LOW), make_finding("h", Severity.HIGH)]
        configuration = AuditConfiguration(severity_threshold=Severity.MEDIUM)
        assert [f.id for f in _aggregate(aggregator, findings, configuration=configuration).findings] == ["h"]

    def test_settings_default_threshold(self, settings):
        strict = ResultAggregator(settings.model_copy(update={"default_confidence_threshold": 0.6}))
        findings = [make_finding("lo", confidence=0.5), make_finding("hi", confidence=0.7)]
        assert [f.id for f in _aggregate(strict, findings).findings] == ["hi"]
        # A per-request threshold overrides the settings default
        lenient = AuditConfiguration(confidence_threshold=0.1)
        assert len(_aggregate(strict, findings, configuration=lenient).findings) == 2

    def test_rank_by_severity_then_exploitability_then_confidence(self, aggregator):
        findings = [
            make_finding("low", Severity.LOW),
            make_finding("high-a", Severity.HIGH, exploitability=0.2, confidence=0.9),
            make_finding("high-b", Severity.HIGH, exploitability=0.8, confidence=0.1),
            make_finding("high-c", Severity.HIGH, exploitability=0.8, confidence=0.5),
            make_finding("crit", Severity.CRITICAL),
        ]
        ranked = [f.id for f in _aggregate(aggregator, findings).findings]
        assert ranked == ["crit", "high-c", "high-b", "high-a", "low"]

    def test_no_dedup_by_default(self, aggregator):
        findings = [
            make_finding("a", category="Arithmetic Safety", code="a + b"),
            make_finding("b", category="Arithmetic Safety", code="a + b"),
        ]
        assert len(_aggregate(aggregator, findings).findings) == 2

    def test_dedup_keeps_highest_confidence(self, settings):
        aggregator = ResultAggregator(settings, deduplicate=True)
        findings = [
            make_finding("static", category="Arithmetic Safety", code="let x = a + b;", confidence=0.7),
            make_finding("ai", category="Arithmetic Safety", code="let  x = A + b;", confidence=0.9),
            make_finding("other-line", category="Arithmetic Safety", line=11, code="let x = a + b;"),
        ]
        result = _aggregate(aggregator, findings)
        assert [f.id for f in result.findings] == ["static", "other-line"]
        assert result.findings[0].confidence == 0.9
        assert findings[0].confidence == 0.7

    def test_dedup_enabled_by_settings(self, settings):
        aggregator = ResultAggregator(settings.model_copy(update={"aggregator_deduplicate": True}))
        assert aggregator.deduplicate


class TestReport:
    def test_report_metadata(self, aggregator, rust_parsed):
        metadata = _metadata(lines_of_code=40, complexity=12)
        result = _aggregate(
            aggregator, [make_finding()], rust_parsed, metadata=metadata,
            audit_id="3f2a-9c1d", project_name="Vault", declared_language="Solana (Rust)",
        )
        meta = result.report.report_metadata
        assert meta.report_id == "AUDIT-2026-9C1D"
        assert meta.platform == "Solana"
        assert meta.language == "Rust"
        assert meta.audit_date == "2026-03-01T12:00:00+00:00"
        assert meta.target_contract.name == "Vault"
        assert meta.target_contract.files == ["src/lib.rs"]
        assert meta.target_contract.total_lines == 40
        assert meta.target_contract.complexity_score == 12

    def test_platform_defaults_by_language(self, aggregator, move_parsed):
        result = _aggregate(aggregator, [], move_parsed, metadata=_metadata(language="move"))
        assert result.report.report_metadata.platform == "Aptos"
        assert result.report.report_metadata.target_contract.name == "vault"

    def test_report_findings_exclude_internal_fields(self, aggregator):
        result = _aggregate(aggregator, [make_finding(source="static", metadata={"rule_id": "x"})])
        entry = result.report.findings[0]
        assert "source" not in entry and "metadata" not in entry
        assert entry["severity"] == "medium"
        assert entry["location"]["file"] == "src/lib.rs"
        assert result.findings[0].source == "static"

    def test_recommendations(self, aggregator, rust_parsed):
        findings = [
            make_finding("c", Severity.CRITICAL, title="Reentrancy", recommendation="Update state first"),
            make_finding("h", Severity.HIGH, title="Overflow", line=4),
        ]
        recs = _aggregate(aggregator, findings, rust_parsed).recommendations
        assert recs.immediate_actions[0].startswith("Address 1 critical")
        assert "Halt deployment until critical issues are resolved" in recs.immediate_actions
        assert recs.high_priority_fixes == [
            "[CRITICAL] Reentrancy at src/lib.rs:10: Update state first",
            "[HIGH] Overflow at src/lib.rs:4",
        ]
        assert any("Cargo audit" in p for p in recs.security_best_practices)
        assert "Establish regular third-party security audit schedule" in recs.future_improvements

    def test_recommendations_without_serious_findings(self, aggregator):
        recs = ResultAggregator.recommendations([make_finding()], Language.CAIRO)
        assert recs.immediate_actions[0] == "Review medium and low priority findings"
        assert recs.high_priority_fixes == []
        assert any("get_caller_address" in p for p in recs.security_best_practices)

    def test_gas_optimizations(self, aggregator):
        findings = [
            make_finding(
                "g", Severity.LOW, category="Gas Optimization",
                title="Storage optimization", code="self.total.read()",
                recommendation="Use a local variable for the cached total",
            ),
            make_finding("n", Severity.LOW, category="Gas Optimization", title="Unclassified"),
        ]
        result = _aggregate(aggregator, findings)
        assert len(result.gas_optimizations) == 1
        gas = result.gas_optimizations[0]
        assert gas.id == "gas-opt-g"
        assert gas.gas_savings == 2000
        assert gas.optimized_code == "a local variable for the cached total"
        assert gas.effort == "low"
        assert "Implement gas optimization recommendations to reduce transaction costs" in (
            result.recommendations.future_improvements
        )

    def test_failed_result(self, aggregator):
        result = aggregator.failed(
            "No Rust source files (.rs) in submission",
            _metadata(),
            audit_id="job-0001",
            project_id="vault",
        )
        assert result.status == "failed"
        assert result.findings == []
        assert result.summary.security_score == 0.0
        assert result.summary.recommendation == "Audit failed: No Rust source files (.rs) in submission"
        assert result.metadata.error == "No Rust source files (.rs) in submission"
        assert result.report.report_metadata.report_id == "AUDIT-2026-0001"
        assert result.report.report_metadata.platform == "Solana"

    def test_cancelled_status_passed_through(self, aggregator):
        assert _aggregate(aggregator, [], status="cancelled").status == "cancelled"
