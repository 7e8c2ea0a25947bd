"""Tests for auditengine.core.types: enums, findings, requests and scoring."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from auditengine.core.types import (
    STAGE_ORDER,
    AnalyzerKind,
    AuditConfiguration,
    AuditRequest,
    Finding,
    JobStatus,
    Language,
    Location,
    RiskLevel,
    SecurityScore,
    Severity,
    StageName,
    UnsupportedLanguageError,
    clamp_unit,
    platform_for,
    risk_level,
    severity_counts,
)

from conftest import make_finding


class TestSeverity:
    def test_weights_ordered(self):
        assert Severity.CRITICAL.weight == 4
        assert Severity.HIGH.weight == 3
        assert Severity.MEDIUM.weight == 2
        assert Severity.LOW.weight == 1
        assert Severity.INFORMATIONAL.weight == 0

    @pytest.mark.parametrize("raw,expected", [
        ("High", Severity.HIGH),
        ("CRITICAL", Severity.CRITICAL),
        ("info", Severity.INFORMATIONAL),
        ("note", Severity.INFORMATIONAL),
        (Severity.LOW, Severity.LOW),
    ])
    def test_parse_lenient(self, raw, expected):
        assert Severity.parse(raw) is expected

    def test_parse_unknown_uses_default(self):
        assert Severity.parse("catastrophic") is None
        assert Severity.parse(None, default=Severity.MEDIUM) is Severity.MEDIUM


class TestLanguage:
    @pytest.mark.parametrize("declared,expected", [
        ("rust", Language.RUST),
        ("Solana (Rust)", Language.RUST),
        ("Aptos (Move)", Language.MOVE),
        ("Sui Move", Language.MOVE),
        ("StarkNet (Cairo)", Language.CAIRO),
    ])
    def test_resolve(self, declared, expected):
        assert Language.resolve(declared) is expected

    def test_resolve_unsupported(self):
        with pytest.raises(UnsupportedLanguageError):
            Language.resolve("solidity")

    def test_extensions(self):
        assert Language.RUST.extensions == (".rs",)
        assert Language.MOVE.extensions == (".move",)
        assert Language.CAIRO.extensions == (".cairo",)

    def test_platform_from_declared_string(self):
        assert platform_for("Sui (Move)", Language.MOVE) == "Sui"
        assert platform_for("NEAR rust", Language.RUST) == "Near"

    def test_platform_defaults_per_language(self):
        assert platform_for("rust", Language.RUST) == "Solana"
        assert platform_for("move", Language.MOVE) == "Aptos"
        assert platform_for("cairo", Language.CAIRO) == "StarkNet"
        assert platform_for("", None) == "Multi-Chain"


class TestStages:
    def test_stage_order_fixed(self):
        assert [s.value for s in STAGE_ORDER] == [
            "preprocessing",
            "parsing",
            "static_analysis",
            "semantic_analysis",
            "ai_analysis",
            "external_tools",
            "aggregation",
        ]
        assert StageName.AGGREGATION.position == 6

    def test_every_stage_has_a_job_status(self):
        for stage in StageName:
            assert JobStatus(stage.value)

    def test_terminal_statuses(self):
        terminal = {s for s in JobStatus if s.is_terminal}
        assert terminal == {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


class TestFinding:
    @pytest.mark.parametrize("raw,expected", [
        (1.7, 1.0),
        (-0.2, 0.0),
        ("0.4", 0.4),
        ("nope", 0.5),
        (float("nan"), 0.5),
    ])
    def test_scores_clamped(self, raw, expected):
        f = Finding(id="x", title="t", confidence=raw, exploitability=raw)
        assert f.confidence == expected
        assert f.exploitability == expected

    def test_clamped_on_assignment(self):
        f = Finding(id="x", title="t")
        f.confidence = 3
        assert f.confidence == 1.0

    def test_severity_defaults_to_medium_when_unknown(self):
        assert Finding(id="x", title="t", severity="whatever").severity is Severity.MEDIUM

    def test_negative_line_becomes_zero(self):
        assert Location(file="a.rs", line=-3).line == 0
        assert clamp_unit(None, default=0.2) == 0.2


class TestAuditRequest:
    def test_accepts_camel_case(self):
        req = AuditRequest.model_validate({
            "projectId": "p1",
            "language": "Aptos (Move)",
            "files": [{"fileName": "sources/a.move", "content": "module 0x1::a {}"}],
            "configuration": {"aiAnalysisEnabled": False, "confidenceThreshold": 0.6},
        })
        assert req.project_id == "p1"
        assert req.resolved_language is Language.MOVE
        assert req.files[0].byte_size == len("module 0x1::a {}")
        assert req.configuration.ai_analysis_enabled is False
        assert req.configuration.confidence_threshold == 0.6

    def test_unknown_keys_not_carried(self):
        req = AuditRequest.model_validate({
            "projectId": "p1",
            "language": "rust",
            "files": [{"fileName": "src/lib.rs", "content": ""}],
            "priority": 9,
        })
        assert "priority" not in req.model_dump()

    def test_rejects_unsupported_language(self):
        with pytest.raises(ValidationError):
            AuditRequest(project_id="p", language="vyper", files=[{"file_name": "a.vy", "content": ""}])

    def test_rejects_empty_file_list(self):
        with pytest.raises(ValidationError):
            AuditRequest(project_id="p", language="rust", files=[])

    def test_threshold_out_of_range(self):
        with pytest.raises(ValidationError):
            AuditConfiguration(confidence_threshold=1.2)

    def test_unknown_analyzer_rejected(self):
        with pytest.raises(ValidationError):
            AuditConfiguration(enabled_analyzers=["static", "fuzzing"])


class TestAuditConfiguration:
    def test_static_always_enabled(self):
        config = AuditConfiguration(enabled_analyzers=[AnalyzerKind.AI])
        assert config.is_enabled(AnalyzerKind.STATIC)

    def test_enabled_analyzers_list(self):
        config = AuditConfiguration(enabled_analyzers=[AnalyzerKind.SEMANTIC])
        assert config.is_enabled(AnalyzerKind.SEMANTIC)
        assert not config.is_enabled(AnalyzerKind.AI)
        assert not config.is_enabled(AnalyzerKind.EXTERNAL)

    def test_boolean_switches(self):
        config = AuditConfiguration(ai_analysis_enabled=False, external_tools_enabled=False)
        assert config.is_enabled(AnalyzerKind.SEMANTIC)
        assert not config.is_enabled(AnalyzerKind.AI)
        assert not config.is_enabled(AnalyzerKind.EXTERNAL)

    def test_both_styles_must_agree(self):
        config = AuditConfiguration(enabled_analyzers=[AnalyzerKind.AI], ai_analysis_enabled=False)
        assert not config.is_enabled(AnalyzerKind.AI)


class TestScoring:
    def test_score_one_critical_high_medium(self):
        findings = [
            make_finding("a", Severity.CRITICAL),
            make_finding("b", Severity.HIGH),
            make_finding("c", Severity.MEDIUM),
        ]
        score = SecurityScore.calculate(findings)
        assert score.score == 52
        assert score.breakdown == {"critical": 1, "high": 1, "medium": 1}

    def test_score_clamped_at_zero(self):
        findings = [make_finding(str(i), Severity.CRITICAL) for i in range(5)]
        assert SecurityScore.calculate(findings).score == 0

    def test_no_findings_perfect_score(self):
        assert SecurityScore.calculate([]).score == 100

    def test_informational_deducts_one(self):
        assert SecurityScore.calculate([make_finding("i", Severity.INFORMATIONAL)]).score == 99

    @pytest.mark.parametrize("counts,expected", [
        ({Severity.CRITICAL: 1}, RiskLevel.CRITICAL),
        ({Severity.HIGH: 3}, RiskLevel.HIGH),
        ({Severity.HIGH: 2, Severity.MEDIUM: 4}, RiskLevel.MEDIUM),
        ({Severity.MEDIUM: 5}, RiskLevel.MEDIUM),
        ({Severity.MEDIUM: 4, Severity.LOW: 10}, RiskLevel.LOW),
        ({}, RiskLevel.LOW),
    ])
    def test_risk_level(self, counts, expected):
        assert risk_level(counts) is expected

    def test_severity_counts_has_every_level(self):
        counts = severity_counts([make_finding("a", Severity.LOW)])
        assert set(counts) == set(Severity)
        assert counts[Severity.LOW] == 1
