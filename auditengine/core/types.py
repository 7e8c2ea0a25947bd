"""Shared enums and types used across the engine."""

from __future__ import annotations

import enum
import math
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────


class Severity(str, enum.Enum):
    """Vulnerability severity level."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"

    @property
    def weight(self) -> int:
        """Ordinal weight used for sorting and threshold filtering."""
        return SEVERITY_WEIGHT[self]

    @classmethod
    def parse(cls, value: Any, default: Severity | None = None) -> Severity | None:
        """Lenient conversion used on analyzer output ("High", "info", ...)."""
        if isinstance(value, Severity):
            return value
        text = str(value or "").strip().lower()
        if text in ("info", "informational", "note"):
            return cls.INFORMATIONAL
        try:
            return cls(text)
        except ValueError:
            return default


SEVERITY_WEIGHT: dict[Severity, int] = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFORMATIONAL: 0,
}

# Points deducted from a perfect score of 100 per finding of each severity
SCORE_DEDUCTION: dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 8,
    Severity.LOW: 3,
    Severity.INFORMATIONAL: 1,
}


class UnsupportedLanguageError(ValueError):
    """Raised when a submission declares a contract language we cannot parse."""


class Language(str, enum.Enum):
    """Supported smart contract languages."""

    RUST = "rust"
    MOVE = "move"
    CAIRO = "cairo"

    @property
    def extensions(self) -> tuple[str, ...]:
        return _EXTENSIONS[self]

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @classmethod
    def resolve(cls, declared: str) -> Language:
        """Map a declared language ("Solana (Rust)", "move", ...) to a Language."""
        text = (declared or "").strip().lower()
        for lang in cls:
            if lang.value in text:
                return lang
        raise UnsupportedLanguageError(f"Unsupported contract language: {declared!r}")


_EXTENSIONS: dict[Language, tuple[str, ...]] = {
    Language.RUST: (".rs",),
    Language.MOVE: (".move",),
    Language.CAIRO: (".cairo",),
}

_PLATFORMS = {
    "solana": "Solana",
    "near": "Near",
    "aptos": "Aptos",
    "sui": "Sui",
    "starknet": "StarkNet",
}
_DEFAULT_PLATFORM = {
    Language.RUST: "Solana",
    Language.MOVE: "Aptos",
    Language.CAIRO: "StarkNet",
}


def platform_for(declared: str, language: Language | None = None) -> str:
    """Best-effort blockchain platform name for a declared language string."""
    text = (declared or "").lower()
    for key, name in _PLATFORMS.items():
        if key in text:
            return name
    if language is not None:
        return _DEFAULT_PLATFORM[language]
    return "Multi-Chain"


class FileKind(str, enum.Enum):
    """Role of a submitted file within the project."""

    SOURCE = "source"
    CONFIG = "config"
    DEPENDENCY = "dependency"


class Visibility(str, enum.Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    INTERNAL = "internal"


class AnalyzerKind(str, enum.Enum):
    """Analyzer plugins that a submission can enable."""

    STATIC = "static"
    SEMANTIC = "semantic"
    AI = "ai"
    EXTERNAL = "external"


class JobStatus(str, enum.Enum):
    """Status of an audit job."""

    QUEUED = "queued"
    PREPROCESSING = "preprocessing"
    PARSING = "parsing"
    STATIC_ANALYSIS = "static_analysis"
    SEMANTIC_ANALYSIS = "semantic_analysis"
    AI_ANALYSIS = "ai_analysis"
    EXTERNAL_TOOLS = "external_tools"
    AGGREGATION = "aggregation"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class StageName(str, enum.Enum):
    """Pipeline stages, declared in execution order."""

    PREPROCESSING = "preprocessing"
    PARSING = "parsing"
    STATIC_ANALYSIS = "static_analysis"
    SEMANTIC_ANALYSIS = "semantic_analysis"
    AI_ANALYSIS = "ai_analysis"
    EXTERNAL_TOOLS = "external_tools"
    AGGREGATION = "aggregation"

    @property
    def position(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER: tuple[StageName, ...] = tuple(StageName)


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ── Findings ─────────────────────────────────────────────────────────────────


def clamp_unit(value: Any, default: float = 0.5) -> float:
    """Coerce a score into [0, 1]; unparseable or NaN values become `default`."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return max(0.0, min(1.0, number))


class Location(BaseModel):
    """Code location of a finding. Line 0 refers to the file as a whole."""

    file: str = ""
    line: int = 0
    column: int | None = None

    @field_validator("line", mode="before")
    @classmethod
    def _non_negative_line(cls, value: Any) -> int:
        try:
            return max(0, int(value or 0))
        except (TypeError, ValueError):
            return 0


class Finding(BaseModel):
    """A single reported issue.

    Confidence and exploitability are clamped into [0, 1] on construction
    and on every later assignment.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str
    title: str
    description: str = ""
    severity: Severity = Severity.MEDIUM
    confidence: float = 0.5
    category: str = ""
    location: Location = Field(default_factory=Location)
    code: str = ""
    recommendation: str = ""
    references: list[str] = Field(default_factory=list)
    cwe: str | None = None
    exploitability: float = 0.5
    source: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("confidence", "exploitability", mode="before")
    @classmethod
    def _clamp_scores(cls, value: Any) -> float:
        return clamp_unit(value)

    @field_validator("severity", mode="before")
    @classmethod
    def _lenient_severity(cls, value: Any) -> Severity:
        return Severity.parse(value, default=Severity.MEDIUM)  # type: ignore[return-value]


class GasOptimization(BaseModel):
    """Gas/performance improvement derived from a finding."""

    id: str
    title: str
    description: str = ""
    location: Location
    original_code: str = ""
    optimized_code: str = ""
    gas_savings: int = 0
    effort: Literal["low", "medium", "high"] = "low"


# ── Submission ───────────────────────────────────────────────────────────────


class _CamelModel(BaseModel):
    """Accepts both camelCase (wire) and snake_case (Python) field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubmittedFile(_CamelModel):
    file_name: str = Field(min_length=1)
    content: str
    size: int | None = None
    upload_date: datetime | None = None

    @property
    def byte_size(self) -> int:
        return self.size if self.size is not None else len(self.content.encode("utf-8"))


class AuditConfiguration(_CamelModel):
    """Per-submission analyzer switches and result filters."""

    enabled_analyzers: list[AnalyzerKind] | None = None
    severity_threshold: Severity | None = None
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    ai_analysis_enabled: bool = True
    external_tools_enabled: bool = True

    def is_enabled(self, kind: AnalyzerKind) -> bool:
        """Static analysis always runs; the rest honour both switch styles."""
        if kind is AnalyzerKind.STATIC:
            return True
        if self.enabled_analyzers is not None and kind not in self.enabled_analyzers:
            return False
        if kind is AnalyzerKind.AI:
            return self.ai_analysis_enabled
        if kind is AnalyzerKind.EXTERNAL:
            return self.external_tools_enabled
        return True


class AuditRequest(_CamelModel):
    """A project submitted for auditing."""

    project_id: str = Field(min_length=1)
    project_name: str = ""
    language: str
    files: list[SubmittedFile] = Field(min_length=1)
    audit_type: str = "full"
    configuration: AuditConfiguration = Field(default_factory=AuditConfiguration)

    @field_validator("language")
    @classmethod
    def _supported_language(cls, value: str) -> str:
        Language.resolve(value)
        return value

    @property
    def resolved_language(self) -> Language:
        return Language.resolve(self.language)


# ── Preprocessing & parsing ──────────────────────────────────────────────────


class PreprocessedFile(BaseModel):
    file_name: str
    content: str
    size: int
    kind: FileKind
    line_count: int


class PreprocessMetadata(BaseModel):
    file_count: int = 0
    total_size: int = 0
    total_lines: int = 0
    complexity: int = 0


class PreprocessedData(BaseModel):
    """Sanitized and classified project input."""

    project_id: str
    project_name: str = ""
    language: Language
    declared_language: str = ""
    files: list[PreprocessedFile] = Field(default_factory=list)
    dependencies: dict[str, str] = Field(default_factory=dict)
    metadata: PreprocessMetadata = Field(default_factory=PreprocessMetadata)

    def files_of(self, kind: FileKind) -> list[PreprocessedFile]:
        return [f for f in self.files if f.kind is kind]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class FunctionInfo(_Frozen):
    name: str
    file: str
    start_line: int
    end_line: int
    parameters: list[str] = Field(default_factory=list)
    complexity: int = 1
    calls: list[str] = Field(default_factory=list)
    visibility: Visibility = Visibility.PRIVATE
    return_type: str = ""


class StructField(_Frozen):
    name: str
    type: str


class StructInfo(_Frozen):
    name: str
    file: str
    line: int
    end_line: int
    fields: list[StructField] = Field(default_factory=list)
    abilities: list[str] = Field(default_factory=list)
    is_resource: bool = False


class ImportInfo(_Frozen):
    module: str
    items: list[str] = Field(default_factory=list)
    file: str
    line: int


class ContractInfo(_Frozen):
    name: str
    file: str
    line: int
    type: Literal["contract", "module", "program"]
    functions: list[str] = Field(default_factory=list)


class FileAST(_Frozen):
    content: str
    functions: list[FunctionInfo] = Field(default_factory=list)
    structs: list[StructInfo] = Field(default_factory=list)
    imports: list[ImportInfo] = Field(default_factory=list)


class SymbolTable(_Frozen):
    functions: list[str] = Field(default_factory=list)
    variables: list[str] = Field(default_factory=list)
    structs: list[str] = Field(default_factory=list)


class ParsedData(_Frozen):
    """Immutable per-job snapshot shared by every analyzer."""

    project_id: str
    language: Language
    ast: dict[str, FileAST] = Field(default_factory=dict)
    symbols: SymbolTable = Field(default_factory=SymbolTable)
    functions: list[FunctionInfo] = Field(default_factory=list)
    imports: list[ImportInfo] = Field(default_factory=list)
    contracts: list[ContractInfo] = Field(default_factory=list)
    complexity: int = 0
    config_files: dict[str, str] = Field(default_factory=dict)

    def lines(self, file: str) -> list[str]:
        entry = self.ast.get(file)
        return entry.content.split("\n") if entry else []

    def line_count(self, file: str) -> int:
        return len(self.lines(file))

    def structs(self) -> list[StructInfo]:
        return [s for entry in self.ast.values() for s in entry.structs]


# ── Jobs ─────────────────────────────────────────────────────────────────────


class AuditJob(BaseModel):
    job_id: str
    project_id: str
    status: JobStatus = JobStatus.QUEUED
    stage: str = "intake"
    progress: int = Field(default=0, ge=0, le=100)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    error: str | None = None


class AuditStage(BaseModel):
    job_id: str
    stage: StageName
    status: StageStatus = StageStatus.PENDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: float | None = None
    metadata: dict[str, Any] | None = None


# ── Results ──────────────────────────────────────────────────────────────────


class AuditSummary(BaseModel):
    total_issues: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    informational: int = 0
    security_score: float = 100.0
    overall_risk_level: RiskLevel = RiskLevel.LOW
    recommendation: str = ""


class Recommendations(BaseModel):
    immediate_actions: list[str] = Field(default_factory=list)
    high_priority_fixes: list[str] = Field(default_factory=list)
    security_best_practices: list[str] = Field(default_factory=list)
    future_improvements: list[str] = Field(default_factory=list)


class TargetContract(BaseModel):
    name: str
    files: list[str] = Field(default_factory=list)
    total_lines: int = 0
    complexity_score: int = 0


class ReportMetadata(BaseModel):
    report_id: str
    platform: str
    language: str
    auditor: str
    audit_date: str
    version: str
    target_contract: TargetContract


class AuditReport(BaseModel):
    """Final report in the shape consumed by report rendering/export."""

    report_metadata: ReportMetadata
    summary: AuditSummary
    findings: list[dict[str, Any]] = Field(default_factory=list)
    recommendations: Recommendations = Field(default_factory=Recommendations)


class AuditMetadata(BaseModel):
    analysis_time_ms: float = 0.0
    lines_of_code: int = 0
    complexity: int = 0
    audited_at: datetime = Field(default_factory=utcnow)
    language: str = ""
    tools: list[str] = Field(default_factory=list)
    stages_skipped: list[str] = Field(default_factory=list)
    timed_out: bool = False
    error: str | None = None


class AuditResult(BaseModel):
    """Aggregate output of one audit job."""

    audit_id: str
    project_id: str
    status: Literal["completed", "failed", "cancelled"] = "completed"
    summary: AuditSummary = Field(default_factory=AuditSummary)
    findings: list[Finding] = Field(default_factory=list)
    recommendations: Recommendations = Field(default_factory=Recommendations)
    gas_optimizations: list[GasOptimization] = Field(default_factory=list)
    metadata: AuditMetadata = Field(default_factory=AuditMetadata)
    report: AuditReport


# ── Scoring ──────────────────────────────────────────────────────────────────


def severity_counts(findings: list[Finding]) -> dict[Severity, int]:
    counts = {sev: 0 for sev in Severity}
    for finding in findings:
        counts[finding.severity] += 1
    return counts


class SecurityScore(BaseModel):
    """Security score calculation."""

    score: float = 100.0
    breakdown: dict[str, int] = Field(default_factory=dict)

    @staticmethod
    def calculate(findings: list[Finding]) -> "SecurityScore":
        """Start at 100, deduct a fixed weight per finding, clamp to [0, 100]."""
        counts = severity_counts(findings)
        penalty = sum(SCORE_DEDUCTION[sev] * n for sev, n in counts.items())
        score = max(0.0, min(100.0, 100.0 - penalty))
        return SecurityScore(
            score=score,
            breakdown={sev.value: n for sev, n in counts.items() if n},
        )


def risk_level(counts: dict[Severity, int]) -> RiskLevel:
    """Coarse risk classification from severity counts."""
    if counts.get(Severity.CRITICAL, 0) > 0:
        return RiskLevel.CRITICAL
    high = counts.get(Severity.HIGH, 0)
    if high >= 3:
        return RiskLevel.HIGH
    if high > 0 or counts.get(Severity.MEDIUM, 0) >= 5:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW
