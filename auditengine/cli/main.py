"""AuditEngine CLI: run the audit pipeline locally on a contract project.

Usage:
    auditengine audit <path> --language <lang>   Audit a source file or project directory
    auditengine config                           Show current configuration
    auditengine --version                        Print version

Examples:
    auditengine audit ./programs/vault --language "Solana (Rust)"
    auditengine audit ./sources --language move --severity high --no-ai
    auditengine audit ./src --language cairo --format json -o report.json
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from pydantic import ValidationError

from auditengine.core.config import ENGINE_VERSION, Settings, get_settings
from auditengine.core.logging import setup_logging
from auditengine.core.types import (
    AnalyzerKind,
    AuditConfiguration,
    AuditRequest,
    AuditResult,
    Finding,
    Language,
    Severity,
    SubmittedFile,
)

EXIT_OK = 0
EXIT_FINDINGS = 1
EXIT_INVALID = 2

_SKIP_DIRS = frozenset({".git", "target", "build", "node_modules", ".move", ".venv"})


# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"

_SEV_COLOR = {
    "critical": _RED,
    "high": "\033[38;5;208m",  # orange
    "medium": _YELLOW,
    "low": _CYAN,
    "informational": _DIM,
}


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


BANNER = f"{_BOLD}{_CYAN}AuditEngine{_RESET} {_DIM}smart contract audit pipeline v{ENGINE_VERSION}{_RESET}"


# ── CLI argument parser ─────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auditengine",
        description="AuditEngine: smart contract audit pipeline for Rust, Move and Cairo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--no-banner", action="store_true", help="Suppress the startup banner")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show pipeline logs")

    sub = parser.add_subparsers(dest="command")

    # ── audit ────────────────────────────────────────────────────────────────
    audit_p = sub.add_parser("audit", help="Audit a contract source file or project directory")
    audit_p.add_argument("path", help="Source file or project directory")
    audit_p.add_argument(
        "--language", "-l", required=True,
        help='Contract language, e.g. rust, move, cairo, "Solana (Rust)", "Aptos (Move)"',
    )
    audit_p.add_argument(
        "--severity",
        choices=["critical", "high", "medium", "low", "informational", "info"],
        help="Minimum severity to report",
    )
    audit_p.add_argument("--confidence", type=float, help="Minimum confidence to report (0-1)")
    audit_p.add_argument("--no-ai", action="store_true", help="Skip LLM analysis")
    audit_p.add_argument("--no-external", action="store_true", help="Skip external tools")
    audit_p.add_argument("--rules", help="YAML rule registry file")
    audit_p.add_argument(
        "--format", "-f", default="table", choices=["table", "json"],
        help="Output format (default: table)",
    )
    audit_p.add_argument("--output", "-o", help="Write output to file instead of stdout")
    audit_p.add_argument("--timeout", type=float, help="Job timeout in seconds (0 = unbounded)")

    # ── config ───────────────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")

    return parser


# ── Audit command ────────────────────────────────────────────────────────────


def collect_files(path: Path, language: Language) -> list[SubmittedFile]:
    """Source files of `language` plus TOML manifests under `path`."""
    if path.is_file():
        return [SubmittedFile(file_name=path.name, content=path.read_text(encoding="utf-8"))]

    files = []
    for candidate in sorted(path.rglob("*")):
        rel = candidate.relative_to(path)
        if not candidate.is_file() or any(p in _SKIP_DIRS or p.startswith(".") for p in rel.parts[:-1]):
            continue
        if candidate.suffix in language.extensions or candidate.suffix == ".toml":
            try:
                content = candidate.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                continue
            files.append(SubmittedFile(file_name=rel.as_posix(), content=content))
    return files


def build_request(args: argparse.Namespace) -> AuditRequest:
    """Raises ValueError (incl. pydantic ValidationError) on invalid input."""
    path = Path(args.path).resolve()
    if not path.exists():
        raise ValueError(f"path '{path}' does not exist")
    language = Language.resolve(args.language)
    files = collect_files(path, language)
    if not any(Path(f.file_name).suffix in language.extensions for f in files):
        raise ValueError(f"no {language.display_name} source files found in '{path}'")

    severity = Severity.parse(args.severity) if args.severity else None
    return AuditRequest(
        project_id=path.stem,
        project_name=path.stem,
        language=args.language,
        files=files,
        configuration=AuditConfiguration(
            severity_threshold=severity,
            confidence_threshold=args.confidence,
            ai_analysis_enabled=not args.no_ai,
            external_tools_enabled=not args.no_external,
        ),
    )


def _print_table(result: AuditResult, quiet: bool = False) -> None:
    """Pretty-print the summary and findings as a coloured table."""
    summary = result.summary
    if not quiet:
        score_color = _GREEN if summary.security_score >= 80 else _YELLOW if summary.security_score >= 50 else _RED
        print(f"\n{_BOLD}Audit {result.status}{_RESET}: {result.audit_id}")
        print(
            f"  Score: {_c(f'{summary.security_score:.0f}/100', score_color)}"
            f"  |  Risk: {_c(summary.overall_risk_level.value.upper(), _SEV_COLOR.get(summary.overall_risk_level.value, ''))}"
            f"  |  Lines: {result.metadata.lines_of_code}"
            f"  |  Duration: {result.metadata.analysis_time_ms / 1000:.1f}s"
        )
        if result.metadata.stages_skipped:
            print(f"  {_DIM}Skipped: {', '.join(result.metadata.stages_skipped)}{_RESET}")
        if result.metadata.timed_out:
            print(_c("  Job timed out; showing findings collected so far.", _YELLOW))
        print(f"  {summary.recommendation}\n")

    if not result.findings:
        print(_c("  ✓ No findings at the requested severity level.", _GREEN))
        return

    parts = []
    for sev in Severity:
        count = getattr(summary, sev.value)
        if count:
            parts.append(f"{_SEV_COLOR.get(sev.value, '')}{count} {sev.value.upper()}{_RESET}")
    print(f"  {' · '.join(parts)}\n")

    for i, f in enumerate(result.findings, 1):
        _print_finding(i, f, quiet)


def _print_finding(index: int, f: Finding, quiet: bool) -> None:
    badge = _c(f" {f.severity.value.upper()} ", _SEV_COLOR.get(f.severity.value, "") + _BOLD)
    loc = _c(f"  {f.location.file}:{f.location.line}", _DIM) if f.location.file else ""
    print(f"  {_DIM}{index:>3}.{_RESET} {badge} {_c(f.title, _BOLD)}{loc}")
    if not quiet:
        if f.description:
            desc = f.description[:200] + ("…" if len(f.description) > 200 else "")
            print(f"       {_DIM}{desc}{_RESET}")
        if f.recommendation:
            print(f"       {_DIM}Fix: {f.recommendation[:200]}{_RESET}")
    refs = " ".join(x for x in (f.cwe, f"confidence {f.confidence:.2f}") if x)
    print(f"       {_DIM}{refs}{_RESET}\n")


async def _run_audit(args: argparse.Namespace, settings: Settings) -> int:
    """Execute an audit in-process and print results."""
    from auditengine.analyzer.static.analyzer import StaticAnalyzer
    from auditengine.analyzer.static.registry import RuleConfigError, RuleRegistry
    from auditengine.pipeline.orchestrator import AuditOrchestrator, default_analyzers
    from auditengine.pipeline.store import InMemoryJobStore

    try:
        request = build_request(args)
    except (ValueError, ValidationError, OSError) as exc:
        print(_c(f"Error: {exc}", _RED), file=sys.stderr)
        return EXIT_INVALID

    if args.timeout is not None:
        if args.timeout < 0:
            print(_c("Error: --timeout must be >= 0", _RED), file=sys.stderr)
            return EXIT_INVALID
        settings = settings.model_copy(update={"job_timeout_seconds": args.timeout})

    try:
        analyzers = default_analyzers(settings)
        if args.rules:
            analyzers[AnalyzerKind.STATIC] = StaticAnalyzer(RuleRegistry.from_yaml(args.rules))
    except RuleConfigError as exc:
        print(_c(f"Error: {exc}", _RED), file=sys.stderr)
        return EXIT_INVALID

    orchestrator = AuditOrchestrator(InMemoryJobStore(), settings=settings, analyzers=analyzers)
    job_id = await orchestrator.enqueue(request)
    if not args.quiet:
        print(
            f"  Auditing {_c(str(len(request.files)), _CYAN)} files "
            f"({request.resolved_language.display_name}) as {job_id}…",
            file=sys.stderr,
        )
    result = await orchestrator.run(job_id)
    if result is None:
        print(_c("Audit produced no result.", _RED), file=sys.stderr)
        return EXIT_INVALID

    if args.format == "json":
        output = result.model_dump_json(indent=2)
        if args.output:
            Path(args.output).write_text(output, encoding="utf-8")
            if not args.quiet:
                print(f"  Written to {_c(args.output, _CYAN)}", file=sys.stderr)
        else:
            print(output)
    else:
        _print_table(result, quiet=args.quiet)
        if args.output:
            Path(args.output).write_text(result.model_dump_json(indent=2), encoding="utf-8")

    if result.status == "failed":
        print(_c(f"Audit failed: {result.metadata.error}", _RED), file=sys.stderr)
        return EXIT_INVALID
    # Exit code: 1 if any critical/high findings
    has_serious = any(f.severity in (Severity.CRITICAL, Severity.HIGH) for f in result.findings)
    return EXIT_FINDINGS if has_serious else EXIT_OK


# ── Config command ───────────────────────────────────────────────────────────


def _run_config(settings: Settings) -> int:
    """Print current settings (redacted)."""
    print(f"\n{_BOLD}AuditEngine Configuration{_RESET}\n")
    for field_name in sorted(type(settings).model_fields):
        val = getattr(settings, field_name, "")
        if any(kw in field_name for kw in ("password", "secret", "key", "token")):
            val = "****" if val else "(not set)"
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")
    print()
    return EXIT_OK


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"auditengine {ENGINE_VERSION}")
        return EXIT_OK

    settings = get_settings()
    setup_logging(env="development", log_level="INFO" if args.verbose else "WARNING")

    if not args.no_banner and not args.quiet:
        print(BANNER, file=sys.stderr)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    if args.command == "config":
        return _run_config(settings)

    if args.command == "audit":
        return asyncio.run(_run_audit(args, settings))

    parser.print_help()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
