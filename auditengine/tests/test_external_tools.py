"""Tests for external tool adapters, the process runner and workspaces."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from auditengine.analyzer.external.runner import (
    ToolOutput,
    ToolRunner,
    safe_relative_path,
    scoped_workspace,
)
from auditengine.analyzer.external.tools import (
    BuiltinPatternScanner,
    CargoAuditTool,
    ClippyTool,
    ExternalTool,
    ExternalToolsAnalyzer,
    MoveProverTool,
    SemgrepTool,
    workspace_files,
)
from auditengine.core.types import Language, Severity

from conftest import MOVE_COIN_STORE, OVERFLOW_SOURCE, make_finding, parse_project


def _output(stdout: str = "", stderr: str = "", returncode: int = 0) -> ToolOutput:
    return ToolOutput(returncode=returncode, stdout=stdout, stderr=stderr, duration_ms=1.0)


class TestWorkspace:
    @pytest.mark.parametrize("name,expected", [
        ("src/lib.rs", "src/lib.rs"),
        ("../../etc/passwd", "etc/passwd"),
        ("/abs/path.rs", "abs/path.rs"),
        ("C:\\code\\lib.rs", "code/lib.rs"),
        ("./sources/./a.move", "sources/a.move"),
    ])
    def test_safe_relative_path(self, name, expected):
        assert safe_relative_path(name).as_posix() == expected

    def test_safe_relative_path_empty(self):
        assert safe_relative_path("../..") is None

    @pytest.mark.asyncio
    async def test_files_materialized_and_removed(self):
        async with scoped_workspace({"src/lib.rs": "fn a() {}", "../escape.rs": "x"}) as root:
            assert (root / "src" / "lib.rs").read_text() == "fn a() {}"
            assert (root / "escape.rs").exists()
            assert not (root.parent / "escape.rs").exists()
        assert not root.exists()

    @pytest.mark.asyncio
    async def test_removed_when_block_raises(self):
        seen: list[Path] = []
        with pytest.raises(RuntimeError):
            async with scoped_workspace({"a.rs": ""}, prefix="audit_test_") as root:
                seen.append(root)
                assert root.name.startswith("audit_test_")
                raise RuntimeError("parse failure")
        assert not seen[0].exists()

    @pytest.mark.asyncio
    async def test_writes_run_off_the_event_loop(self):
        with patch("auditengine.analyzer.external.runner.asyncio.to_thread", wraps=asyncio.to_thread) as to_thread:
            async with scoped_workspace({"src/lib.rs": "fn a() {}"}) as root:
                assert (root / "src" / "lib.rs").exists()
        to_thread.assert_called_once()
        assert not root.exists()

    def test_stub_cargo_manifest(self):
        files = workspace_files(parse_project({"src/lib.rs": OVERFLOW_SOURCE}))
        assert 'name = "audit_target"' in files["Cargo.toml"]
        assert 'path = "src/lib.rs"' in files["Cargo.toml"]

    def test_submitted_manifest_kept(self, rust_parsed):
        files = workspace_files(rust_parsed)
        assert 'name = "vault"' in files["Cargo.toml"]
        assert "src/lib.rs" in files

    def test_stub_move_manifest(self, move_parsed):
        assert "[addresses]" in workspace_files(move_parsed)["Move.toml"]

    def test_cairo_gets_no_stub(self, cairo_parsed):
        assert list(workspace_files(cairo_parsed)) == ["src/counter.cairo"]


class TestToolRunner:
    @pytest.mark.asyncio
    async def test_missing_binary_yields_none(self, tmp_path):
        runner = ToolRunner()
        with patch("auditengine.analyzer.external.runner.shutil.which", return_value=None) as which:
            assert await runner.run(["cargo-nope", "audit"], cwd=tmp_path, timeout=5) is None
            assert not runner.is_available("cargo-nope")
        # Availability is cached per binary
        assert which.call_count == 1

    @pytest.mark.asyncio
    async def test_captures_output(self, tmp_path):
        output = await ToolRunner().run(
            [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"],
            cwd=tmp_path, timeout=30,
        )
        assert output.returncode == 3
        assert output.stdout.strip() == "out"
        assert output.stderr.strip() == "err"

    @pytest.mark.asyncio
    async def test_timeout_yields_none(self, tmp_path):
        output = await ToolRunner().run(
            [sys.executable, "-c", "import time; time.sleep(30)"], cwd=tmp_path, timeout=0.2,
        )
        assert output is None


class TestClippy:
    def _line(self, **message) -> str:
        return json.dumps({"reason": "compiler-message", "message": message})

    def test_parse_diagnostics(self, settings, rust_parsed):
        stdout = "\n".join([
            "Checking vault v0.1.0",
            json.dumps({"reason": "compiler-artifact"}),
            self._line(
                message="used `unwrap()` on a `Result` value",
                code={"code": "clippy::unwrap_used"},
                level="warning",
                spans=[{
                    "file_name": "src/lib.rs", "line_start": 10, "column_start": 21, "is_primary": True,
                    "text": [{"text": "        vault.balance = vault.balance.checked_add(amount).unwrap();"}],
                }],
                children=[{"level": "help", "message": "use `?` instead"}],
                rendered="warning: used `unwrap()`",
            ),
            self._line(message="unused import", level="note", spans=[]),
            self._line(
                message="mismatched types", level="error", code=None,
                spans=[{"file_name": "/root/.cargo/registry/dep.rs", "line_start": 4, "is_primary": True}],
            ),
        ])
        findings = ClippyTool(settings, ToolRunner()).parse(_output(stdout), rust_parsed)

        assert len(findings) == 2
        unwrap, error = findings
        assert unwrap.id == "clippy-clippy::unwrap_used-10"
        assert unwrap.severity is Severity.MEDIUM
        assert unwrap.cwe == "CWE-248"
        assert unwrap.references == ["https://cwe.mitre.org/data/definitions/248.html"]
        assert unwrap.recommendation == "use `?` instead"
        assert unwrap.code.endswith(".unwrap();")
        assert unwrap.source == "external"
        assert unwrap.metadata == {"tool": "clippy"}

        assert error.severity is Severity.HIGH
        assert error.location.line == 0
        assert error.id == "clippy-unknown-0"


class TestCargoAudit:
    def test_parse_advisories(self, settings, rust_parsed):
        report = {"vulnerabilities": {"list": [
            {
                "advisory": {
                    "id": "RUSTSEC-2023-0001", "title": "Memory corruption",
                    "description": "details", "url": "https://rustsec.org/advisories/RUSTSEC-2023-0001",
                },
                "package": {"name": "anchor-lang", "version": "0.29.0"},
                "versions": {"patched": [">=0.30.0"]},
            },
            {
                "advisory": {"id": "RUSTSEC-2024-0002", "severity": "info"},
                "package": {"name": "transitive-crate", "version": "1.0.0"},
                "versions": {"patched": []},
            },
        ]}}
        findings = CargoAuditTool(settings, ToolRunner()).parse(_output(json.dumps(report)), rust_parsed)

        first, second = findings
        assert first.id == "cargo-audit-RUSTSEC-2023-0001"
        assert first.confidence == 0.95
        assert first.location.file == "Cargo.toml"
        assert first.location.line == 6
        assert first.recommendation == "Update anchor-lang to >=0.30.0"
        assert first.references == ["https://rustsec.org/advisories/RUSTSEC-2023-0001"]

        assert second.severity is Severity.LOW
        assert second.location.line == 0
        assert "no patched version" in second.recommendation

    def test_invalid_json(self, settings, rust_parsed):
        assert CargoAuditTool(settings, ToolRunner()).parse(_output("not json"), rust_parsed) == []


class TestSemgrep:
    def test_parse_results(self, settings, rust_parsed):
        report = {"results": [{
            "check_id": "rust.lang.security.unsafe-usage",
            "path": "./src/lib.rs",
            "start": {"line": 10, "col": 5},
            "extra": {
                "message": "Unsafe usage",
                "severity": "ERROR",
                "metadata": {"cwe": ["CWE-119: Improper Restriction of Operations"]},
                "lines": "    unsafe { x }  ",
            },
        }]}
        finding = SemgrepTool(settings, ToolRunner()).parse(_output(json.dumps(report)), rust_parsed)[0]
        assert finding.id == "semgrep-rust.lang.security.unsafe-usage-src/lib.rs-10"
        assert finding.title == "Semgrep: unsafe-usage"
        assert finding.severity is Severity.HIGH
        assert finding.cwe == "CWE-119"
        assert finding.location.column == 5
        assert finding.code == "unsafe { x }"

    def test_dot_directory_path_kept(self, settings):
        parsed = parse_project({".github/x.rs": OVERFLOW_SOURCE})
        report = {"results": [{"check_id": "r.unsafe", "path": "./.github/x.rs", "start": {"line": 2}}]}
        finding = SemgrepTool(settings, ToolRunner()).parse(_output(json.dumps(report)), parsed)[0]
        assert finding.location.file == ".github/x.rs"
        assert finding.location.line == 2

    def test_invalid_json(self, settings, rust_parsed):
        assert SemgrepTool(settings, ToolRunner()).parse(_output("{oops"), rust_parsed) == []


class TestMoveProver:
    def test_failure_with_location(self, settings, move_parsed):
        stderr = (
            "error: post-condition does not hold\n"
            "   ┌─ ./sources/coin_store.move:11:9\n"
            "   │\n"
        )
        findings = MoveProverTool(settings, ToolRunner()).parse(_output(stderr=stderr), move_parsed)
        assert len(findings) == 1
        assert findings[0].location.file == "sources/coin_store.move"
        assert findings[0].location.line == 11
        assert findings[0].code == "balance.value = balance.value + amount;"
        assert findings[0].category == "Formal Verification"

    def test_dot_directory_location(self, settings):
        parsed = parse_project({".pkg/sources/coin_store.move": MOVE_COIN_STORE}, language="move")
        stderr = "error: post-condition does not hold\n   ┌─ ./.pkg/sources/coin_store.move:11:9\n"
        finding = MoveProverTool(settings, ToolRunner()).parse(_output(stderr=stderr), parsed)[0]
        assert finding.location.file == ".pkg/sources/coin_store.move"
        assert finding.location.line == 11

    def test_clean_run(self, settings, move_parsed):
        output = _output("[INFO] preparing module\nSUCCESS\n")
        assert MoveProverTool(settings, ToolRunner()).parse(output, move_parsed) == []

    def test_uses_prover_timeout(self, settings):
        tool = MoveProverTool(settings, ToolRunner())
        assert tool.timeout == settings.move_prover_timeout_seconds


class TestBuiltinScanner:
    def test_rust_patterns(self, settings):
        parsed = parse_project({"src/lib.rs": (
            "fn f(p: *const u8) -> u8 {\n"
            "    let v = unsafe { *p };\n"
            "    // panic!(\"commented\")\n"
            "    if v == 0 { panic!(\"zero\"); }\n"
            "    todo!()\n"
            "}\n"
        )})
        findings = BuiltinPatternScanner(settings, ToolRunner()).scan(parsed)
        assert [(f.id, f.location.line) for f in findings] == [
            ("pattern-unsafe-block-src/lib.rs-2", 2),
            ("pattern-panic-src/lib.rs-4", 4),
            ("pattern-todo-src/lib.rs-5", 5),
        ]

    def test_move_unvalidated_move_from(self, settings, move_parsed):
        findings = BuiltinPatternScanner(settings, ToolRunner()).scan(move_parsed)
        assert [f.id for f in findings] == ["move-unvalidated-move-from-sources/coin_store.move-15"]

    def test_guarded_move_from(self, settings):
        parsed = parse_project({"sources/a.move": (
            "module 0x1::a {\n"
            "    public fun take(addr: address) acquires T {\n"
            "        assert!(exists<T>(addr), 1);\n"
            "        let T {} = move_from<T>(addr);\n"
            "    }\n"
            "}\n"
        )}, language="move")
        assert BuiltinPatternScanner(settings, ToolRunner()).scan(parsed) == []

    def test_always_available(self, settings):
        assert BuiltinPatternScanner(settings, ToolRunner()).available()


class _FakeTool(ExternalTool):
    NAME = "fake"

    def __init__(self, settings, findings=None, error=None, languages=frozenset(Language)):
        super().__init__(settings, ToolRunner())
        self._findings = findings or []
        self._error = error
        self.LANGUAGES = languages
        self.ran = False

    def command(self):
        return ["fake"]

    def available(self):
        return True

    def parse(self, output, parsed):
        return []

    async def run(self, parsed):
        self.ran = True
        if self._error:
            raise self._error
        return list(self._findings)


class TestExternalToolsAnalyzer:
    @pytest.mark.asyncio
    async def test_failing_tool_isolated(self, settings, rust_parsed):
        ok = _FakeTool(settings, findings=[make_finding("ext-1")])
        broken = _FakeTool(settings, error=ValueError("malformed output"))
        analyzer = ExternalToolsAnalyzer(settings, tools=[broken, ok])
        findings = await analyzer.analyze(rust_parsed)
        assert [f.id for f in findings] == ["ext-1"]
        assert broken.ran and ok.ran

    @pytest.mark.asyncio
    async def test_language_filter(self, settings, move_parsed):
        rust_only = _FakeTool(settings, findings=[make_finding()], languages=frozenset({Language.RUST}))
        analyzer = ExternalToolsAnalyzer(settings, tools=[rust_only])
        assert await analyzer.analyze(move_parsed) == []
        assert not rust_only.ran

    @pytest.mark.asyncio
    async def test_adapter_runs_in_scoped_workspace(self, settings, rust_parsed):
        seen: dict[str, object] = {}

        async def fake_run(cmd, cwd, timeout):
            seen["cwd"] = cwd
            seen["files"] = sorted(p.relative_to(cwd).as_posix() for p in cwd.rglob("*") if p.is_file())
            seen["timeout"] = timeout
            return _output(json.dumps({"results": []}))

        runner = MagicMock(spec=ToolRunner)
        runner.run = AsyncMock(side_effect=fake_run)
        findings = await SemgrepTool(settings, runner).run(rust_parsed)

        assert findings == []
        assert seen["files"] == ["Cargo.toml", "src/lib.rs"]
        assert seen["timeout"] == settings.external_tool_timeout_seconds
        assert not Path(seen["cwd"]).exists()

    @pytest.mark.asyncio
    async def test_missing_binaries_leave_builtin_scanner(self, settings, move_parsed):
        runner = ToolRunner()
        with patch("auditengine.analyzer.external.runner.shutil.which", return_value=None):
            findings = await ExternalToolsAnalyzer(settings, runner=runner).analyze(move_parsed)
        assert {f.metadata["tool"] for f in findings} == {"builtin-patterns"}
