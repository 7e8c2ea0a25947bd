"""Heuristic structural extractor for Rust, Move and Cairo sources.

This is a pattern-matching extractor, not a grammar parse: function bodies
are found by brace matching from a matched signature, parameters by comma
splitting, and calls by an identifier-followed-by-paren scan. Malformed input
yields partial results rather than an error, and constructs the regex tables
do not cover (nested use-groups, macros that expand to functions, braces in
char literals) are silently missed.
"""

from __future__ import annotations

import logging
import re

from auditengine.analyzer.parser.dialects import (
    BRANCH_RE,
    CALL_KEYWORDS,
    CALL_RE,
    DIALECTS,
    FIELD_RE,
    IMPORT_RE,
    STRUCT_RE,
    VARIABLE_RE,
    Dialect,
)
from auditengine.core.types import (
    ContractInfo,
    FileAST,
    FileKind,
    FunctionInfo,
    ImportInfo,
    ParsedData,
    PreprocessedData,
    StructField,
    StructInfo,
    SymbolTable,
)

logger = logging.getLogger(__name__)


class ParseError(Exception):
    """No usable symbol snapshot could be produced."""


# ── Text helpers ─────────────────────────────────────────────────────────────


def mask_source(source: str) -> str:
    """Blank out comments and string literal contents, keeping offsets and newlines."""
    out = list(source)
    i, n = 0, len(source)
    while i < n:
        ch = source[i]
        nxt = source[i + 1] if i + 1 < n else ""
        if ch == "/" and nxt == "/":
            while i < n and source[i] != "\n":
                out[i] = " "
                i += 1
        elif ch == "/" and nxt == "*":
            end = source.find("*/", i + 2)
            end = n if end < 0 else end + 2
            for j in range(i, end):
                if source[j] != "\n":
                    out[j] = " "
            i = end
        elif ch == '"':
            i += 1
            while i < n and source[i] != '"':
                if source[i] == "\\" and i + 1 < n:
                    out[i] = " "
                    i += 1
                if source[i] != "\n":
                    out[i] = " "
                i += 1
            i += 1
        else:
            i += 1
    return "".join(out)


def line_of(source: str, offset: int) -> int:
    return source.count("\n", 0, offset) + 1


def match_brace(source: str, open_pos: int, open_ch: str = "{", close_ch: str = "}") -> int:
    """Offset of the bracket closing the one at `open_pos`, or -1 if unbalanced."""
    depth = 0
    for pos in range(open_pos, len(source)):
        ch = source[pos]
        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return pos
    return -1


def split_top_level(text: str) -> list[str]:
    """Split on commas that are not nested in (), <> or []."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch in "(<[":
            depth += 1
        elif ch in ")>]":
            depth = max(0, depth - 1)
        if ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


def parameter_name(param: str) -> str:
    """Bare parameter name with type annotation and binding modifiers removed."""
    name = param.split(":", 1)[0].strip()
    name = re.sub(r"^(?:&\s*)?(?:'\w+\s+)?(?:mut\s+)?", "", name)
    name = re.sub(r"^ref\s+", "", name)
    return name.strip() or param.strip()


def function_complexity(body: str) -> int:
    return 1 + len(BRANCH_RE.findall(body)) + body.count("&&") + body.count("||")


def _unique(items) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)


# ── Extractor ────────────────────────────────────────────────────────────────


class SymbolExtractor:
    """Turn preprocessed files into an immutable ParsedData snapshot."""

    def parse(self, data: PreprocessedData) -> ParsedData:
        dialect = DIALECTS[data.language]
        ast: dict[str, FileAST] = {}
        functions: list[FunctionInfo] = []
        imports: list[ImportInfo] = []
        contracts: list[ContractInfo] = []
        variables: list[str] = []
        config_files: dict[str, str] = {}

        for file in data.files:
            if file.kind is FileKind.CONFIG:
                config_files[file.file_name] = file.content
                continue
            if file.kind is not FileKind.SOURCE or not file.file_name.endswith(data.language.extensions):
                continue
            try:
                entry, file_contracts, file_vars = self.parse_file(file.file_name, file.content, dialect)
            except Exception:
                logger.exception("Extraction failed for %s, keeping raw content only", file.file_name)
                entry, file_contracts, file_vars = FileAST(content=file.content), [], []
            ast[file.file_name] = entry
            functions.extend(entry.functions)
            imports.extend(entry.imports)
            contracts.extend(file_contracts)
            variables.extend(file_vars)

        if not ast:
            raise ParseError(f"No {data.language.display_name} source files to parse")

        structs = [s for entry in ast.values() for s in entry.structs]
        return ParsedData(
            project_id=data.project_id,
            language=data.language,
            ast=ast,
            symbols=SymbolTable(
                functions=_unique(f.name for f in functions),
                variables=_unique(variables),
                structs=_unique(s.name for s in structs),
            ),
            functions=functions,
            imports=imports,
            contracts=contracts,
            complexity=sum(f.complexity for f in functions),
            config_files=config_files,
        )

    def parse_file(
        self, file_name: str, content: str, dialect: Dialect,
    ) -> tuple[FileAST, list[ContractInfo], list[str]]:
        masked = mask_source(content)
        functions = self._functions(file_name, masked, dialect)
        entry = FileAST(
            content=content,
            functions=functions,
            structs=self._structs(file_name, content, masked, dialect),
            imports=self._imports(file_name, masked),
        )
        contracts = self._contracts(file_name, masked, dialect, functions)
        variables = VARIABLE_RE.findall(masked)
        return entry, contracts, variables

    # ── Functions ─────────────────────────────────────────────────────────

    def _functions(self, file_name: str, masked: str, dialect: Dialect) -> list[FunctionInfo]:
        results: list[FunctionInfo] = []
        total_lines = masked.count("\n") + 1
        for m in dialect.function_re.finditer(masked):
            start_line = line_of(masked, m.start("name"))
            paren_open = m.end() - 1
            paren_close = match_brace(masked, paren_open, "(", ")")
            if paren_close < 0:
                params_text, after = masked[paren_open + 1:], len(masked)
            else:
                params_text, after = masked[paren_open + 1:paren_close], paren_close + 1

            brace = masked.find("{", after)
            semi = masked.find(";", after)
            if brace < 0 or (0 <= semi < brace):
                # Declaration only (trait item, native fun)
                header = masked[after:semi if semi >= 0 else len(masked)]
                end_line = line_of(masked, semi) if semi >= 0 else start_line
                body = ""
            else:
                header = masked[after:brace]
                close = match_brace(masked, brace)
                end_line = line_of(masked, close) if close >= 0 else total_lines
                body = masked[brace + 1:close if close >= 0 else len(masked)]

            results.append(
                FunctionInfo(
                    name=m.group("name"),
                    file=file_name,
                    start_line=start_line,
                    end_line=end_line,
                    parameters=[parameter_name(p) for p in split_top_level(params_text)],
                    complexity=function_complexity(body),
                    calls=_unique(
                        c for c in CALL_RE.findall(body) if c not in CALL_KEYWORDS
                    ),
                    visibility=dialect.visibility(m.group("vis") or ""),
                    return_type=self._return_type(header, dialect),
                )
            )
        return results

    @staticmethod
    def _return_type(header: str, dialect: Dialect) -> str:
        header = re.split(r"\bwhere\b|\bacquires\b", header)[0].strip()
        if header.startswith(dialect.return_arrow):
            return header[len(dialect.return_arrow):].strip()
        return ""

    # ── Structs ───────────────────────────────────────────────────────────

    def _structs(self, file_name: str, content: str, masked: str, dialect: Dialect) -> list[StructInfo]:
        results: list[StructInfo] = []
        lines = content.split("\n")
        for m in STRUCT_RE.finditer(masked):
            line = line_of(masked, m.start("name"))
            open_pos = m.end() - 1
            close = match_brace(masked, open_pos)
            body = masked[open_pos + 1:close if close >= 0 else len(masked)]
            end_line = line_of(masked, close) if close >= 0 else len(lines)

            fields = []
            for raw in body.split("\n"):
                for chunk in split_top_level(raw):
                    if chunk.strip().startswith("#"):
                        continue
                    fm = FIELD_RE.match(chunk)
                    if fm:
                        fields.append(StructField(name=fm.group("name"), type=fm.group("type").strip()))

            abilities = [a.strip() for a in (m.group("abilities") or "").split(",") if a.strip()]
            preceding = "\n".join(lines[max(0, line - 4):line - 1])
            is_resource = "key" in abilities or any(
                marker in preceding for marker in dialect.resource_markers
            )
            results.append(
                StructInfo(
                    name=m.group("name"),
                    file=file_name,
                    line=line,
                    end_line=end_line,
                    fields=fields,
                    abilities=abilities,
                    is_resource=is_resource,
                )
            )
        return results

    # ── Imports & contracts ───────────────────────────────────────────────

    @staticmethod
    def _imports(file_name: str, masked: str) -> list[ImportInfo]:
        results = []
        for m in IMPORT_RE.finditer(masked):
            if m.group("glob"):
                items = ["*"]
            else:
                items = [i.strip() for i in (m.group("items") or "").split(",") if i.strip()]
            results.append(
                ImportInfo(
                    module=m.group("path"),
                    items=items,
                    file=file_name,
                    line=line_of(masked, m.start("path")),
                )
            )
        return results

    @staticmethod
    def _contracts(
        file_name: str, masked: str, dialect: Dialect, functions: list[FunctionInfo],
    ) -> list[ContractInfo]:
        results = []
        total_lines = masked.count("\n") + 1
        for m in dialect.contract_re.finditer(masked):
            line = line_of(masked, m.start("name"))
            if m.group("open") == "{":
                close = match_brace(masked, m.start("open"))
                end_line = line_of(masked, close) if close >= 0 else total_lines
            else:
                end_line = total_lines
            results.append(
                ContractInfo(
                    name=m.group("name"),
                    file=file_name,
                    line=line,
                    type=dialect.contract_type,
                    functions=[f.name for f in functions if line <= f.start_line <= end_line],
                )
            )
        return results
