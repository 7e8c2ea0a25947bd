"""Preprocess submitted project files before parsing.

Redaction of secret-looking content is pattern based and best-effort: it
catches the common shapes (credential comments, long opaque string literals)
but is not a guarantee that no sensitive data reaches the analyzers.
Sanitization is line-preserving so finding line numbers still resolve
against the original upload.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath

from auditengine.core.types import (
    AuditRequest,
    FileKind,
    Language,
    PreprocessedData,
    PreprocessedFile,
    PreprocessMetadata,
)

logger = logging.getLogger(__name__)


class PreprocessingError(Exception):
    """Submission cannot be turned into usable analyzer input."""


# ── Patterns ─────────────────────────────────────────────────────────────────

_TODO_COMMENT = re.compile(r"//\s*TODO:.*$")
_SENSITIVE_COMMENT = re.compile(r"//.*\b(?:key|secret|password|token)\b.*$", re.IGNORECASE)
_LONG_LITERAL = re.compile(r'"[A-Za-z0-9]{32,}"')

_FUNCTION_KEYWORD = re.compile(r"\b(?:fn|fun|function|def)\b")
_CONDITIONAL_KEYWORD = re.compile(r"\b(?:if|match|switch)\b")

_SECTION_HEADER = re.compile(r"^\s*\[([^\]]+)\]\s*$")
_PLAIN_DEP = re.compile(r'^\s*([\w\-.]+)\s*=\s*"([^"]*)"\s*$')
_TABLE_DEP = re.compile(r"^\s*([\w\-.]+)\s*=\s*\{(.*)\}\s*$")
_TABLE_KEY = re.compile(r'\b(version|rev|tag|branch)\s*=\s*"([^"]*)"')

MANIFESTS: dict[Language, tuple[str, ...]] = {
    Language.RUST: ("Cargo.toml", "Cargo.lock"),
    Language.MOVE: ("Move.toml",),
    Language.CAIRO: ("Scarb.toml", "cairo_project.toml"),
}

_DEPENDENCY_DIRS = {"test", "tests", "spec", "specs", "vendor", "target", "node_modules", "build"}
_DEPENDENCY_STEM = re.compile(r"(?:^test_|_test$|_tests$|^tests?$|_spec$)")


class Preprocessor:
    """Sanitize, classify and measure a submission."""

    def process(self, request: AuditRequest) -> PreprocessedData:
        language = request.resolved_language
        if not request.files:
            raise PreprocessingError("No files submitted")

        files: list[PreprocessedFile] = []
        dependencies: dict[str, str] = {}
        total_size = 0
        total_lines = 0
        complexity = 0.0

        for submitted in request.files:
            kind = classify_file(submitted.file_name, language)
            content = sanitize(submitted.content) if kind is FileKind.SOURCE else submitted.content
            line_count = len(content.split("\n"))
            files.append(
                PreprocessedFile(
                    file_name=submitted.file_name,
                    content=content,
                    size=submitted.byte_size,
                    kind=kind,
                    line_count=line_count,
                )
            )
            total_size += submitted.byte_size
            total_lines += line_count
            complexity += file_complexity(content)

            if kind is FileKind.CONFIG and submitted.file_name.endswith(".toml"):
                dependencies.update(parse_manifest_dependencies(content))

        if not any(
            f.kind is FileKind.SOURCE and f.file_name.endswith(language.extensions)
            for f in files
        ):
            raise PreprocessingError(
                f"No {language.display_name} source files "
                f"({', '.join(language.extensions)}) in submission"
            )

        metadata = PreprocessMetadata(
            file_count=len(files),
            total_size=total_size,
            total_lines=total_lines,
            complexity=round(complexity),
        )
        logger.debug(
            "Preprocessed %d files (%d lines, %d dependencies) for %s",
            metadata.file_count, total_lines, len(dependencies), request.project_id,
        )
        return PreprocessedData(
            project_id=request.project_id,
            project_name=request.project_name,
            language=language,
            declared_language=request.language,
            files=files,
            dependencies=dependencies,
            metadata=metadata,
        )


# ── Helpers ──────────────────────────────────────────────────────────────────


def sanitize(content: str) -> str:
    """Redact secret-looking comments and literals, one line at a time."""
    out = []
    for line in content.split("\n"):
        if _TODO_COMMENT.search(line):
            line = _TODO_COMMENT.sub("// TODO: [sanitized]", line)
        elif _SENSITIVE_COMMENT.search(line):
            line = _SENSITIVE_COMMENT.sub("// [sanitized]", line)
        line = _LONG_LITERAL.sub('"[sanitized]"', line)
        out.append(line)
    return "\n".join(out)


def classify_file(file_name: str, language: Language) -> FileKind:
    path = PurePosixPath(file_name.replace("\\", "/"))
    if path.name in MANIFESTS[language] or path.suffix in (".toml", ".lock"):
        return FileKind.CONFIG
    if any(part.lower() in _DEPENDENCY_DIRS for part in path.parts[:-1]):
        return FileKind.DEPENDENCY
    if _DEPENDENCY_STEM.search(path.stem.lower()):
        return FileKind.DEPENDENCY
    return FileKind.SOURCE


def file_complexity(content: str) -> float:
    """lines + 2 x functions + 1.5 x conditionals."""
    lines = len(content.split("\n"))
    functions = len(_FUNCTION_KEYWORD.findall(content))
    conditionals = len(_CONDITIONAL_KEYWORD.findall(content))
    return lines + 2 * functions + 1.5 * conditionals


def parse_manifest_dependencies(content: str) -> dict[str, str]:
    """Read `name -> version` pairs from the [dependencies] table of a TOML manifest."""
    deps: dict[str, str] = {}
    in_section = False
    for line in content.split("\n"):
        header = _SECTION_HEADER.match(line)
        if header:
            in_section = header.group(1).strip() == "dependencies"
            continue
        if not in_section or not line.strip() or line.lstrip().startswith("#"):
            continue
        plain = _PLAIN_DEP.match(line)
        if plain:
            deps[plain.group(1)] = plain.group(2)
            continue
        table = _TABLE_DEP.match(line)
        if table:
            keys = dict(_TABLE_KEY.findall(table.group(2)))
            deps[table.group(1)] = (
                keys.get("version") or keys.get("rev") or keys.get("tag")
                or keys.get("branch") or "*"
            )
    return deps
