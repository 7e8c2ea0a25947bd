"""Per-language regex tables for the structural extractor.

Every pattern is applied to comment/string-masked source with re.MULTILINE,
so `^` anchors at line starts and offsets map 1:1 onto the original text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Literal

from auditengine.core.types import Language, Visibility

_GENERICS = r"(?:<[^{(;]*?>)?"

# Shared across dialects
STRUCT_RE = re.compile(
    r"^[ \t]*(?:pub(?:\s*\([^)]*\))?\s+|public\s+)?struct\s+(?P<name>\w+)\s*"
    + _GENERICS
    + r"(?:\s+has\s+(?P<abilities>[\w\s,]+?))?\s*\{",
    re.MULTILINE,
)
FIELD_RE = re.compile(
    r"^\s*(?:pub(?:\s*\([^)]*\))?\s+)?(?P<name>\w+)\s*:\s*(?P<type>.+?)\s*,?\s*$"
)
IMPORT_RE = re.compile(
    r"^[ \t]*(?:pub(?:\s*\([^)]*\))?\s+)?use\s+(?P<path>[\w:@]+?)(?:::\{(?P<items>[^}]+)\}|::(?P<glob>\*))?\s*;",
    re.MULTILINE,
)
VARIABLE_RE = re.compile(r"\blet\s+(?:mut\s+)?(\w+)")
CALL_RE = re.compile(r"\b([A-Za-z_]\w*)\s*\(")
BRANCH_RE = re.compile(r"\b(?:if|else|match|while|for)\b")

CALL_KEYWORDS = frozenset({
    "if", "else", "match", "while", "for", "loop", "return", "fn", "fun",
    "let", "in", "as", "move", "assert", "abort", "Some", "Ok", "Err",
})


def _rust_visibility(modifiers: str) -> Visibility:
    mods = modifiers.strip()
    if re.match(r"pub\s*\(", mods):
        return Visibility.INTERNAL
    if mods.startswith("pub"):
        return Visibility.PUBLIC
    return Visibility.PRIVATE


def _move_visibility(modifiers: str) -> Visibility:
    mods = modifiers.strip()
    if re.search(r"public\s*\(\s*(?:friend|package)\s*\)", mods):
        return Visibility.INTERNAL
    if re.search(r"\b(?:public|entry)\b", mods):
        return Visibility.PUBLIC
    return Visibility.PRIVATE


def _cairo_visibility(modifiers: str) -> Visibility:
    # Contract entry points are exposed through ABI attributes on impls, so
    # every function is treated as reachable.
    return Visibility.PUBLIC


@dataclass(frozen=True)
class Dialect:
    language: Language
    function_re: re.Pattern[str]
    visibility: Callable[[str], Visibility]
    contract_re: re.Pattern[str]
    contract_type: Literal["contract", "module", "program"]
    # Attribute lines directly above a struct that mark on-chain state
    resource_markers: tuple[str, ...] = ()
    return_arrow: str = "->"


RUST = Dialect(
    language=Language.RUST,
    function_re=re.compile(
        r"^[ \t]*(?P<vis>pub(?:\s*\([^)]*\))?\s+)?"
        r"(?:(?:const|async|unsafe|extern\s+\"[^\"]*\")\s+)*"
        r"fn\s+(?P<name>\w+)\s*" + _GENERICS + r"\s*\(",
        re.MULTILINE,
    ),
    visibility=_rust_visibility,
    contract_re=re.compile(
        r"#\[program\]\s*(?:pub\s+)?mod\s+(?P<name>\w+)\s*(?P<open>[{;])",
        re.MULTILINE,
    ),
    contract_type="program",
    resource_markers=("#[account",),
)

MOVE = Dialect(
    language=Language.MOVE,
    function_re=re.compile(
        r"^[ \t]*(?P<vis>(?:(?:public(?:\s*\(\s*\w+\s*\))?|entry|native|inline|private)\s+)*)"
        r"fun\s+(?P<name>\w+)\s*" + _GENERICS + r"\s*\(",
        re.MULTILINE,
    ),
    visibility=_move_visibility,
    contract_re=re.compile(
        r"^[ \t]*module\s+(?:[\w@]+::)?(?P<name>\w+)\s*(?P<open>[{;])",
        re.MULTILINE,
    ),
    contract_type="module",
    return_arrow=":",
)

CAIRO = Dialect(
    language=Language.CAIRO,
    function_re=re.compile(
        r"^[ \t]*(?P<vis>pub(?:\s*\([^)]*\))?\s+)?(?:(?:extern|inline)\s+)?"
        r"fn\s+(?P<name>\w+)\s*" + _GENERICS + r"\s*\(",
        re.MULTILINE,
    ),
    visibility=_cairo_visibility,
    contract_re=re.compile(
        r"#\[starknet::contract\]\s*(?:pub\s+)?mod\s+(?P<name>\w+)\s*(?P<open>[{;])",
        re.MULTILINE,
    ),
    contract_type="contract",
    resource_markers=("#[storage]",),
)

DIALECTS: dict[Language, Dialect] = {d.language: d for d in (RUST, MOVE, CAIRO)}
