"""Bracketed object references in DAX text: ``Table[Column]``, ``'Table'[Col]``, ``[Measure]``.

References are plain text, not links.  Scanning and rewriting only look at
code: double-quoted string literals and ``//``, ``--`` and ``/* */``
comments are left alone.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from typing import NamedTuple

BARE_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"
QUOTED_IDENT = r"'(?:[^'\n]|'')+'"
IDENT = rf"(?:{QUOTED_IDENT}|{BARE_IDENT})"
BRACKETED = r"\[(?:[^\]\n]|\]\])+\]"

_BARE_RE = re.compile(BARE_IDENT)

# Lexemes that matter for deciding what is code.  Quoted identifiers and
# brackets are matched so that ``--`` or ``"`` inside them is not mistaken
# for a comment or a string.  Compile with ``re.DOTALL``.
STRING_OR_COMMENT = r""""(?:[^"]|"")*"|//[^\n]*|--[^\n]*|/\*.*?\*/"""
QUOTED_TOKEN = r"""'(?:[^'\n]|'')*'|\[(?:[^\]\n]|\]\])*\]"""

_LEXEME_RE = re.compile(rf"(?P<skip>{STRING_OR_COMMENT})|{QUOTED_TOKEN}", re.DOTALL)

_COLUMN_REF_RE = re.compile(rf"(?<![\w'])(?P<table>{IDENT})(?P<name>{BRACKETED})")
_OBJECT_REF_RE = re.compile(rf"(?:(?<![\w'])(?P<table>{IDENT}))?(?P<name>{BRACKETED})")


class ObjectRef(NamedTuple):
    """A reference found in formula text; ``table`` is ``None`` for ``[Name]``."""

    table: str | None
    name: str


# ---------------------------------------------------------------------------
# Name quoting
# ---------------------------------------------------------------------------


def is_bare_identifier(name: str) -> bool:
    return _BARE_RE.fullmatch(name) is not None


def quote_name(name: str, *, force: bool = False) -> str:
    """Render a table (or other object) name, quoting it when required."""
    if not force and is_bare_identifier(name):
        return name
    return "'" + name.replace("'", "''") + "'"


def unquote_name(token: str) -> str:
    token = token.strip()
    if len(token) >= 2 and token[0] == "'" and token[-1] == "'":
        return token[1:-1].replace("''", "'")
    return token


def bracket(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def unbracket(token: str) -> str:
    return token[1:-1].replace("]]", "]")


def table_token_pattern(table: str) -> str:
    """Regex source matching *table* written quoted, or bare where that is legal."""
    quoted = "'" + re.escape(table.replace("'", "''")) + "'"
    if is_bare_identifier(table):
        return rf"(?:{quoted}|(?<![\w']){re.escape(table)}(?!\w))"
    return quoted


def name_token_pattern(name: str) -> str:
    """Regex source matching ``[name]``, tolerating padding inside the brackets."""
    return r"\[\s*" + re.escape(name.replace("]", "]]")) + r"\s*\]"


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


def code_segments(expression: str) -> Iterator[tuple[str, bool]]:
    """Split *expression* into ``(text, is_code)`` runs, in order."""
    pos = 0
    for match in _LEXEME_RE.finditer(expression):
        if match.group("skip") is None:
            continue
        if match.start() > pos:
            yield expression[pos : match.start()], True
        yield match.group(), False
        pos = match.end()
    if pos < len(expression):
        yield expression[pos:], True


def column_references(expression: str | None) -> set[tuple[str, str]]:
    """Return every table-qualified ``(table, column)`` pair referenced in *expression*."""
    refs: set[tuple[str, str]] = set()
    if not expression or not expression.strip():
        return refs
    for text, is_code in code_segments(expression):
        if not is_code:
            continue
        for match in _COLUMN_REF_RE.finditer(text):
            table = unquote_name(match.group("table")).strip()
            column = unbracket(match.group("name")).strip()
            refs.add((table, column))
    return refs


def find_references(expression: str | None) -> list[ObjectRef]:
    """Return qualified and unqualified references in order of appearance."""
    refs: list[ObjectRef] = []
    if not expression:
        return refs
    for text, is_code in code_segments(expression):
        if not is_code:
            continue
        for match in _OBJECT_REF_RE.finditer(text):
            table = match.group("table")
            if table is None and match.start() > 0 and (
                text[match.start() - 1].isalnum() or text[match.start() - 1] in "_']"
            ):
                continue
            refs.append(
                ObjectRef(
                    unquote_name(table).strip() if table else None,
                    unbracket(match.group("name")).strip(),
                )
            )
    return refs


def sub_in_code(
    pattern: re.Pattern[str],
    repl: Callable[[re.Match[str]], str],
    expression: str,
) -> str:
    """Like ``pattern.sub`` but leaves string literals and comments untouched."""
    return "".join(
        pattern.sub(repl, text) if is_code else text
        for text, is_code in code_segments(expression)
    )
