"""TMDL text loader: pattern-based extraction of a model graph from a folder or file.

Loading is best effort.  A missing path or root document yields an empty
database and a ``NOT_FOUND`` warning; malformed fragments are skipped with a
warning; an unexpected failure returns whatever was built so far.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from enum import StrEnum
from pathlib import Path
from typing import TypeVar

from pydantic import ValidationError

from tmdlkit.models.errors import DuplicateNameError, MalformedError, SemanticError, TmdlError
from tmdlkit.models.tabular import (
    CalculatedColumn,
    CrossFilteringBehavior,
    Database,
    DataColumn,
    DataType,
    Hierarchy,
    Level,
    Measure,
    Model,
    Partition,
    PartitionMode,
    Relationship,
    Table,
    normalize_expression,
)
from tmdlkit.parser.references import IDENT, QUOTED_TOKEN, STRING_OR_COMMENT, unquote_name

logger = logging.getLogger("tmdlkit.parser")

E = TypeVar("E", bound=StrEnum)

DEFAULT_ROOT_DOCUMENT = "model.tmdl"
DEFINITION_FOLDER = "definition"

_TOP_LEVEL_RE = re.compile(
    rf"^[ \t]*(?P<keyword>model|table|relationship)[ \t]+(?P<name>{IDENT})", re.MULTILINE
)
_MEMBER_RE = re.compile(
    rf"^(?P<indent>[ \t]*)(?P<keyword>column|measure|hierarchy|partition)[ \t]+(?P<name>{IDENT})"
    r"(?:[ \t]*(?P<assign>=)[ \t]*(?P<brace>\{)?)?",
    re.MULTILINE,
)
_LEVEL_RE = re.compile(rf"^[ \t]*level[ \t]+(?P<name>{IDENT})", re.MULTILINE)
_PROPERTY_RE = re.compile(
    r"^[ \t]*(?P<key>[A-Za-z]\w*)[ \t]*:[ \t]*(?P<value>[^\n]*?)[ \t]*$", re.MULTILINE
)
_SOURCE_RE = re.compile(r"^(?P<indent>[ \t]*)source[ \t]*=[ \t]*(?P<brace>\{)?", re.MULTILINE)
# Lines that end a formula written without braces.
_CONTINUATION_STOP_RE = re.compile(
    r"^[ \t]*(?:[A-Za-z]\w*[ \t]*:"
    r"|(?:annotation|changedProperty|extendedProperty)[ \t]"
    r"|(?:column|measure|hierarchy|partition|level)[ \t]+[\w']|source[ \t]*=)"
)
_BRACE_SCAN_RE = re.compile(
    rf"{STRING_OR_COMMENT}|{QUOTED_TOKEN}|(?P<brace>[{{}}])", re.DOTALL
)
_NON_NEWLINE_RE = re.compile(r"[^\n]")
_COLUMN_PATH_RE = re.compile(rf"^(?P<table>{IDENT})\.(?P<column>{IDENT})$")
_TEXT_ESCAPE_RE = re.compile(r'""|\\[\\nr]')
_TEXT_UNESCAPES = {'""': '"', "\\\\": "\\", "\\n": "\n", "\\r": "\r"}


# ---------------------------------------------------------------------------
# Text helpers (shared with the writer)
# ---------------------------------------------------------------------------


def mask_blocks(text: str) -> str:
    """Blank out the contents of every outermost ``{ ... }`` block.

    Braces themselves and newlines are kept, so offsets in the result line
    up with *text* and keyword patterns never match inside a block.  Braces
    inside string literals, comments, quoted names and ``[...]`` references
    are not counted.  An unclosed block is masked to the end of the text.
    """
    out = list(text)
    depth = 0
    start = 0
    for match in _BRACE_SCAN_RE.finditer(text):
        brace = match.group("brace")
        if brace == "{":
            depth += 1
            if depth == 1:
                start = match.end()
        elif brace == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                out[start : match.start()] = _NON_NEWLINE_RE.sub(" ", text[start : match.start()])
    if depth > 0:
        out[start:] = _NON_NEWLINE_RE.sub(" ", text[start:])
    return "".join(out)


def unquote_text(value: str) -> str:
    """Decode a property value written by ``quote_text`` (bare values pass through)."""
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return _TEXT_ESCAPE_RE.sub(lambda m: _TEXT_UNESCAPES[m.group()], value[1:-1])
    return value


def _read_unbraced(text: str, start: int, header_indent: int) -> tuple[str, int]:
    """Formula written without braces: the rest of the header line plus the
    lines below it that are indented deeper than the header and are not
    properties or child objects.  Returns the raw text and its end offset."""
    end = text.find("\n", start)
    if end == -1:
        return text[start:], len(text)
    pos = end + 1
    while pos < len(text):
        line_end = text.find("\n", pos)
        if line_end == -1:
            line_end = len(text)
        line = text[pos:line_end]
        if line.strip():
            if _indent_width(line) <= header_indent or _CONTINUATION_STOP_RE.match(line):
                break
            end = line_end
        pos = line_end + 1
    return text[start:end], end


def _indent_width(line: str) -> int:
    return len(line) - len(line.lstrip(" \t"))


def locate_root_document(path: Path, root_document: str = DEFAULT_ROOT_DOCUMENT) -> Path | None:
    """Find the root document for *path*: the file itself, ``<path>/<root>``,
    or ``<path>/definition/<root>``."""
    if path.is_file():
        return path
    if not path.is_dir():
        return None
    for candidate in (path / root_document, path / DEFINITION_FOLDER / root_document):
        if candidate.is_file():
            return candidate
    return None


def default_model_name(path: Path) -> str:
    """Name for a model loaded from *path* when the text does not declare one."""
    if path.suffix.lower() == ".tmdl":
        if path.stem.lower() == "model":
            parent = path.parent
            if parent.name.lower() == DEFINITION_FOLDER:
                parent = parent.parent
            return parent.name or path.stem
        return path.stem
    return path.name or str(path)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class TmdlLoader:
    """Builds a ``Database`` from TMDL text.

    The matching is lexical: headers are found with patterns, blocks by
    balanced braces.  Names that are not plain identifiers must be single
    quoted.
    """

    def __init__(self, root_document: str = DEFAULT_ROOT_DOCUMENT) -> None:
        self._root_document = root_document

    # -- public loading API --------------------------------------------------

    def resolve_document(self, path: Path | str) -> Path | None:
        return locate_root_document(Path(path), self._root_document)

    def load(self, path: Path | str) -> tuple[Database, list[SemanticError]]:
        """Load a model folder or document.  Never raises for missing input."""
        path = Path(path)
        if not path.exists():
            return self._empty(
                path.name or str(path), f"Path '{path}' does not exist; returning an empty model"
            )
        name = default_model_name(path)
        document = self.resolve_document(path)
        if document is None:
            return self._empty(
                name,
                f"{self._root_document} not found in '{path}' "
                f"or its '{DEFINITION_FOLDER}' subfolder; returning an empty model",
            )
        try:
            content = document.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return self._empty(name, f"Could not read '{document}': {exc}", code="READ_ERROR")
        database, warnings = self.load_string(content, name=name)
        logger.info(
            "Loaded model '%s' from %s (%d tables)",
            database.name,
            document,
            len(database.model.tables),
        )
        return database, warnings

    def load_string(
        self, content: str, name: str = "Model"
    ) -> tuple[Database, list[SemanticError]]:
        """Load TMDL from a string.  Returns the best partial graph on failure."""
        database = Database(name=name, model=Model(name=name))
        warnings: list[SemanticError] = []
        try:
            self._parse_document(content, database, warnings)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error while parsing TMDL for '%s'", name)
            warnings.append(
                SemanticError(
                    code="PARSE_ERROR",
                    message=f"Parsing stopped early: {exc}",
                )
            )
        for warning in warnings:
            logger.warning("[%s] %s", warning.code, warning.message)
        return database, warnings

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _empty(
        name: str, message: str, code: str = "NOT_FOUND"
    ) -> tuple[Database, list[SemanticError]]:
        logger.warning(message)
        return Database(name=name, model=Model(name=name)), [
            SemanticError(code=code, message=message)
        ]

    def _parse_document(
        self, content: str, database: Database, warnings: list[SemanticError]
    ) -> None:
        masked = mask_blocks(content)
        model = database.model
        pos = 0
        while True:
            match = _TOP_LEVEL_RE.search(masked, pos)
            if match is None:
                break
            keyword = match.group("keyword")
            name = unquote_name(match.group("name"))
            pos = match.end()

            if keyword == "model":
                database.name = name
                model.name = name
                continue

            if keyword == "relationship":
                following = _TOP_LEVEL_RE.search(masked, pos)
                end = following.start() if following else len(content)
                self._add_member(
                    warnings,
                    f"relationship '{name}'",
                    lambda: model.add_relationship(
                        self._parse_relationship(name, content[pos:end], masked[pos:end])
                    ),
                )
                pos = end
                continue

            table = Table(name=name)
            open_idx = masked.find("{", pos)
            if open_idx == -1 or masked[pos:open_idx].strip():
                warnings.append(
                    SemanticError(
                        code="MALFORMED",
                        message=f"Table '{name}' has no '{{' body; added without members",
                        path=f"tables.{name}",
                    )
                )
            else:
                close_idx = masked.find("}", open_idx + 1)
                if close_idx == -1:
                    warnings.append(
                        SemanticError(
                            code="MALFORMED",
                            message=f"Table '{name}' body is not closed; read to end of text",
                            path=f"tables.{name}",
                        )
                    )
                    close_idx = len(content)
                self._parse_table_body(table, content[open_idx + 1 : close_idx], warnings)
                pos = close_idx + 1
            self._add_member(warnings, f"table '{name}'", lambda: model.add_table(table))

    def _parse_table_body(
        self, table: Table, body: str, warnings: list[SemanticError]
    ) -> None:
        masked = mask_blocks(body)
        first = _MEMBER_RE.search(masked)
        head_end = first.start() if first else len(body)
        props = _properties(body[:head_end], masked[:head_end])
        if "description" in props:
            table.description = unquote_text(props["description"])

        pos = 0
        while True:
            match = _MEMBER_RE.search(masked, pos)
            if match is None:
                break
            keyword = match.group("keyword")
            name = unquote_name(match.group("name"))
            expression: str | None = None
            cursor = match.end()
            if match.group("brace"):
                close_idx = masked.find("}", cursor)
                if close_idx == -1:
                    warnings.append(
                        SemanticError(
                            code="MALFORMED",
                            message=f"Expression of {keyword} '{name}' is not closed",
                            path=f"tables.{table.name}.{keyword}s.{name}",
                        )
                    )
                    close_idx = len(body)
                expression = normalize_expression(body[cursor:close_idx])
                cursor = close_idx + 1
            elif match.group("assign") and keyword in ("column", "measure"):
                raw, cursor = _read_unbraced(body, cursor, len(match.group("indent")))
                expression = normalize_expression(raw)
            following = _MEMBER_RE.search(masked, cursor)
            end = following.start() if following else len(body)
            region, masked_region = body[cursor:end], masked[cursor:end]
            pos = end

            path = f"tables.{table.name}.{keyword}s.{name}"
            if keyword == "column":
                self._add_member(
                    warnings,
                    f"column '{name}' in table '{table.name}'",
                    lambda: table.add_column(
                        self._parse_column(name, expression, region, masked_region, path, warnings)
                    ),
                )
            elif keyword == "measure":
                props = _properties(region, masked_region)
                self._add_member(
                    warnings,
                    f"measure '{name}' in table '{table.name}'",
                    lambda: table.add_measure(
                        Measure(
                            name=name,
                            expression=expression or "",
                            format_string=_optional_text(props.get("formatString")),
                            description=_optional_text(props.get("description")),
                        )
                    ),
                )
            elif keyword == "hierarchy":
                self._add_member(
                    warnings,
                    f"hierarchy '{name}' in table '{table.name}'",
                    lambda: table.add_hierarchy(self._parse_hierarchy(name, region, masked_region)),
                )
            else:
                self._add_member(
                    warnings,
                    f"partition '{name}' in table '{table.name}'",
                    lambda: table.add_partition(
                        self._parse_partition(name, region, masked_region, path, warnings)
                    ),
                )

    def _parse_column(
        self,
        name: str,
        expression: str | None,
        region: str,
        masked: str,
        path: str,
        warnings: list[SemanticError],
    ) -> DataColumn | CalculatedColumn:
        props = _properties(region, masked)
        data_type = _enum_value(DataType, props.get("dataType"), f"{path}.dataType", warnings)
        description = _optional_text(props.get("description"))
        if expression is not None:
            return CalculatedColumn(
                name=name, expression=expression, data_type=data_type, description=description
            )
        return DataColumn(
            name=name,
            data_type=data_type,
            source_column=_optional_text(props.get("sourceColumn")),
            description=description,
        )

    def _parse_hierarchy(self, name: str, region: str, masked: str) -> Hierarchy:
        levels: list[Level] = []
        matches = list(_LEVEL_RE.finditer(masked))
        for i, match in enumerate(matches):
            end = matches[i + 1].start() if i + 1 < len(matches) else len(region)
            props = _properties(region[match.end() : end], masked[match.end() : end])
            level_name = unquote_name(match.group("name"))
            levels.append(
                Level(name=level_name, column=unquote_name(props.get("column", level_name)))
            )
        return Hierarchy(name=name, levels=levels)

    def _parse_partition(
        self,
        name: str,
        region: str,
        masked: str,
        path: str,
        warnings: list[SemanticError],
    ) -> Partition:
        props = _properties(region, masked)
        mode = _enum_value(PartitionMode, props.get("mode"), f"{path}.mode", warnings)
        source = ""
        match = _SOURCE_RE.search(masked)
        if match is not None and match.group("brace"):
            close_idx = masked.find("}", match.end())
            if close_idx == -1:
                close_idx = len(region)
            source = normalize_expression(region[match.end() : close_idx])
        elif match is not None:
            raw, _ = _read_unbraced(region, match.end(), len(match.group("indent")))
            source = normalize_expression(raw)
        return Partition(name=name, mode=mode or PartitionMode.IMPORT, source=source)

    def _parse_relationship(self, name: str, block: str, masked: str) -> Relationship:
        props = _properties(block, masked)
        from_table, from_column = _column_path(props.get("fromColumn"), name, "fromColumn")
        to_table, to_column = _column_path(props.get("toColumn"), name, "toColumn")
        behavior = props.get("crossFilteringBehavior", CrossFilteringBehavior.ONE_DIRECTION)
        is_active = props.get("isActive", "true").strip().lower() != "false"
        return Relationship(
            name=name,
            from_table=from_table,
            from_column=from_column,
            to_table=to_table,
            to_column=to_column,
            cross_filtering_behavior=behavior,
            is_active=is_active,
        )

    @staticmethod
    def _add_member(
        warnings: list[SemanticError], label: str, add: Callable[[], object]
    ) -> None:
        """Run *add*, turning model-rule violations into warnings."""
        try:
            add()
        except DuplicateNameError as exc:
            warnings.append(
                SemanticError(code="DUPLICATE_NAME", message=f"Skipped {label}: {exc}")
            )
        except TmdlError as exc:
            warnings.append(SemanticError(code="MALFORMED", message=f"Skipped {label}: {exc}"))
        except (ValidationError, ValueError) as exc:
            warnings.append(SemanticError(code="MALFORMED", message=f"Skipped {label}: {exc}"))


def _properties(region: str, masked: str) -> dict[str, str]:
    """``key: value`` lines of *region*, located via its masked twin."""
    props: dict[str, str] = {}
    for match in _PROPERTY_RE.finditer(masked):
        props.setdefault(match.group("key"), region[match.start("value") : match.end("value")])
    return props


def _optional_text(value: str | None) -> str | None:
    return None if value is None else unquote_text(value)


def _enum_value(
    enum_type: type[E], value: str | None, path: str, warnings: list[SemanticError]
) -> E | None:
    if value is None:
        return None
    try:
        return enum_type(value)
    except ValueError:
        warnings.append(
            SemanticError(
                code="MALFORMED",
                message=f"Unknown value '{value}' for {path}; ignored",
                path=path,
                suggestions=[member.value for member in enum_type],
            )
        )
        return None


def _column_path(value: str | None, relationship: str, key: str) -> tuple[str, str]:
    match = _COLUMN_PATH_RE.match(value.strip()) if value else None
    if match is None:
        raise MalformedError(
            f"relationship '{relationship}' has no valid {key} (expected Table.Column)"
        )
    return unquote_name(match.group("table")), unquote_name(match.group("column"))
