"""Rename a table, column or measure and rewrite every formula that refers to it."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from tmdlkit.models.errors import InvalidArgumentError
from tmdlkit.models.tabular import Model, Table, name_key
from tmdlkit.parser.references import (
    bracket,
    is_bare_identifier,
    name_token_pattern,
    quote_name,
    sub_in_code,
    table_token_pattern,
)

logger = logging.getLogger("tmdlkit.rename")


class ObjectKind(StrEnum):
    TABLE = "table"
    COLUMN = "column"
    MEASURE = "measure"

    @classmethod
    def parse(cls, value: str | ObjectKind) -> ObjectKind:
        """Case-insensitive lookup; surrounding whitespace is ignored."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidArgumentError(
                f"Unsupported object kind '{value}'. Expected table | column | measure."
            ) from None


@dataclass
class RenameResult:
    """Outcome of a rename: what was renamed and which formulas changed."""

    kind: ObjectKind
    table: str | None
    old_name: str
    new_name: str
    rewritten: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Renamed {self.kind.value} '{self.old_name}' → '{self.new_name}'."


Rewriter = Callable[[str], str]


class RenameEngine:
    """Applies renames to an in-memory model.

    Every check runs before the first mutation: a missing target or a name
    collision raises and leaves the model untouched.
    """

    def rename(
        self,
        model: Model,
        kind: str | ObjectKind,
        old_name: str,
        new_name: str,
        table: str | None = None,
    ) -> RenameResult:
        kind = ObjectKind.parse(kind)
        if not new_name or not new_name.strip():
            raise InvalidArgumentError("New name must not be empty")
        if kind is not ObjectKind.TABLE and not (table and table.strip()):
            raise InvalidArgumentError(f"A table name is required to rename a {kind.value}")

        if kind is ObjectKind.TABLE:
            rewrite = self._rename_table(model, old_name, new_name)
        elif kind is ObjectKind.COLUMN:
            rewrite = self._rename_column(model, model.table(table or ""), old_name, new_name)
        else:
            rewrite = self._rename_measure(model, model.table(table or ""), old_name, new_name)

        result = RenameResult(kind=kind, table=table, old_name=old_name, new_name=new_name)
        if rewrite is None:
            return result
        for site in model.formulas():
            before = site.text
            if not before or not before.strip():
                continue
            after = rewrite(before)
            if after != before:
                site.text = after
                result.rewritten.append(site.location)
                logger.debug("Rewrote %s: %r -> %r", site.location, before, after)
        logger.info(
            "Renamed %s '%s' to '%s' (%d formulas rewritten)",
            kind.value,
            old_name,
            new_name,
            len(result.rewritten),
        )
        return result

    # -- per kind --------------------------------------------------------------
    # Each returns the formula rewriter, or None when the rename is a no-op.

    def _rename_table(self, model: Model, old_name: str, new_name: str) -> Rewriter | None:
        target = model.table(old_name)
        if target.name == new_name:
            return None
        model.tables.ensure_available(new_name, current=target, scope=model.scope)

        old_key = name_key(target.name)
        pattern = _table_prefix_pattern(target.name)
        model.tables.rename(target.name, new_name, scope=model.scope)
        for rel in model.relationships:
            if name_key(rel.from_table) == old_key:
                rel.from_table = new_name
            if name_key(rel.to_table) == old_key:
                rel.to_table = new_name

        def repl(match: re.Match[str]) -> str:
            return quote_name(new_name, force=match.group().startswith("'"))

        return lambda text: sub_in_code(pattern, repl, text)

    def _rename_column(
        self, model: Model, table: Table, old_name: str, new_name: str
    ) -> Rewriter | None:
        column = table.column(old_name)
        if column.name == new_name:
            return None
        table.columns.ensure_available(new_name, current=column, scope=table.scope)
        table.measures.ensure_available(new_name, scope=table.scope)

        old_key = name_key(column.name)
        table_key = name_key(table.name)
        pattern = re.compile(
            rf"(?P<table>{table_token_pattern(table.name)})"
            rf"(?P<ref>{name_token_pattern(column.name)})",
            re.IGNORECASE,
        )
        table.columns.rename(column.name, new_name, scope=table.scope)
        for rel in model.relationships:
            if name_key(rel.from_table) == table_key and name_key(rel.from_column) == old_key:
                rel.from_column = new_name
            if name_key(rel.to_table) == table_key and name_key(rel.to_column) == old_key:
                rel.to_column = new_name
        for hierarchy in table.hierarchies:
            for level in hierarchy.levels:
                if name_key(level.column) == old_key:
                    level.column = new_name

        def repl(match: re.Match[str]) -> str:
            return match.group("table") + bracket(new_name)

        return lambda text: sub_in_code(pattern, repl, text)

    def _rename_measure(
        self, model: Model, table: Table, old_name: str, new_name: str
    ) -> Rewriter | None:
        measure = table.measure(old_name)
        if measure.name == new_name:
            return None
        for other in model.tables:
            other.measures.ensure_available(new_name, current=measure, scope=other.scope)
        table.columns.ensure_available(new_name, scope=table.scope)

        pattern = re.compile(
            rf"(?P<table>{table_token_pattern(table.name)})?"
            rf"(?P<ref>{name_token_pattern(measure.name)})",
            re.IGNORECASE,
        )
        table.measures.rename(measure.name, new_name, scope=table.scope)

        def repl(match: re.Match[str]) -> str:
            qualifier = match.group("table")
            if qualifier is None and _follows_identifier(match):
                # Belongs to some other table's qualifier.
                return match.group()
            return (qualifier or "") + bracket(new_name)

        return lambda text: sub_in_code(pattern, repl, text)


def _table_prefix_pattern(table: str) -> re.Pattern[str]:
    """``'Table'`` anywhere in code, or bare ``Table`` directly before ``[``."""
    quoted = "'" + re.escape(table.replace("'", "''")) + "'"
    if not is_bare_identifier(table):
        return re.compile(quoted, re.IGNORECASE)
    bare = rf"(?<![\w']){re.escape(table)}(?=\[)"
    return re.compile(rf"{quoted}|{bare}", re.IGNORECASE)


def _follows_identifier(match: re.Match[str]) -> bool:
    start = match.start()
    if start == 0:
        return False
    before = match.string[start - 1]
    return before.isalnum() or before in "_']"
