"""TMDL text writer: deterministic serialization of a model graph.

Output follows the collection order of the graph, so two graphs with the
same content and order always produce the same bytes.  Call the formatter
first when a canonical order is wanted.
"""

from __future__ import annotations

import logging
from pathlib import Path

from tmdlkit.models.tabular import (
    CalculatedColumn,
    Column,
    Database,
    Hierarchy,
    Measure,
    Partition,
    Relationship,
    Table,
)
from tmdlkit.parser.loader import DEFAULT_ROOT_DOCUMENT, DEFINITION_FOLDER
from tmdlkit.parser.references import code_segments, is_bare_identifier, quote_name

logger = logging.getLogger("tmdlkit.parser")

INDENT = "    "


def quote_text(value: str) -> str:
    """Encode free text as a double-quoted property value (inverse of ``unquote_text``)."""
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '""')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )
    return f'"{escaped}"'


def _identifier_text(value: str) -> str:
    return value if is_bare_identifier(value) else quote_text(value)


def _has_line_comment(expression: str) -> bool:
    return any(
        not is_code and text.startswith(("//", "--"))
        for text, is_code in code_segments(expression)
    )


def _expression_lines(header: str, expression: str, indent: int) -> list[str]:
    """``header = { expr }`` on one line, or a block indented one level deeper."""
    pad = INDENT * indent
    if "\n" not in expression and not _has_line_comment(expression):
        body = expression.strip()
        return [f"{pad}{header} = {{ {body} }}" if body else f"{pad}{header} = {{ }}"]
    lines = [f"{pad}{header} = {{"]
    for line in expression.split("\n"):
        lines.append(f"{pad}{INDENT}{line}" if line.strip() else "")
    lines.append(f"{pad}}}")
    return lines


class TmdlWriter:
    """Serializes a ``Database`` to the root document of a model folder."""

    def __init__(self, root_document: str = DEFAULT_ROOT_DOCUMENT) -> None:
        self._root_document = root_document

    def dumps(self, database: Database) -> str:
        model = database.model
        blocks: list[list[str]] = [[f"model {quote_name(model.name or database.name)}"]]
        for table in model.tables:
            blocks.append(self._table_lines(table))
        for relationship in model.relationships:
            blocks.append(self._relationship_lines(relationship))
        return "\n\n".join("\n".join(block) for block in blocks) + "\n"

    def target_path(self, path: Path | str) -> Path:
        """Where ``save`` writes for *path*.

        An existing file or a ``.tmdl`` path is the document itself.  For a
        folder, an existing ``definition/<root>`` is kept in place; otherwise
        ``<folder>/<root>``.
        """
        path = Path(path)
        if path.is_file() or path.suffix.lower() == ".tmdl":
            return path
        project_style = path / DEFINITION_FOLDER / self._root_document
        if project_style.is_file():
            return project_style
        return path / self._root_document

    def save(self, database: Database, path: Path | str) -> Path:
        """Write *database* under *path*, creating folders as needed.  Returns the file."""
        target = self.target_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_text(self.dumps(database), encoding="utf-8")
        tmp.replace(target)
        logger.info("Saved model '%s' to %s", database.name, target)
        return target

    # -- entity templates ----------------------------------------------------

    def _table_lines(self, table: Table) -> list[str]:
        lines = [f"table {quote_name(table.name)}", "{"]
        if table.description is not None:
            lines.append(f"{INDENT}description: {quote_text(table.description)}")
        for column in table.columns:
            lines.extend(self._column_lines(column))
        for measure in table.measures:
            lines.extend(self._measure_lines(measure))
        for hierarchy in table.hierarchies:
            lines.extend(self._hierarchy_lines(hierarchy))
        for partition in table.partitions:
            lines.extend(self._partition_lines(partition))
        lines.append("}")
        return lines

    def _column_lines(self, column: Column) -> list[str]:
        prop = INDENT * 2
        name = quote_name(column.name)
        if isinstance(column, CalculatedColumn):
            lines = _expression_lines(f"column {name}", column.expression, 1)
        else:
            lines = [f"{INDENT}column {name}"]
        if column.data_type is not None:
            lines.append(f"{prop}dataType: {column.data_type.value}")
        if not isinstance(column, CalculatedColumn) and column.source_column is not None:
            lines.append(f"{prop}sourceColumn: {_identifier_text(column.source_column)}")
        if column.description is not None:
            lines.append(f"{prop}description: {quote_text(column.description)}")
        return lines

    def _measure_lines(self, measure: Measure) -> list[str]:
        prop = INDENT * 2
        header = f"measure {quote_name(measure.name, force=True)}"
        lines = _expression_lines(header, measure.expression, 1)
        if measure.format_string is not None:
            lines.append(f"{prop}formatString: {quote_text(measure.format_string)}")
        if measure.description is not None:
            lines.append(f"{prop}description: {quote_text(measure.description)}")
        return lines

    def _hierarchy_lines(self, hierarchy: Hierarchy) -> list[str]:
        lines = [f"{INDENT}hierarchy {quote_name(hierarchy.name)}"]
        for level in hierarchy.levels:
            lines.append(f"{INDENT * 2}level {quote_name(level.name)}")
            lines.append(f"{INDENT * 3}column: {quote_name(level.column)}")
        return lines

    def _partition_lines(self, partition: Partition) -> list[str]:
        lines = [
            f"{INDENT}partition {quote_name(partition.name)}",
            f"{INDENT * 2}mode: {partition.mode.value}",
        ]
        if partition.source:
            lines.extend(_expression_lines("source", partition.source, 2))
        return lines

    def _relationship_lines(self, relationship: Relationship) -> list[str]:
        from_ref = f"{quote_name(relationship.from_table)}.{quote_name(relationship.from_column)}"
        to_ref = f"{quote_name(relationship.to_table)}.{quote_name(relationship.to_column)}"
        return [
            f"relationship {quote_name(relationship.name)}",
            f"{INDENT}fromColumn: {from_ref}",
            f"{INDENT}toColumn: {to_ref}",
            f"{INDENT}crossFilteringBehavior: {relationship.cross_filtering_behavior.value}",
            f"{INDENT}isActive: {'true' if relationship.is_active else 'false'}",
        ]
