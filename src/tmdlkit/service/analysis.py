"""Cross-reference analysis: columns that no formula refers to."""

from __future__ import annotations

from tmdlkit.models.tabular import Model, name_key
from tmdlkit.parser.references import column_references

NO_UNUSED_COLUMNS = "No unused columns detected."


def used_columns(model: Model) -> set[tuple[str, str]]:
    """Case-folded ``(table, column)`` pairs referenced by any formula in *model*."""
    used: set[tuple[str, str]] = set()
    for site in model.formulas():
        for table, column in column_references(site.text):
            used.add((name_key(table), name_key(column)))
    return used


def find_unused_columns(model: Model) -> list[str]:
    """Return ``Table[Column]`` for every column no formula references.

    Sorted case-insensitively.  Relationship keys and hierarchy levels do
    not count as uses; only formula text does.
    """
    used = used_columns(model)
    unused = [
        f"{table.name}[{column.name}]"
        for table in model.tables
        for column in table.columns
        if (name_key(table.name), name_key(column.name)) not in used
    ]
    return sorted(unused, key=name_key)


def render_unused_columns(unused: list[str]) -> str:
    return "\n".join(unused) if unused else NO_UNUSED_COLUMNS
