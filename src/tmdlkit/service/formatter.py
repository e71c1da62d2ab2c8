"""Canonical ordering so that re-serialized models diff cleanly."""

from __future__ import annotations

from tmdlkit.models.tabular import Model


def format_model(model: Model) -> None:
    """Sort tables and, inside each table, columns, measures and hierarchies by name.

    Sorting is case-insensitive and stable.  Partitions, hierarchy levels and
    relationships keep their order.
    """
    model.tables.sort_by_name()
    for table in model.tables:
        table.columns.sort_by_name()
        table.measures.sort_by_name()
        table.hierarchies.sort_by_name()
