"""Relationship graph: tables as nodes, active relationships as edges. Uses networkx."""

from __future__ import annotations

import networkx as nx

from tmdlkit.models.errors import SemanticError
from tmdlkit.models.tabular import Model, name_key


class RelationshipGraph:
    """Undirected graph of the tables of a model joined by relationships.

    Only active relationships take part in filter propagation, so only they
    are edges of the ambiguity graph.  Inactive ones are still counted when
    asking whether a table is related at all.
    """

    def __init__(self, model: Model) -> None:
        self._graph: nx.Graph[str] = nx.Graph()
        self._names: dict[str, str] = {}
        self._related: set[str] = set()
        self._build(model)

    def _build(self, model: Model) -> None:
        for table in model.tables:
            key = name_key(table.name)
            self._names[key] = table.name
            self._graph.add_node(key)

        for rel in model.relationships:
            u, v = name_key(rel.from_table), name_key(rel.to_table)
            if u not in self._names or v not in self._names:
                continue
            self._related.update((u, v))
            if not rel.is_active or u == v:
                continue
            if self._graph.has_edge(u, v):
                self._graph.edges[u, v]["relationships"].append(rel.name)
            else:
                self._graph.add_edge(u, v, relationships=[rel.name])

    def unrelated_tables(self) -> list[str]:
        """Tables that appear in no relationship, active or not."""
        return [name for key, name in self._names.items() if key not in self._related]

    def ambiguous_paths(self) -> list[SemanticError]:
        """Report table pairs that can be reached along more than one active path."""
        errors: list[SemanticError] = []
        for u, v, data in self._graph.edges(data=True):
            names = data["relationships"]
            if len(names) > 1:
                errors.append(
                    SemanticError(
                        code="AMBIGUOUS_RELATIONSHIP_PATH",
                        message=(
                            f"Tables '{self._names[u]}' and '{self._names[v]}' are joined by "
                            f"{len(names)} active relationships ({', '.join(names)})"
                        ),
                        path=f"relationships.{names[1]}",
                    )
                )
        for cycle in nx.cycle_basis(self._graph):
            tables = sorted((self._names[n] for n in cycle), key=name_key)
            errors.append(
                SemanticError(
                    code="AMBIGUOUS_RELATIONSHIP_PATH",
                    message=(
                        "Active relationships form a loop between "
                        f"{', '.join(repr(t) for t in tables)}; "
                        "filter paths between these tables are ambiguous"
                    ),
                    path="relationships",
                )
            )
        return errors
