"""Structural validation: round-trip stability, reference integrity, relationship sanity."""

from __future__ import annotations

import difflib

from tmdlkit.models.errors import SemanticError, ValidationResult
from tmdlkit.models.tabular import Database, Model, name_key
from tmdlkit.parser.loader import TmdlLoader
from tmdlkit.parser.references import find_references
from tmdlkit.parser.writer import TmdlWriter
from tmdlkit.service.relationships import RelationshipGraph


class ModelValidator:
    """Checks a loaded model for problems that the text format cannot express.

    Errors make the model invalid; warnings are best-practice findings.
    Formula semantics are not checked, only the names formulas refer to.
    """

    def __init__(self, loader: TmdlLoader | None = None, writer: TmdlWriter | None = None) -> None:
        self._loader = loader or TmdlLoader()
        self._writer = writer or TmdlWriter()

    def validate(self, database: Database) -> ValidationResult:
        model = database.model
        errors: list[SemanticError] = []
        errors.extend(self._check_round_trip(database))
        errors.extend(self._check_unique_measure_names(model))
        errors.extend(self._check_formula_references(model))
        errors.extend(self._check_relationship_columns(model))
        errors.extend(self._check_hierarchy_levels(model))
        errors.extend(RelationshipGraph(model).ambiguous_paths())

        warnings: list[SemanticError] = []
        warnings.extend(self._check_unresolved_names(model))
        warnings.extend(self._check_measure_descriptions(model))
        warnings.extend(self._check_table_relationships(model))
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def _check_round_trip(self, database: Database) -> list[SemanticError]:
        """Serialize, reload and serialize again; both texts must match."""
        first = self._writer.dumps(database)
        reloaded, _ = self._loader.load_string(first, name=database.name)
        second = self._writer.dumps(reloaded)
        if first == second:
            return []
        for lineno, (a, b) in enumerate(zip(first.splitlines(), second.splitlines()), start=1):
            if a != b:
                detail = f"line {lineno}: {a.strip()!r} reloads as {b.strip()!r}"
                break
        else:
            detail = "reloaded text has a different number of lines"
        return [
            SemanticError(
                code="ROUND_TRIP_MISMATCH",
                message=f"Model does not survive a save/load cycle ({detail})",
            )
        ]

    def _check_unique_measure_names(self, model: Model) -> list[SemanticError]:
        """Measure names are model-wide and must not shadow a column of their table."""
        errors: list[SemanticError] = []
        seen: dict[str, str] = {}  # measure key -> owning table
        for table in model.tables:
            for measure in table.measures:
                path = f"tables.{table.name}.measures.{measure.name}"
                key = name_key(measure.name)
                if key in seen:
                    errors.append(
                        SemanticError(
                            code="DUPLICATE_MEASURE_NAME",
                            message=(
                                f"Measure '{measure.name}' in table '{table.name}' conflicts "
                                f"with the measure of the same name in '{seen[key]}'"
                            ),
                            path=path,
                        )
                    )
                else:
                    seen[key] = table.name
                if measure.name in table.columns:
                    errors.append(
                        SemanticError(
                            code="MEASURE_COLUMN_NAME_CLASH",
                            message=(
                                f"Measure '{measure.name}' has the same name as a column "
                                f"of table '{table.name}'"
                            ),
                            path=path,
                        )
                    )
        return errors

    def _check_formula_references(self, model: Model) -> list[SemanticError]:
        """Table-qualified references must name a known table and one of its members."""
        errors: list[SemanticError] = []
        measure_names = {name_key(m.name) for t in model.tables for m in t.measures}
        for site in model.formulas():
            path = f"tables.{site.table}.{site.kind}s.{site.name}"
            for ref in find_references(site.text):
                if ref.table is None:
                    continue
                table = model.tables.find(ref.table)
                if table is None:
                    errors.append(
                        SemanticError(
                            code="UNKNOWN_TABLE_REF",
                            message=(
                                f"{site.location} references unknown table '{ref.table}'"
                            ),
                            path=path,
                            suggestions=_suggest_similar(ref.table, model.tables.names()),
                        )
                    )
                elif ref.name not in table.columns and name_key(ref.name) not in measure_names:
                    errors.append(
                        SemanticError(
                            code="UNKNOWN_COLUMN_REF",
                            message=(
                                f"{site.location} references unknown column "
                                f"'{ref.name}' in table '{table.name}'"
                            ),
                            path=path,
                            suggestions=_suggest_similar(
                                ref.name, table.columns.names() + table.measures.names()
                            ),
                        )
                    )
        return errors

    def _check_unresolved_names(self, model: Model) -> list[SemanticError]:
        """Unqualified ``[Name]`` that is neither a measure nor a column of the own table.

        Only a warning: virtual columns added inside an expression are
        referenced the same way.
        """
        warnings: list[SemanticError] = []
        measures = [m.name for t in model.tables for m in t.measures]
        measure_keys = {name_key(name) for name in measures}
        for site in model.formulas():
            own = model.table(site.table)
            for ref in find_references(site.text):
                if ref.table is not None:
                    continue
                if name_key(ref.name) in measure_keys or ref.name in own.columns:
                    continue
                warnings.append(
                    SemanticError(
                        code="UNRESOLVED_NAME_REF",
                        message=(
                            f"{site.location} references '[{ref.name}]', which is neither "
                            f"a measure nor a column of table '{own.name}'"
                        ),
                        path=f"tables.{site.table}.{site.kind}s.{site.name}",
                        suggestions=_suggest_similar(ref.name, measures + own.columns.names()),
                    )
                )
        return warnings

    def _check_relationship_columns(self, model: Model) -> list[SemanticError]:
        """Both ends of every relationship must exist."""
        errors: list[SemanticError] = []
        for rel in model.relationships:
            for table_name, column_name in rel.endpoints():
                table = model.tables.find(table_name)
                if table is not None and column_name in table.columns:
                    continue
                candidates = table.columns.names() if table else model.tables.names()
                missing = column_name if table else table_name
                errors.append(
                    SemanticError(
                        code="UNKNOWN_RELATIONSHIP_COLUMN",
                        message=(
                            f"Relationship '{rel.name}' refers to missing column "
                            f"{table_name}.{column_name}"
                        ),
                        path=f"relationships.{rel.name}",
                        suggestions=_suggest_similar(missing, candidates),
                    )
                )
        return errors

    def _check_hierarchy_levels(self, model: Model) -> list[SemanticError]:
        errors: list[SemanticError] = []
        for table in model.tables:
            for hierarchy in table.hierarchies:
                for level in hierarchy.levels:
                    if level.column in table.columns:
                        continue
                    errors.append(
                        SemanticError(
                            code="UNKNOWN_LEVEL_COLUMN",
                            message=(
                                f"Level '{level.name}' of hierarchy '{hierarchy.name}' uses "
                                f"missing column '{level.column}' of table '{table.name}'"
                            ),
                            path=f"tables.{table.name}.hierarchies.{hierarchy.name}",
                            suggestions=_suggest_similar(level.column, table.columns.names()),
                        )
                    )
        return errors

    def _check_measure_descriptions(self, model: Model) -> list[SemanticError]:
        warnings: list[SemanticError] = []
        for table in model.tables:
            for measure in table.measures:
                if measure.description and measure.description.strip():
                    continue
                warnings.append(
                    SemanticError(
                        code="MISSING_DESCRIPTION",
                        message=(
                            f"Measure '{measure.name}' in table '{table.name}' "
                            "has no description"
                        ),
                        path=f"tables.{table.name}.measures.{measure.name}",
                    )
                )
        return warnings

    def _check_table_relationships(self, model: Model) -> list[SemanticError]:
        if len(model.tables) < 2:
            return []
        return [
            SemanticError(
                code="TABLE_WITHOUT_RELATIONSHIP",
                message=f"Table '{name}' is not part of any relationship",
                path=f"tables.{name}",
            )
            for name in RelationshipGraph(model).unrelated_tables()
        ]


def _suggest_similar(name: str, candidates: list[str], max_suggestions: int = 3) -> list[str]:
    """Suggest similar names for 'did you mean?' messages."""
    by_key = {name_key(candidate): candidate for candidate in candidates}
    matches = difflib.get_close_matches(name_key(name), list(by_key), n=max_suggestions)
    return [by_key[match] for match in matches]
