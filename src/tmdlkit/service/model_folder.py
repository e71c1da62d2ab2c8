"""Model folder operations: the service layer shared by the MCP and REST surfaces.

Every operation loads the folder fresh, works on the in-memory graph and,
when it mutates, saves once at the end.  Nothing is cached between calls.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from tmdlkit.models.definition import ModelDefinition
from tmdlkit.models.errors import (
    MalformedError,
    OperationCancelledError,
    SemanticError,
    TmdlError,
    ValidationResult,
)
from tmdlkit.models.tabular import Database, Measure, Model, Relationship, normalize_expression
from tmdlkit.parser.loader import DEFINITION_FOLDER, TmdlLoader
from tmdlkit.parser.validator import ModelValidator
from tmdlkit.parser.writer import TmdlWriter
from tmdlkit.service.analysis import find_unused_columns
from tmdlkit.service.diff import DiffStreamer
from tmdlkit.service.formatter import format_model
from tmdlkit.service.progress import ProgressReporter, check_cancelled
from tmdlkit.service.rename import ObjectKind, RenameEngine, RenameResult
from tmdlkit.settings import Settings

logger = logging.getLogger("tmdlkit.service")

# Loader findings that mean the text itself is broken.
_STRUCTURAL_CODES = frozenset({"MALFORMED", "DUPLICATE_NAME", "PARSE_ERROR", "READ_ERROR"})

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class LoadSummary:
    """Result of loading a model folder."""

    model_name: str
    document: Path | None
    tables: int
    measures: int
    columns: int
    warnings: list[SemanticError]


@dataclass
class MeasureSaved:
    """Result of ``add_measure``."""

    table: str
    name: str
    created: bool
    path: Path

    @property
    def message(self) -> str:
        return f"Measure '{self.name}' saved."


@dataclass
class FormatResult:
    path: Path
    tables: int
    changed: bool


@dataclass
class CreateModelResult:
    """Outcome of ``create_model``; ``saved`` is False on failure or cancellation."""

    model_name: str
    created_tables: list[str] = field(default_factory=list)
    skipped_tables: list[str] = field(default_factory=list)
    relationships: list[str] = field(default_factory=list)
    saved: bool = False
    path: Path | None = None
    transcript: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# ModelFolderService
# ---------------------------------------------------------------------------


class ModelFolderService:
    """Stateless facade over loader, writer, rename engine, analyzers and diff."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or Settings()
        self._loader = TmdlLoader(root_document=self._settings.root_document)
        self._writer = TmdlWriter(root_document=self._settings.root_document)
        self._validator = ModelValidator(self._loader, self._writer)
        self._renamer = RenameEngine()

    # -- load / save ---------------------------------------------------------

    def load(self, path: Path | str) -> tuple[Database, list[SemanticError]]:
        return self._loader.load(path)

    def save(self, database: Database, path: Path | str) -> Path:
        return self._writer.save(database, path)

    def load_for_edit(self, path: Path | str) -> Database:
        """Load *path* for an operation that saves it back.

        Raises ``MalformedError`` when the loader had to skip or swallow text,
        so a damaged reading never overwrites the document.
        """
        database, warnings = self._loader.load(path)
        structural = [w.message for w in warnings if w.code in _STRUCTURAL_CODES]
        if structural:
            raise MalformedError(
                f"Model at '{path}' was not read cleanly; nothing was changed: "
                + "; ".join(structural)
            )
        return database

    def load_model(
        self, path: Path | str, progress: ProgressReporter | None = None
    ) -> LoadSummary:
        """Load *path* and summarize it, reporting each step."""
        progress = progress or ProgressReporter()
        path = Path(path)
        progress.report(f"Loading model from '{path}'...")
        document = self._loader.resolve_document(path)
        if document is not None and document.parent.name.lower() == DEFINITION_FOLDER:
            progress.report(f"Found {document.name} in definition subfolder")
        database, warnings = self._loader.load(path)
        for warning in warnings:
            progress.report(f"⚠ {warning.message}")
        model = database.model
        summary = LoadSummary(
            model_name=model.name or database.name,
            document=document,
            tables=len(model.tables),
            measures=model.measure_count,
            columns=model.column_count,
            warnings=warnings,
        )
        progress.report(f"✔ Model '{summary.model_name}' loaded")
        progress.report(f"✔ Tables: {summary.tables}")
        progress.report(f"✔ Measures (total): {summary.measures}")
        return summary

    # -- queries -------------------------------------------------------------

    def list_tables(self, path: Path | str) -> list[str]:
        database, _ = self._loader.load(path)
        return database.model.tables.names()

    def list_measures(self, path: Path | str, table: str) -> list[str]:
        """Measure names of *table*; raises ``ObjectNotFoundError`` if it is missing."""
        database, _ = self._loader.load(path)
        return database.model.table(table).measures.names()

    def detect_unused_columns(self, path: Path | str) -> list[str]:
        database, _ = self._loader.load(path)
        return find_unused_columns(database.model)

    # -- edits ---------------------------------------------------------------

    def add_measure(
        self,
        path: Path | str,
        table: str,
        name: str,
        expression: str,
        format_string: str | None = None,
        description: str | None = None,
    ) -> MeasureSaved:
        """Insert a measure, or update the one with the same name (case-insensitive)."""
        database = self.load_for_edit(path)
        target = database.model.table(table)
        existing = target.measures.find(name)
        if existing is None:
            for other in database.model.tables:
                other.measures.ensure_available(name, scope=other.scope)
            target.columns.ensure_available(name, scope=target.scope)
            target.add_measure(
                Measure(
                    name=name,
                    expression=expression,
                    format_string=format_string,
                    description=description,
                )
            )
        else:
            existing.expression = normalize_expression(expression)
            if format_string is not None:
                existing.format_string = format_string
            if description is not None:
                existing.description = description
        saved_to = self._writer.save(database, path)
        logger.info(
            "%s measure '%s' in table '%s'",
            "Added" if existing is None else "Updated",
            name,
            target.name,
        )
        return MeasureSaved(table=target.name, name=name, created=existing is None, path=saved_to)

    def rename(
        self,
        path: Path | str,
        kind: str | ObjectKind,
        old_name: str,
        new_name: str,
        table: str | None = None,
    ) -> RenameResult:
        """Rename and persist.  Any failure happens before the save."""
        database = self.load_for_edit(path)
        result = self._renamer.rename(database.model, kind, old_name, new_name, table=table)
        self._writer.save(database, path)
        return result

    def format(self, path: Path | str) -> FormatResult:
        """Re-serialize *path* in canonical order."""
        database = self.load_for_edit(path)
        target = self._writer.target_path(path)
        before = target.read_text(encoding="utf-8") if target.is_file() else None
        format_model(database.model)
        text = self._writer.dumps(database)
        self._writer.save(database, path)
        return FormatResult(path=target, tables=len(database.model.tables), changed=text != before)

    # -- diff ----------------------------------------------------------------

    def diff(
        self,
        old: Path | str,
        new: Path | str,
        cancel: threading.Event | None = None,
    ) -> Iterator[str]:
        """Chunked diff of two documents; model folders resolve to their root document."""
        streamer = DiffStreamer.from_settings(self._settings)
        return streamer.stream(self._document_for(old), self._document_for(new), cancel=cancel)

    def _document_for(self, path: Path | str) -> Path:
        path = Path(path)
        if path.is_dir():
            return self._loader.resolve_document(path) or path
        return path

    # -- create --------------------------------------------------------------

    def create_model(
        self,
        path: Path | str,
        model_name: str,
        definition: ModelDefinition | None = None,
        progress: ProgressReporter | None = None,
        cancel: threading.Event | None = None,
    ) -> CreateModelResult:
        """Add the tables and relationships of *definition* to the model at *path*.

        Existing content is loaded and kept; tables that already exist are
        skipped.  The folder is written once, after every step succeeded.
        """
        progress = progress or ProgressReporter()
        definition = definition or ModelDefinition()
        path = Path(path)
        result = CreateModelResult(model_name=model_name, transcript=progress.transcript)
        try:
            progress.report(f"Starting creation of model '{model_name}'...")
            database = self._open_for_create(path, model_name, progress)
            model = database.model
            result.model_name = model.name
            progress.report("✔ Model structure ready")

            for spec in definition.tables:
                check_cancelled(cancel, f"table '{spec.name}'")
                if spec.name in model.tables:
                    result.skipped_tables.append(spec.name)
                    progress.report(f"Table '{spec.name}' already exists, skipping")
                    continue
                table = model.add_table(spec.build())
                result.created_tables.append(table.name)
                progress.report(
                    f"✔ Created table '{table.name}' ({len(table.columns)} columns, "
                    f"{len(table.measures)} measures)"
                )

            for spec in definition.relationships:
                check_cancelled(cancel, f"relationship '{spec.effective_name}'")
                self._add_relationship(model, spec.build(), result, progress)

            check_cancelled(cancel, "save")
            result.path = self._writer.save(database, path)
            result.saved = True
            progress.report(f"✔ Model saved to {result.path}")
        except OperationCancelledError as exc:
            progress.report(f"Cancelled: {exc}; nothing was saved")
        except TmdlError as exc:
            logger.warning("create_model failed for %s: %s", path, exc)
            progress.report(f"✖ Error creating model: {exc}")
        return result

    def _open_for_create(
        self, path: Path, model_name: str, progress: ProgressReporter
    ) -> Database:
        if self._loader.resolve_document(path) is not None:
            progress.report("Loading existing model to preserve tables...")
            database = self.load_for_edit(path)
            progress.report(f"✔ Loaded existing model with {len(database.model.tables)} tables")
            return database
        return Database(name=model_name, model=Model(name=model_name))

    @staticmethod
    def _add_relationship(
        model: Model,
        relationship: Relationship,
        result: CreateModelResult,
        progress: ProgressReporter,
    ) -> None:
        if relationship.name in model.relationships:
            progress.report(f"Relationship '{relationship.name}' already exists, skipping")
            return
        for table_name in (relationship.from_table, relationship.to_table):
            if table_name not in model.tables:
                progress.report(
                    f"⚠ Skipped relationship '{relationship.name}': "
                    f"table '{table_name}' not found"
                )
                return
        model.add_relationship(relationship)
        result.relationships.append(relationship.name)
        progress.report(f"✔ Created relationship '{relationship.name}'")

    # -- validate ------------------------------------------------------------

    def validate_model(
        self,
        path: Path | str,
        progress: ProgressReporter | None = None,
        cancel: threading.Event | None = None,
    ) -> ValidationResult:
        """Structural validation of the model at *path*, reported step by step."""
        progress = progress or ProgressReporter()
        path = Path(path)
        progress.report(f"Starting validation of model at {path}")
        if not path.exists():
            return self._invalid(progress, "NOT_FOUND", f"Model not found at {path}")
        document = self._loader.resolve_document(path)
        if document is None:
            return self._invalid(
                progress,
                "NOT_FOUND",
                f"{self._settings.root_document} not found in folder or definition subfolder",
            )
        if document.parent.name.lower() == DEFINITION_FOLDER and document.parent != path:
            progress.report(f"Found {document.name} in definition subfolder: {document.parent}")

        try:
            check_cancelled(cancel, "loading")
            database, warnings = self._loader.load(document)
            progress.report(f"Loaded {len(database.model.tables)} tables")
            check_cancelled(cancel, "structural checks")
            progress.report("Checking round-trip, references and relationships...")
            result = self._validator.validate(database)
        except OperationCancelledError as exc:
            progress.report(f"Cancelled: {exc}")
            return ValidationResult(
                valid=False, errors=[SemanticError(code="CANCELLED", message=str(exc))]
            )

        structural = [w for w in warnings if w.code in _STRUCTURAL_CODES]
        result.errors = structural + result.errors
        result.warnings = [w for w in warnings if w.code not in _STRUCTURAL_CODES] + result.warnings
        result.valid = not result.errors
        for error in result.errors:
            progress.report(f"✖ [{error.code}] {error.message}")
        for warning in result.warnings:
            progress.report(f"⚠ [{warning.code}] {warning.message}")
        if result.valid:
            progress.report(f"✔ Model is valid ({len(result.warnings)} warnings)")
        else:
            progress.report(
                f"✖ Model has {len(result.errors)} errors and {len(result.warnings)} warnings"
            )
        return result

    @staticmethod
    def _invalid(progress: ProgressReporter, code: str, message: str) -> ValidationResult:
        progress.report(f"✖ {message}")
        return ValidationResult(valid=False, errors=[SemanticError(code=code, message=message)])
