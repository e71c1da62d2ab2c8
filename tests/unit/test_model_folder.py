"""Tests for ModelFolderService: folder-level operations with load and save."""

from __future__ import annotations

import shlex
import threading
from pathlib import Path

import pytest

from tmdlkit.models.definition import ModelDefinition
from tmdlkit.models.errors import (
    DuplicateNameError,
    InvalidArgumentError,
    MalformedError,
    ObjectNotFoundError,
)
from tmdlkit.parser.loader import TmdlLoader
from tmdlkit.service.model_folder import ModelFolderService
from tmdlkit.service.progress import ProgressReporter
from tmdlkit.settings import Settings
from tests.conftest import SAMPLE_TMDL, SAMPLE_UNUSED_COLUMNS, TINY_TMDL

DEFINITION = {
    "tables": [
        {
            "name": "Sales",
            "columns": [
                {"name": "Amount", "dataType": "decimal", "sourceColumn": "amount"},
                {"name": "ProductKey", "dataType": "int64"},
            ],
            "measures": [
                {"name": "Total Sales", "expression": "SUM(Sales[Amount])", "formatString": "0"}
            ],
            "partitions": [{"name": "SalesData", "mode": "import", "source": "let x = 1 in x"}],
        },
        {"name": "Product", "columns": [{"name": "ProductKey", "dataType": "int64"}]},
    ],
    "relationships": [
        {
            "fromTable": "Sales",
            "fromColumn": "ProductKey",
            "toTable": "Product",
            "toColumn": "ProductKey",
        }
    ],
}


def _read(folder: Path) -> str:
    return (folder / "model.tmdl").read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# Load and queries
# ---------------------------------------------------------------------------


class TestLoadModel:
    def test_summary(self, service: ModelFolderService, model_dir: Path) -> None:
        progress = ProgressReporter()
        summary = service.load_model(model_dir, progress)
        assert summary.model_name == "Sales"
        assert (summary.tables, summary.measures, summary.columns) == (3, 4, 10)
        assert summary.document == model_dir / "model.tmdl"
        assert progress.transcript == [
            f"Loading model from '{model_dir}'...",
            "✔ Model 'Sales' loaded",
            "✔ Tables: 3",
            "✔ Measures (total): 4",
        ]

    def test_missing_folder(self, service: ModelFolderService, tmp_path: Path) -> None:
        progress = ProgressReporter()
        summary = service.load_model(tmp_path / "Finance", progress)
        assert summary.model_name == "Finance"
        assert summary.tables == 0
        assert summary.document is None
        assert [w.code for w in summary.warnings] == ["NOT_FOUND"]
        assert progress.transcript[1].startswith("⚠ ")

    def test_definition_subfolder(self, service: ModelFolderService, tmp_path: Path) -> None:
        doc = tmp_path / "Proj" / "definition" / "model.tmdl"
        doc.parent.mkdir(parents=True)
        doc.write_text(TINY_TMDL, encoding="utf-8")
        progress = ProgressReporter()
        summary = service.load_model(tmp_path / "Proj", progress)
        assert summary.model_name == "Tiny"
        assert "Found model.tmdl in definition subfolder" in progress.transcript

    def test_custom_root_document(self, tmp_path: Path) -> None:
        (tmp_path / "main.tmdl").write_text(TINY_TMDL, encoding="utf-8")
        service = ModelFolderService(Settings(_env_file=None, root_document="main.tmdl"))
        assert service.list_tables(tmp_path) == ["T1", "T2"]


class TestQueries:
    def test_list_tables(self, service: ModelFolderService, model_dir: Path) -> None:
        assert service.list_tables(model_dir) == ["Sales", "Product Category", "Date"]

    def test_list_tables_missing_folder(self, service: ModelFolderService, tmp_path: Path) -> None:
        assert service.list_tables(tmp_path / "nope") == []

    def test_list_measures(self, service: ModelFolderService, model_dir: Path) -> None:
        assert service.list_measures(model_dir, "sales") == [
            "Total Sales",
            "Margin %",
            "Total Margin",
        ]

    def test_list_measures_missing_table(
        self, service: ModelFolderService, model_dir: Path
    ) -> None:
        with pytest.raises(ObjectNotFoundError, match="Table 'Nope' not found"):
            service.list_measures(model_dir, "Nope")

    def test_unused_columns(self, service: ModelFolderService, model_dir: Path) -> None:
        assert service.detect_unused_columns(model_dir) == SAMPLE_UNUSED_COLUMNS


# ---------------------------------------------------------------------------
# Edits
# ---------------------------------------------------------------------------


class TestAddMeasure:
    def test_insert(self, service: ModelFolderService, model_dir: Path) -> None:
        saved = service.add_measure(
            model_dir, "date", "Day Count", "COUNTROWS('Date')", "0", "Days in calendar"
        )
        assert saved.created
        assert saved.table == "Date"
        assert saved.path == model_dir / "model.tmdl"
        assert saved.message == "Measure 'Day Count' saved."
        text = _read(model_dir)
        assert "    measure 'Day Count' = { COUNTROWS('Date') }\n" in text
        assert '        description: "Days in calendar"\n' in text

    def test_update_keeps_unspecified_properties(
        self, service: ModelFolderService, model_dir: Path, loader: TmdlLoader
    ) -> None:
        saved = service.add_measure(model_dir, "Sales", "total sales", "SUM(Sales[Cost])")
        assert not saved.created
        database, _ = loader.load(model_dir)
        measure = database.model.table("Sales").measure("Total Sales")
        assert measure.name == "Total Sales"
        assert measure.expression == "SUM(Sales[Cost])"
        assert measure.format_string == "#,0.00"
        assert measure.description == "Sum of order amounts"

    def test_name_taken_in_other_table(
        self, service: ModelFolderService, model_dir: Path
    ) -> None:
        before = _read(model_dir)
        with pytest.raises(DuplicateNameError):
            service.add_measure(model_dir, "Sales", "category count", "1")
        assert _read(model_dir) == before

    def test_name_taken_by_column(self, service: ModelFolderService, model_dir: Path) -> None:
        with pytest.raises(DuplicateNameError):
            service.add_measure(model_dir, "Sales", "Amount", "1")

    def test_missing_table(self, service: ModelFolderService, model_dir: Path) -> None:
        with pytest.raises(ObjectNotFoundError):
            service.add_measure(model_dir, "Nope", "X", "1")

    def test_saved_text_is_canonical(self, service: ModelFolderService, model_dir: Path) -> None:
        service.add_measure(model_dir, "Sales", "Cost Total", "\n    SUM(Sales[Cost])\n")
        assert "    measure 'Cost Total' = { SUM(Sales[Cost]) }\n" in _read(model_dir)
        service.add_measure(model_dir, "Sales", "Cost Total", "SUM(Sales[Cost]) * 2\n")
        assert "    measure 'Cost Total' = { SUM(Sales[Cost]) * 2 }\n" in _read(model_dir)
        service.format(model_dir)
        before = _read(model_dir)
        assert not service.format(model_dir).changed
        assert _read(model_dir) == before


class TestRename:
    def test_rename_is_saved(
        self, service: ModelFolderService, model_dir: Path, loader: TmdlLoader
    ) -> None:
        result = service.rename(model_dir, "measure", "Total Sales", "Revenue", table="Sales")
        assert result.rewritten == ["measure Sales[Margin %]"]
        database, _ = loader.load(model_dir)
        sales = database.model.table("Sales")
        assert "Revenue" in sales.measures
        assert "[Revenue]" in sales.measure("Margin %").expression

    def test_conflict_leaves_file_untouched(
        self, service: ModelFolderService, model_dir: Path
    ) -> None:
        before = (model_dir / "model.tmdl").read_bytes()
        with pytest.raises(DuplicateNameError):
            service.rename(model_dir, "table", "Sales", "date")
        assert (model_dir / "model.tmdl").read_bytes() == before

    def test_bad_kind(self, service: ModelFolderService, model_dir: Path) -> None:
        with pytest.raises(InvalidArgumentError, match="Unsupported object kind"):
            service.rename(model_dir, "partition", "SalesData", "X", table="Sales")


class TestFormat:
    def test_format_then_canonical(
        self, service: ModelFolderService, model_dir: Path, loader: TmdlLoader
    ) -> None:
        first = service.format(model_dir)
        assert first.changed
        assert first.tables == 3
        database, _ = loader.load(model_dir)
        assert database.model.tables.names() == ["Date", "Product Category", "Sales"]
        second = service.format(model_dir)
        assert not second.changed

    def test_missing_folder_creates_document(
        self, service: ModelFolderService, tmp_path: Path
    ) -> None:
        result = service.format(tmp_path / "Empty")
        assert result.changed
        assert result.path.read_text(encoding="utf-8") == "model Empty\n"

    def test_document_with_other_suffix(
        self, service: ModelFolderService, tmp_path: Path
    ) -> None:
        doc = tmp_path / "model.txt"
        doc.write_text(TINY_TMDL.replace("table T2", "table A0"), encoding="utf-8")
        result = service.format(doc)
        assert result.path == doc
        assert result.changed
        assert service.list_tables(doc) == ["A0", "T1"]


class TestDamagedDocument:
    DAMAGED = "table T\n{\n    column A\n    column a\n    measure 'M' = { T[A] }\n}\n"

    @pytest.fixture
    def damaged_dir(self, tmp_path: Path) -> Path:
        (tmp_path / "model.tmdl").write_text(self.DAMAGED, encoding="utf-8")
        return tmp_path

    def test_rename_refuses(self, service: ModelFolderService, damaged_dir: Path) -> None:
        with pytest.raises(MalformedError, match="was not read cleanly"):
            service.rename(damaged_dir, "column", "A", "B", table="T")
        assert _read(damaged_dir) == self.DAMAGED

    def test_format_refuses(self, service: ModelFolderService, damaged_dir: Path) -> None:
        with pytest.raises(MalformedError, match="Skipped column 'a'"):
            service.format(damaged_dir)
        assert _read(damaged_dir) == self.DAMAGED

    def test_add_measure_refuses(self, service: ModelFolderService, damaged_dir: Path) -> None:
        with pytest.raises(MalformedError):
            service.add_measure(damaged_dir, "T", "N", "1")
        assert _read(damaged_dir) == self.DAMAGED

    def test_create_model_refuses(self, service: ModelFolderService, damaged_dir: Path) -> None:
        result = service.create_model(
            damaged_dir, "M", ModelDefinition.model_validate({"tables": [{"name": "U"}]})
        )
        assert not result.saved
        assert result.transcript[-1].startswith("✖ Error creating model:")
        assert _read(damaged_dir) == self.DAMAGED

    def test_read_only_operations_still_work(
        self, service: ModelFolderService, damaged_dir: Path
    ) -> None:
        assert service.list_tables(damaged_dir) == ["T"]
        assert service.list_measures(damaged_dir, "T") == ["M"]


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreateModel:
    def test_new_folder(
        self, service: ModelFolderService, tmp_path: Path, loader: TmdlLoader
    ) -> None:
        folder = tmp_path / "New"
        result = service.create_model(
            folder, "Retail", ModelDefinition.model_validate(DEFINITION)
        )
        assert result.saved
        assert result.model_name == "Retail"
        assert result.created_tables == ["Sales", "Product"]
        assert result.relationships == ["Sales_ProductKey_to_Product_ProductKey"]
        assert result.path == folder / "model.tmdl"
        assert result.transcript[-1] == f"✔ Model saved to {folder / 'model.tmdl'}"
        database, warnings = loader.load(folder)
        assert warnings == []
        assert database.model.name == "Retail"
        assert database.model.table("Sales").measure("Total Sales").format_string == "0"

    def test_empty_definition(self, service: ModelFolderService, tmp_path: Path) -> None:
        result = service.create_model(tmp_path / "Blank", "Blank")
        assert result.saved
        assert _read(tmp_path / "Blank") == "model Blank\n"

    def test_existing_model_is_extended(
        self, service: ModelFolderService, model_dir: Path, loader: TmdlLoader
    ) -> None:
        result = service.create_model(
            model_dir, "Ignored", ModelDefinition.model_validate(DEFINITION)
        )
        assert result.saved
        assert result.model_name == "Sales"
        assert result.skipped_tables == ["Sales"]
        assert result.created_tables == ["Product"]
        assert "Loading existing model to preserve tables..." in result.transcript
        database, _ = loader.load(model_dir)
        assert database.model.tables.names() == ["Sales", "Product Category", "Date", "Product"]
        # The existing Sales table was kept as it was.
        assert "Total Margin" in database.model.table("Sales").measures

    def test_relationship_to_missing_table_is_skipped(
        self, service: ModelFolderService, tmp_path: Path
    ) -> None:
        definition = ModelDefinition.model_validate(
            {
                "tables": [{"name": "A", "columns": [{"name": "k"}]}],
                "relationships": [
                    {"fromTable": "A", "fromColumn": "k", "toTable": "B", "toColumn": "k"}
                ],
            }
        )
        result = service.create_model(tmp_path / "M", "M", definition)
        assert result.saved
        assert result.relationships == []
        assert any(line.startswith("⚠ Skipped relationship") for line in result.transcript)

    def test_invalid_definition_saves_nothing(
        self, service: ModelFolderService, tmp_path: Path
    ) -> None:
        definition = ModelDefinition.model_validate(
            {"tables": [{"name": "A", "columns": [{"name": "k"}, {"name": "K"}]}]}
        )
        result = service.create_model(tmp_path / "M", "M", definition)
        assert not result.saved
        assert result.transcript[-1].startswith("✖ Error creating model:")
        assert not (tmp_path / "M").exists()

    def test_cancelled(self, service: ModelFolderService, tmp_path: Path) -> None:
        cancel = threading.Event()
        cancel.set()
        result = service.create_model(
            tmp_path / "M", "M", ModelDefinition.model_validate(DEFINITION), cancel=cancel
        )
        assert not result.saved
        assert result.transcript[-1] == (
            "Cancelled: Cancelled before table 'Sales'; nothing was saved"
        )
        assert not (tmp_path / "M").exists()


# ---------------------------------------------------------------------------
# Validate
# ---------------------------------------------------------------------------


class TestValidateModel:
    def test_valid(self, service: ModelFolderService, model_dir: Path) -> None:
        progress = ProgressReporter()
        result = service.validate_model(model_dir, progress)
        assert result.valid
        assert progress.transcript[0] == f"Starting validation of model at {model_dir}"
        assert progress.transcript[-1] == "✔ Model is valid (2 warnings)"

    def test_missing_path(self, service: ModelFolderService, tmp_path: Path) -> None:
        result = service.validate_model(tmp_path / "nope")
        assert not result.valid
        assert result.errors[0].code == "NOT_FOUND"

    def test_folder_without_document(self, service: ModelFolderService, tmp_path: Path) -> None:
        result = service.validate_model(tmp_path)
        assert result.errors[0].code == "NOT_FOUND"
        assert "definition subfolder" in result.errors[0].message

    def test_structural_findings_are_errors(
        self, service: ModelFolderService, tmp_path: Path
    ) -> None:
        (tmp_path / "model.tmdl").write_text(
            "table T\n{\n    column A\n    column a\n}\n", encoding="utf-8"
        )
        progress = ProgressReporter()
        result = service.validate_model(tmp_path, progress)
        assert not result.valid
        assert [e.code for e in result.errors] == ["DUPLICATE_NAME"]
        assert progress.transcript[-1] == "✖ Model has 1 errors and 0 warnings"

    def test_definition_subfolder(self, service: ModelFolderService, tmp_path: Path) -> None:
        doc = tmp_path / "definition" / "model.tmdl"
        doc.parent.mkdir()
        doc.write_text(SAMPLE_TMDL, encoding="utf-8")
        progress = ProgressReporter()
        assert service.validate_model(tmp_path, progress).valid
        assert any("definition subfolder" in line for line in progress.transcript)

    def test_cancelled(self, service: ModelFolderService, model_dir: Path) -> None:
        cancel = threading.Event()
        cancel.set()
        result = service.validate_model(model_dir, cancel=cancel)
        assert not result.valid
        assert result.errors[0].code == "CANCELLED"


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------


class TestDiff:
    def test_folders_resolve_to_documents(
        self, fake_diff: list[str], model_dir: Path, tiny_model_dir: Path
    ) -> None:
        settings = Settings(_env_file=None, diff_command=shlex.join([*fake_diff, "paths"]))
        chunks = list(ModelFolderService(settings).diff(model_dir, tiny_model_dir))
        assert chunks == [f"{model_dir / 'model.tmdl'}\n{tiny_model_dir / 'model.tmdl'}\n"]
