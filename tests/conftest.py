"""Shared test fixtures for tmdlkit tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from tmdlkit.models.tabular import Database
from tmdlkit.parser.loader import TmdlLoader
from tmdlkit.parser.writer import TmdlWriter
from tmdlkit.service.model_folder import ModelFolderService
from tmdlkit.settings import Settings

# Written in the writer's own layout, so dumping a loaded copy gives these exact bytes.
SAMPLE_TMDL = """\
model Sales

table Sales
{
    description: "Order lines"
    column OrderDate
        dataType: dateTime
        sourceColumn: order_date
    column ProductKey
        dataType: int64
        sourceColumn: product_key
    column Amount
        dataType: decimal
        sourceColumn: amount
    column Cost
        dataType: decimal
        sourceColumn: cost
    column Margin = { Sales[Amount] - Sales[Cost] }
        dataType: decimal
    measure 'Total Sales' = { SUM(Sales[Amount]) }
        formatString: "#,0.00"
        description: "Sum of order amounts"
    measure 'Margin %' = {
        DIVIDE(
            [Total Margin],
            [Total Sales]
        )
    }
        formatString: "0.0%"
    measure 'Total Margin' = { SUMX(Sales, Sales[Margin]) }
    partition SalesData
        mode: import
        source = {
            let
                Source = Sql.Database("srv", "dw"),
                Sales = Source{[Schema="dbo",Item="Sales"]}[Data]
            in
                Sales
        }
}

table 'Product Category'
{
    column ProductKey
        dataType: int64
        sourceColumn: product_key
    column Category
        dataType: string
        sourceColumn: category
    column Unused
        dataType: string
        sourceColumn: unused
    measure 'Category Count' = { DISTINCTCOUNT('Product Category'[Category]) }
        description: "Distinct categories"
    hierarchy Categories
        level Category
            column: Category
}

table Date
{
    column Date
        dataType: dateTime
    column Year = { YEAR('Date'[Date]) }
        dataType: int64
    partition DateData
        mode: calculated
        source = { CALENDAR(DATE(2020, 1, 1), DATE(2030, 12, 31)) }
}

relationship Sales_Product
    fromColumn: Sales.ProductKey
    toColumn: 'Product Category'.ProductKey
    crossFilteringBehavior: oneDirection
    isActive: true

relationship Sales_Date
    fromColumn: Sales.OrderDate
    toColumn: Date.Date
    crossFilteringBehavior: oneDirection
    isActive: true
"""

SAMPLE_UNUSED_COLUMNS = [
    "Date[Year]",
    "Product Category[ProductKey]",
    "Product Category[Unused]",
    "Sales[OrderDate]",
    "Sales[ProductKey]",
]

TINY_TMDL = """\
model Tiny

table T1
{
    column A
    column B
    measure 'M' = { T1[A] + 2 }
}

table T2
{
    column C
}
"""

# Stand-in for the diff tool: prints argv-driven output and exit codes.
FAKE_DIFF_SCRIPT = """\
import sys
import time

mode = sys.argv[1]
old, new = sys.argv[-2], sys.argv[-1]
if mode == "lines":
    count = int(sys.argv[2])
    for i in range(count):
        print(f"+line {i:04d} " + "x" * 40)
    sys.exit(1)
elif mode == "same":
    sys.exit(0)
elif mode == "fail":
    print("partial output")
    print("fatal: cannot compare", file=sys.stderr)
    sys.exit(2)
elif mode == "sleep":
    print("first line", flush=True)
    time.sleep(float(sys.argv[2]))
    print("never reached")
elif mode == "long":
    print("y" * 5000)
    sys.exit(1)
elif mode == "paths":
    print(old)
    print(new)
    sys.exit(1)
elif mode == "endless":
    while True:
        print("+" + "z" * 60)
"""


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any ``.env`` file in the working directory."""
    return Settings(_env_file=None)


@pytest.fixture
def loader() -> TmdlLoader:
    return TmdlLoader()


@pytest.fixture
def writer() -> TmdlWriter:
    return TmdlWriter()


@pytest.fixture
def sample_database(loader: TmdlLoader) -> Database:
    database, warnings = loader.load_string(SAMPLE_TMDL)
    assert warnings == []
    return database


@pytest.fixture
def model_dir(tmp_path: Path) -> Path:
    """A model folder holding the sample model as ``model.tmdl``."""
    folder = tmp_path / "Sales"
    folder.mkdir()
    (folder / "model.tmdl").write_text(SAMPLE_TMDL, encoding="utf-8")
    return folder


@pytest.fixture
def tiny_model_dir(tmp_path: Path) -> Path:
    folder = tmp_path / "Tiny"
    folder.mkdir()
    (folder / "model.tmdl").write_text(TINY_TMDL, encoding="utf-8")
    return folder


@pytest.fixture
def service(settings: Settings) -> ModelFolderService:
    return ModelFolderService(settings)


@pytest.fixture
def fake_diff(tmp_path: Path) -> list[str]:
    """argv prefix running the fake diff script with the current interpreter."""
    script = tmp_path / "fake_diff.py"
    script.write_text(FAKE_DIFF_SCRIPT, encoding="utf-8")
    return [sys.executable, str(script)]
