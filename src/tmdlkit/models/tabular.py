"""Tabular model graph: database, model, tables and their named members."""

from __future__ import annotations

import textwrap
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any, Generic, Literal, Protocol, TypeVar

from pydantic import BaseModel, Field, GetCoreSchemaHandler, field_validator
from pydantic_core import CoreSchema, core_schema

from tmdlkit.models.errors import DuplicateNameError, InvalidArgumentError, ObjectNotFoundError


class DataType(StrEnum):
    STRING = "string"
    INT64 = "int64"
    DOUBLE = "double"
    DECIMAL = "decimal"
    DATETIME = "dateTime"
    BOOLEAN = "boolean"
    BINARY = "binary"
    VARIANT = "variant"


class PartitionMode(StrEnum):
    IMPORT = "import"
    DIRECT_QUERY = "directQuery"
    DUAL = "dual"
    CALCULATED = "calculated"


class CrossFilteringBehavior(StrEnum):
    ONE_DIRECTION = "oneDirection"
    BOTH_DIRECTIONS = "bothDirections"
    AUTOMATIC = "automatic"


def name_key(name: str) -> str:
    """Comparison key for object names (case-insensitive)."""
    return name.casefold()


class _Named(Protocol):
    name: str


T = TypeVar("T", bound=_Named)


class NamedCollection(Generic[T]):
    """Ordered collection of named objects with case-insensitive unique names.

    Adding or renaming to a name that already exists raises
    ``DuplicateNameError``; nothing is ever overwritten silently.
    """

    def __init__(self, kind: str, items: Iterable[T] = ()) -> None:
        self.kind = kind
        self._items: list[T] = []
        for item in items:
            self.add(item)

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> CoreSchema:
        return core_schema.is_instance_schema(
            cls,
            serialization=core_schema.plain_serializer_function_ser_schema(list),
        )

    # -- read access ---------------------------------------------------------

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.find(name) is not None

    def __repr__(self) -> str:
        return f"NamedCollection({self.kind!r}, {self.names()!r})"

    def names(self) -> list[str]:
        return [item.name for item in self._items]

    def find(self, name: str) -> T | None:
        key = name_key(name)
        for item in self._items:
            if name_key(item.name) == key:
                return item
        return None

    def get(self, name: str, scope: str | None = None) -> T:
        """Return the object called *name*; raise ``ObjectNotFoundError`` if missing."""
        item = self.find(name)
        if item is None:
            raise ObjectNotFoundError(self.kind, name, scope)
        return item

    # -- mutation ------------------------------------------------------------

    def ensure_available(
        self, name: str, current: T | None = None, scope: str | None = None
    ) -> None:
        """Raise ``DuplicateNameError`` if *name* is taken by an object other than *current*."""
        existing = self.find(name)
        if existing is not None and existing is not current:
            raise DuplicateNameError(self.kind, name, scope)

    def add(self, item: T, scope: str | None = None) -> T:
        if not item.name.strip():
            raise InvalidArgumentError(f"{self.kind.title()} name must not be empty")
        self.ensure_available(item.name, scope=scope)
        self._items.append(item)
        return item

    def remove(self, name: str, scope: str | None = None) -> T:
        item = self.get(name, scope)
        self._items.remove(item)
        return item

    def rename(self, old_name: str, new_name: str, scope: str | None = None) -> T:
        item = self.get(old_name, scope)
        self.ensure_available(new_name, current=item, scope=scope)
        item.name = new_name
        return item

    def reorder(self, names: Sequence[str]) -> None:
        """Put the collection in the order given by *names* (a permutation)."""
        ordered = [self.get(name) for name in names]
        if len(ordered) != len(self._items) or len({id(item) for item in ordered}) != len(ordered):
            raise InvalidArgumentError(
                f"Reorder of {self.kind} collection must name every member exactly once"
            )
        self._items = ordered

    def sort_by_name(self) -> None:
        self._items.sort(key=lambda item: name_key(item.name))


# ---------------------------------------------------------------------------
# Table members
# ---------------------------------------------------------------------------


def normalize_expression(raw: str) -> str:
    """Canonical form of formula text, as the writer emits and the loader reads it.

    Trailing whitespace and surrounding blank lines are dropped.  Text that
    starts on the header line keeps its first line as is and dedents the
    rest; a body that starts on its own line is dedented as a whole.
    """
    lines = [line.rstrip() for line in raw.split("\n")]
    while lines and not lines[-1]:
        lines.pop()
    if not lines:
        return ""
    if lines[0].strip():
        head, rest = lines[0].strip(), lines[1:]
        if not rest:
            return head
        return head + "\n" + textwrap.dedent("\n".join(rest))
    return textwrap.dedent("\n".join(lines[1:])).strip("\n")


class DataColumn(BaseModel):
    """A column loaded from the source (``sourceColumn``)."""

    kind: Literal["data"] = "data"
    name: str
    data_type: DataType | None = Field(None, alias="dataType")
    source_column: str | None = Field(None, alias="sourceColumn")
    description: str | None = None

    model_config = {"populate_by_name": True}


class CalculatedColumn(BaseModel):
    """A column computed row by row from a DAX expression."""

    kind: Literal["calculated"] = "calculated"
    name: str
    expression: str = ""
    data_type: DataType | None = Field(None, alias="dataType")
    description: str | None = None

    model_config = {"populate_by_name": True}

    @field_validator("expression")
    @classmethod
    def canonical_expression(cls, value: str) -> str:
        return normalize_expression(value)


Column = Annotated[DataColumn | CalculatedColumn, Field(discriminator="kind")]


class Measure(BaseModel):
    """A named DAX aggregation."""

    name: str
    expression: str = ""
    format_string: str | None = Field(None, alias="formatString")
    description: str | None = None

    model_config = {"populate_by_name": True}

    @field_validator("expression")
    @classmethod
    def canonical_expression(cls, value: str) -> str:
        return normalize_expression(value)


class Level(BaseModel):
    """One level of a hierarchy, bound to a column of the same table."""

    name: str
    column: str


class Hierarchy(BaseModel):
    name: str
    levels: list[Level] = []


class Partition(BaseModel):
    """A partition with its load mode and source (M query, or DAX when calculated)."""

    name: str
    mode: PartitionMode = PartitionMode.IMPORT
    source: str = ""

    @field_validator("source")
    @classmethod
    def canonical_source(cls, value: str) -> str:
        return normalize_expression(value)

    @property
    def is_calculated(self) -> bool:
        return self.mode == PartitionMode.CALCULATED


class Relationship(BaseModel):
    """A relationship between two columns, referenced by table and column name."""

    name: str
    from_table: str = Field(alias="fromTable")
    from_column: str = Field(alias="fromColumn")
    to_table: str = Field(alias="toTable")
    to_column: str = Field(alias="toColumn")
    cross_filtering_behavior: CrossFilteringBehavior = Field(
        CrossFilteringBehavior.ONE_DIRECTION, alias="crossFilteringBehavior"
    )
    is_active: bool = Field(True, alias="isActive")

    model_config = {"populate_by_name": True}

    def endpoints(self) -> tuple[tuple[str, str], tuple[str, str]]:
        return (self.from_table, self.from_column), (self.to_table, self.to_column)


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


def _collection(kind: str) -> Any:
    return Field(default_factory=lambda: NamedCollection(kind))


class Table(BaseModel):
    """A table owning its columns, measures, hierarchies and partitions."""

    name: str
    description: str | None = None
    columns: NamedCollection[DataColumn | CalculatedColumn] = _collection("column")
    measures: NamedCollection[Measure] = _collection("measure")
    hierarchies: NamedCollection[Hierarchy] = _collection("hierarchy")
    partitions: NamedCollection[Partition] = _collection("partition")

    @property
    def scope(self) -> str:
        return f"table '{self.name}'"

    def add_column(self, column: DataColumn | CalculatedColumn) -> DataColumn | CalculatedColumn:
        return self.columns.add(column, scope=self.scope)

    def add_measure(self, measure: Measure) -> Measure:
        return self.measures.add(measure, scope=self.scope)

    def add_hierarchy(self, hierarchy: Hierarchy) -> Hierarchy:
        return self.hierarchies.add(hierarchy, scope=self.scope)

    def add_partition(self, partition: Partition) -> Partition:
        return self.partitions.add(partition, scope=self.scope)

    def column(self, name: str) -> DataColumn | CalculatedColumn:
        return self.columns.get(name, scope=self.scope)

    def measure(self, name: str) -> Measure:
        return self.measures.get(name, scope=self.scope)

    def calculated_columns(self) -> Iterator[CalculatedColumn]:
        for column in self.columns:
            if isinstance(column, CalculatedColumn):
                yield column


@dataclass
class FormulaSite:
    """A place in the model that holds formula text."""

    table: str
    kind: str  # measure | column | partition
    name: str
    holder: Measure | CalculatedColumn | Partition

    @property
    def location(self) -> str:
        return f"{self.kind} {self.table}[{self.name}]"

    @property
    def text(self) -> str:
        if isinstance(self.holder, Partition):
            return self.holder.source
        return self.holder.expression

    @text.setter
    def text(self, value: str) -> None:
        if isinstance(self.holder, Partition):
            self.holder.source = value
        else:
            self.holder.expression = value


class Model(BaseModel):
    """The model: tables plus the relationships between their columns."""

    name: str = ""
    tables: NamedCollection[Table] = _collection("table")
    relationships: NamedCollection[Relationship] = _collection("relationship")

    @property
    def scope(self) -> str:
        return f"model '{self.name}'"

    def add_table(self, table: Table) -> Table:
        return self.tables.add(table, scope=self.scope)

    def add_relationship(self, relationship: Relationship) -> Relationship:
        return self.relationships.add(relationship, scope=self.scope)

    def table(self, name: str) -> Table:
        return self.tables.get(name, scope=self.scope)

    def formulas(self) -> Iterator[FormulaSite]:
        """Every measure, calculated column and calculated-partition source."""
        for table in self.tables:
            for measure in table.measures:
                yield FormulaSite(table.name, "measure", measure.name, measure)
            for column in table.calculated_columns():
                yield FormulaSite(table.name, "column", column.name, column)
            for partition in table.partitions:
                if partition.is_calculated:
                    yield FormulaSite(table.name, "partition", partition.name, partition)

    @property
    def measure_count(self) -> int:
        return sum(len(table.measures) for table in self.tables)

    @property
    def column_count(self) -> int:
        return sum(len(table.columns) for table in self.tables)


class Database(BaseModel):
    """Root of the graph; owns exactly one model."""

    name: str
    model: Model = Field(default_factory=Model)
