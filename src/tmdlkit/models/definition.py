"""Declarative input for building a model: tables, their members and relationships."""

from __future__ import annotations

from pydantic import BaseModel, Field

from tmdlkit.models.tabular import (
    CalculatedColumn,
    CrossFilteringBehavior,
    DataColumn,
    DataType,
    Measure,
    Partition,
    PartitionMode,
    Relationship,
    Table,
)


class ColumnSpec(BaseModel):
    """A column to create; giving an ``expression`` makes it calculated."""

    name: str
    data_type: DataType | None = Field(None, alias="dataType")
    source_column: str | None = Field(None, alias="sourceColumn")
    expression: str | None = None
    description: str | None = None

    model_config = {"populate_by_name": True}

    def build(self) -> DataColumn | CalculatedColumn:
        if self.expression is not None:
            return CalculatedColumn(
                name=self.name,
                expression=self.expression,
                data_type=self.data_type,
                description=self.description,
            )
        return DataColumn(
            name=self.name,
            data_type=self.data_type,
            source_column=self.source_column,
            description=self.description,
        )


class MeasureSpec(BaseModel):
    name: str
    expression: str
    format_string: str | None = Field(None, alias="formatString")
    description: str | None = None

    model_config = {"populate_by_name": True}


class PartitionSpec(BaseModel):
    name: str
    mode: PartitionMode = PartitionMode.IMPORT
    source: str = ""


class TableSpec(BaseModel):
    """A table with its columns, measures and partitions."""

    name: str
    description: str | None = None
    columns: list[ColumnSpec] = []
    measures: list[MeasureSpec] = []
    partitions: list[PartitionSpec] = []

    def build(self) -> Table:
        """Build the table; duplicate member names raise ``DuplicateNameError``."""
        table = Table(name=self.name, description=self.description)
        for column in self.columns:
            table.add_column(column.build())
        for measure in self.measures:
            table.add_measure(Measure(**measure.model_dump()))
        for partition in self.partitions:
            table.add_partition(Partition(**partition.model_dump()))
        return table


class RelationshipSpec(BaseModel):
    """A relationship between two columns; the name defaults to the endpoints."""

    name: str | None = None
    from_table: str = Field(alias="fromTable")
    from_column: str = Field(alias="fromColumn")
    to_table: str = Field(alias="toTable")
    to_column: str = Field(alias="toColumn")
    cross_filtering_behavior: CrossFilteringBehavior = Field(
        CrossFilteringBehavior.ONE_DIRECTION, alias="crossFilteringBehavior"
    )
    is_active: bool = Field(True, alias="isActive")

    model_config = {"populate_by_name": True}

    @property
    def effective_name(self) -> str:
        return self.name or (
            f"{self.from_table}_{self.from_column}_to_{self.to_table}_{self.to_column}"
        )

    def build(self) -> Relationship:
        return Relationship(
            name=self.effective_name,
            from_table=self.from_table,
            from_column=self.from_column,
            to_table=self.to_table,
            to_column=self.to_column,
            cross_filtering_behavior=self.cross_filtering_behavior,
            is_active=self.is_active,
        )


class ModelDefinition(BaseModel):
    """Everything ``create_model`` should add to a model folder."""

    tables: list[TableSpec] = []
    relationships: list[RelationshipSpec] = []
