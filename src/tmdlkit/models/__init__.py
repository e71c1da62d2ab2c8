"""Pydantic domain models for tmdlkit."""

from tmdlkit.models.definition import (
    ColumnSpec,
    MeasureSpec,
    ModelDefinition,
    PartitionSpec,
    RelationshipSpec,
    TableSpec,
)
from tmdlkit.models.errors import (
    ConflictError,
    DuplicateNameError,
    ExternalToolError,
    InvalidArgumentError,
    MalformedError,
    NotFoundError,
    ObjectNotFoundError,
    OperationCancelledError,
    SemanticError,
    TmdlError,
    ValidationResult,
)
from tmdlkit.models.tabular import (
    CalculatedColumn,
    Column,
    CrossFilteringBehavior,
    Database,
    DataColumn,
    DataType,
    Hierarchy,
    Level,
    Measure,
    Model,
    NamedCollection,
    Partition,
    PartitionMode,
    Relationship,
    Table,
)

__all__ = [
    "CalculatedColumn",
    "Column",
    "ColumnSpec",
    "ConflictError",
    "CrossFilteringBehavior",
    "DataColumn",
    "DataType",
    "Database",
    "DuplicateNameError",
    "ExternalToolError",
    "Hierarchy",
    "InvalidArgumentError",
    "Level",
    "MalformedError",
    "Measure",
    "MeasureSpec",
    "Model",
    "ModelDefinition",
    "NamedCollection",
    "NotFoundError",
    "ObjectNotFoundError",
    "OperationCancelledError",
    "Partition",
    "PartitionMode",
    "PartitionSpec",
    "Relationship",
    "RelationshipSpec",
    "SemanticError",
    "Table",
    "TableSpec",
    "TmdlError",
    "ValidationResult",
]
