"""API request/response Pydantic schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field

from tmdlkit.models.definition import ModelDefinition


class HealthResponse(BaseModel):
    status: str
    version: str


class FolderRequest(BaseModel):
    """Request body naming a model folder (or a single ``.tmdl`` document)."""

    folder_path: str = Field(description="Model folder or .tmdl document")


class ModelSummaryResponse(BaseModel):
    """Response body for GET /models/summary."""

    model_name: str
    document: str | None = None
    tables: int
    measures: int
    columns: int
    warnings: list[ErrorDetail] = []


class TableListResponse(BaseModel):
    tables: list[str]


class MeasureListResponse(BaseModel):
    table: str
    measures: list[str]


class UnusedColumnsResponse(BaseModel):
    """Response body for GET /models/unused-columns."""

    unused: list[str]
    message: str


class MeasureRequest(FolderRequest):
    """Request body for POST /models/measures (insert or update)."""

    table: str
    name: str
    expression: str
    format_string: str | None = Field(None, alias="formatString")
    description: str | None = None

    model_config = {"populate_by_name": True}


class MeasureResponse(BaseModel):
    table: str
    name: str
    created: bool


class RenameRequest(FolderRequest):
    """Request body for POST /models/rename."""

    object_type: str = Field(description="table | column | measure")
    old_name: str
    new_name: str
    table: str | None = Field(None, description="Owning table for columns and measures")


class RenameResponse(BaseModel):
    kind: str
    table: str | None = None
    old_name: str
    new_name: str
    rewritten: list[str] = []
    message: str


class FormatResponse(BaseModel):
    path: str
    tables: int
    changed: bool


class ErrorDetail(BaseModel):
    """A single validation error detail."""

    code: str
    message: str
    path: str | None = None
    suggestions: list[str] = []


class ValidateResponse(BaseModel):
    """Response body for POST /models/validate."""

    valid: bool
    errors: list[ErrorDetail] = []
    warnings: list[ErrorDetail] = []
    progress: list[str] = []


class CreateModelRequest(FolderRequest):
    """Request body for POST /models."""

    model_name: str
    definition: ModelDefinition = Field(default_factory=ModelDefinition)


class CreateModelResponse(BaseModel):
    model_name: str
    saved: bool
    path: str | None = None
    created_tables: list[str] = []
    skipped_tables: list[str] = []
    relationships: list[str] = []
    progress: list[str] = []


class DiffRequest(BaseModel):
    """Request body for POST /diff."""

    old_path: str
    new_path: str


ModelSummaryResponse.model_rebuild()
