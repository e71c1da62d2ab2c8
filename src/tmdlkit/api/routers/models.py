"""Model folder endpoints: inspection, edits, formatting and validation."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Query
from starlette.concurrency import run_in_threadpool

from tmdlkit.api.deps import get_service
from tmdlkit.api.schemas import (
    CreateModelRequest,
    CreateModelResponse,
    ErrorDetail,
    FolderRequest,
    FormatResponse,
    MeasureListResponse,
    MeasureRequest,
    MeasureResponse,
    ModelSummaryResponse,
    RenameRequest,
    RenameResponse,
    TableListResponse,
    UnusedColumnsResponse,
    ValidateResponse,
)
from tmdlkit.models.errors import (
    ConflictError,
    InvalidArgumentError,
    MalformedError,
    NotFoundError,
    SemanticError,
    TmdlError,
)
from tmdlkit.service.analysis import render_unused_columns
from tmdlkit.service.model_folder import ModelFolderService
from tmdlkit.service.progress import ProgressReporter

router = APIRouter()


# -- helpers -----------------------------------------------------------------


@contextmanager
def _http_errors() -> Iterator[None]:
    """Map tmdlkit failures to HTTP status codes."""
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    except (InvalidArgumentError, MalformedError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    except TmdlError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None


def _details(findings: list[SemanticError]) -> list[ErrorDetail]:
    return [ErrorDetail(**f.model_dump()) for f in findings]


# -- inspection ---------------------------------------------------------------


@router.get("/summary", response_model=ModelSummaryResponse)
async def model_summary(
    folder_path: str = Query(description="Model folder or .tmdl document"),
    service: ModelFolderService = Depends(get_service),  # noqa: B008
) -> ModelSummaryResponse:
    """Load a model and summarize it.  A missing folder yields an empty model."""
    summary = await run_in_threadpool(service.load_model, folder_path)
    return ModelSummaryResponse(
        model_name=summary.model_name,
        document=str(summary.document) if summary.document else None,
        tables=summary.tables,
        measures=summary.measures,
        columns=summary.columns,
        warnings=_details(summary.warnings),
    )


@router.get("/tables", response_model=TableListResponse)
async def list_tables(
    folder_path: str = Query(description="Model folder or .tmdl document"),
    service: ModelFolderService = Depends(get_service),  # noqa: B008
) -> TableListResponse:
    """List table names in model order."""
    return TableListResponse(tables=await run_in_threadpool(service.list_tables, folder_path))


@router.get("/measures", response_model=MeasureListResponse)
async def list_measures(
    folder_path: str = Query(description="Model folder or .tmdl document"),
    table: str = Query(description="Table name (case-insensitive)"),
    service: ModelFolderService = Depends(get_service),  # noqa: B008
) -> MeasureListResponse:
    """List the measures of one table."""
    with _http_errors():
        measures = await run_in_threadpool(service.list_measures, folder_path, table)
    return MeasureListResponse(table=table, measures=measures)


@router.get("/unused-columns", response_model=UnusedColumnsResponse)
async def unused_columns(
    folder_path: str = Query(description="Model folder or .tmdl document"),
    service: ModelFolderService = Depends(get_service),  # noqa: B008
) -> UnusedColumnsResponse:
    """Columns that no formula references, sorted case-insensitively."""
    unused = await run_in_threadpool(service.detect_unused_columns, folder_path)
    return UnusedColumnsResponse(unused=unused, message=render_unused_columns(unused))


# -- edits --------------------------------------------------------------------


@router.post("", response_model=CreateModelResponse, status_code=201)
async def create_model(
    body: CreateModelRequest,
    service: ModelFolderService = Depends(get_service),  # noqa: B008
) -> CreateModelResponse:
    """Create a model folder, or add tables and relationships to an existing one."""
    result = await run_in_threadpool(
        service.create_model, body.folder_path, body.model_name, body.definition
    )
    if not result.saved:
        raise HTTPException(status_code=422, detail=result.transcript[-1])
    return CreateModelResponse(
        model_name=result.model_name,
        saved=result.saved,
        path=str(result.path) if result.path else None,
        created_tables=result.created_tables,
        skipped_tables=result.skipped_tables,
        relationships=result.relationships,
        progress=result.transcript,
    )


@router.post("/measures", response_model=MeasureResponse)
async def add_measure(
    body: MeasureRequest,
    service: ModelFolderService = Depends(get_service),  # noqa: B008
) -> MeasureResponse:
    """Insert a measure, or update the existing one with the same name."""
    with _http_errors():
        saved = await run_in_threadpool(
            service.add_measure,
            body.folder_path,
            body.table,
            body.name,
            body.expression,
            body.format_string,
            body.description,
        )
    return MeasureResponse(table=saved.table, name=saved.name, created=saved.created)


@router.post("/rename", response_model=RenameResponse)
async def rename_object(
    body: RenameRequest,
    service: ModelFolderService = Depends(get_service),  # noqa: B008
) -> RenameResponse:
    """Rename a table, column or measure and rewrite the formulas that use it."""
    with _http_errors():
        result = await run_in_threadpool(
            service.rename,
            body.folder_path,
            body.object_type,
            body.old_name,
            body.new_name,
            body.table,
        )
    return RenameResponse(
        kind=result.kind.value,
        table=result.table,
        old_name=result.old_name,
        new_name=result.new_name,
        rewritten=result.rewritten,
        message=result.message,
    )


@router.post("/format", response_model=FormatResponse)
async def format_model(
    body: FolderRequest,
    service: ModelFolderService = Depends(get_service),  # noqa: B008
) -> FormatResponse:
    """Re-serialize a model in canonical order."""
    with _http_errors():
        result = await run_in_threadpool(service.format, body.folder_path)
    return FormatResponse(path=str(result.path), tables=result.tables, changed=result.changed)


@router.post("/validate", response_model=ValidateResponse)
async def validate_model(
    body: FolderRequest,
    service: ModelFolderService = Depends(get_service),  # noqa: B008
) -> ValidateResponse:
    """Validate a model folder; findings are returned, never raised."""
    progress = ProgressReporter()
    result = await run_in_threadpool(service.validate_model, body.folder_path, progress)
    return ValidateResponse(
        valid=result.valid,
        errors=_details(result.errors),
        warnings=_details(result.warnings),
        progress=progress.transcript,
    )
