"""FastMCP server exposing the TMDL model folder operations as MCP tools.

Run via::

    tmdlkit-mcp                         # reads .env (default: stdio)
    MCP_TRANSPORT=http tmdlkit-mcp      # streamable HTTP on port 9000
    MCP_TRANSPORT=sse  tmdlkit-mcp      # legacy SSE on port 9000

Every tool works on a model folder (or a single ``.tmdl`` document) given
by path, loads it fresh and saves it when the tool edits the model.
Long-running tools report progress through the MCP context.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TypeVar

from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError
from pydantic import ValidationError

from tmdlkit import __version__
from tmdlkit.models.definition import ModelDefinition
from tmdlkit.models.errors import TmdlError
from tmdlkit.service.analysis import render_unused_columns
from tmdlkit.service.model_folder import ModelFolderService
from tmdlkit.service.progress import ProgressEvent, ProgressReporter
from tmdlkit.settings import Settings

# ---------------------------------------------------------------------------
# Server + shared state
# ---------------------------------------------------------------------------

logger = logging.getLogger("tmdlkit.mcp")

mcp = FastMCP("TMDL Model Tools")
_service: ModelFolderService | None = None

# Upper bound for delivering one progress notification from a worker thread.
_PROGRESS_TIMEOUT = 5.0

R = TypeVar("R")


def _get_service() -> ModelFolderService:
    global _service  # noqa: PLW0603
    if _service is None:
        _service = ModelFolderService(Settings())
    return _service


@contextmanager
def _tool_errors() -> Iterator[None]:
    """Turn tmdlkit failures into ``ToolError`` for the client."""
    try:
        yield
    except TmdlError as exc:
        logger.warning("Tool failed: %s", exc)
        raise ToolError(str(exc)) from exc


def _progress_sink(
    ctx: Context | None, loop: asyncio.AbstractEventLoop
) -> Callable[[ProgressEvent], object] | None:
    """Forward progress events from a worker thread to ``ctx.report_progress``."""
    if ctx is None:
        return None

    def sink(event: ProgressEvent) -> None:
        future = asyncio.run_coroutine_threadsafe(
            ctx.report_progress(
                progress=event.ordinal, total=event.total, message=event.message
            ),
            loop,
        )
        future.result(timeout=_PROGRESS_TIMEOUT)

    return sink


async def _run_in_thread(
    work: Callable[[ProgressReporter, threading.Event], R], ctx: Context | None
) -> tuple[R, ProgressReporter]:
    """Run blocking *work* off the event loop with progress and cancellation wired up."""
    reporter = ProgressReporter(_progress_sink(ctx, asyncio.get_running_loop()))
    cancel = threading.Event()
    try:
        result = await asyncio.to_thread(work, reporter, cancel)
    except asyncio.CancelledError:
        cancel.set()
        raise
    return result, reporter


# ---------------------------------------------------------------------------
# Tool registry (rendered by list_tools)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolInfo:
    name: str
    description: str


TOOL_REGISTRY: tuple[ToolInfo, ...] = (
    ToolInfo("tmdl_load_model", "Load a TMDL model and return a summary of its contents"),
    ToolInfo("tmdl_list_tables", "List all tables in a TMDL model"),
    ToolInfo("tmdl_list_measures", "List all measures of one table"),
    ToolInfo("tmdl_add_measure", "Add or update a measure"),
    ToolInfo(
        "tmdl_rename_object",
        "Rename a table / column / measure and update all DAX references",
    ),
    ToolInfo(
        "tmdl_detect_unused_columns",
        "List columns not referenced by any measure, calculated column or calculated partition",
    ),
    ToolInfo(
        "tmdl_format_model",
        "Re-serialize a model in canonical order so Git diffs stay minimal",
    ),
    ToolInfo(
        "tmdl_validate_model",
        "Validate a model: round-trip, references, relationships, best practices",
    ),
    ToolInfo("tmdl_create_model", "Create or extend a model from a declarative definition"),
    ToolInfo("diff_tmdl", "Git-style patch between two TMDL documents in chunks of at most 1 KB"),
    ToolInfo("list_tools", "List the tools of this server"),
    ToolInfo("get_tmdl_reference", "Get the TMDL text format reference"),
)


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

TMDL_REFERENCE = """\
# TMDL Text Format Reference (as read and written by tmdlkit)

A model folder holds a root document `model.tmdl`, either directly or in a
`definition/` subfolder.  A single `.tmdl` file path works as well.

```
model Sales

table Sales
{
    description: "Order lines"
    column Amount
        dataType: decimal
        sourceColumn: amount
    column Margin = { Sales[Amount] - Sales[Cost] }
        dataType: decimal
    measure 'Total Sales' = { SUM(Sales[Amount]) }
        formatString: "#,0.00"
        description: "Sum of sales"
    hierarchy Calendar
        level Year
            column: Year
    partition SalesData
        mode: import
        source = {
            let Source = Sql.Database("srv", "db") in Source
        }
}

relationship Sales_to_Date
    fromColumn: Sales.OrderDate
    toColumn: Date.Date
    crossFilteringBehavior: oneDirection
    isActive: true
```

## Names

- Plain identifiers (`[A-Za-z_][A-Za-z0-9_]*`) are written bare.
- Any other name is single-quoted, with `'` doubled: `'Sales Fact'`, `'O''Brien'`.
- Measure names are always quoted.
- Names are unique per collection, compared case-insensitively.

## Expressions

- `= { ... }` after a column makes it calculated; after a measure it is the DAX.
- Multi-line expressions go on their own lines, one level deeper than the owner.
- `partition ... mode: calculated` holds DAX in `source`; other modes hold M.

## References inside DAX

- `Table[Column]` / `'Table Name'[Column]`: a column (table-qualified).
- `[Measure]` or `Table[Measure]`: a measure.
- References inside "string literals" and comments are ignored.

## Values

- `dataType`: string, int64, double, decimal, dateTime, boolean, binary, variant
- `mode`: import, directQuery, dual, calculated
- `crossFilteringBehavior`: oneDirection, bothDirections, automatic
"""


@mcp.resource("tmdl://reference")
def tmdl_reference() -> str:
    """TMDL text format reference: layout, names, expressions and references."""
    return TMDL_REFERENCE


@mcp.tool
def get_tmdl_reference() -> str:
    """Get the TMDL text format reference.

    Call this before writing TMDL text or a model definition for
    ``tmdl_create_model``.
    """
    return TMDL_REFERENCE


# ---------------------------------------------------------------------------
# Model tools
# ---------------------------------------------------------------------------


@mcp.tool
async def tmdl_load_model(folder_path: str, ctx: Context | None = None) -> str:
    """Load a TMDL model and return a summary of its contents.

    A missing folder is not an error: the summary describes an empty model
    and lists a warning.

    Args:
        folder_path: Model folder, or a single ``.tmdl`` document.
    """
    logger.info("tmdl_load_model called (path=%s)", folder_path)
    _, reporter = await _run_in_thread(
        lambda progress, _cancel: _get_service().load_model(folder_path, progress), ctx
    )
    return "\n".join(reporter.transcript)


@mcp.tool
def tmdl_list_tables(folder_path: str) -> str:
    """List all tables in a TMDL model, one per line.

    Args:
        folder_path: Model folder, or a single ``.tmdl`` document.
    """
    return "\n".join(_get_service().list_tables(folder_path))


@mcp.tool
def tmdl_list_measures(folder_path: str, table: str) -> str:
    """List the measures of one table, one per line.

    Args:
        folder_path: Model folder, or a single ``.tmdl`` document.
        table: Table name (case-insensitive).
    """
    with _tool_errors():
        return "\n".join(_get_service().list_measures(folder_path, table))


@mcp.tool
def tmdl_add_measure(
    folder_path: str,
    table: str,
    measure_name: str,
    dax: str,
    format_string: str | None = None,
    description: str | None = None,
) -> str:
    """Add a measure to a table, or update it if a measure of that name exists.

    Args:
        folder_path: Model folder, or a single ``.tmdl`` document.
        table: Table that owns the measure.
        measure_name: Measure name.
        dax: DAX expression.
        format_string: Optional format string, e.g. ``#,0.00``.
        description: Optional description.
    """
    logger.info("tmdl_add_measure called (table=%s, measure=%s)", table, measure_name)
    logger.debug("tmdl_add_measure dax:\n%s", dax)
    with _tool_errors():
        saved = _get_service().add_measure(
            folder_path, table, measure_name, dax, format_string, description
        )
    return f"✔ {saved.message}"


@mcp.tool
def tmdl_rename_object(
    folder_path: str,
    object_type: str,
    old_name: str,
    new_name: str,
    table: str | None = None,
) -> str:
    """Rename a table, column or measure and update every DAX reference to it.

    Measures, calculated columns and calculated partitions are rewritten
    everywhere in the model; relationships and hierarchy levels follow.
    Nothing is saved when the target is missing or the new name is taken.

    Args:
        folder_path: Model folder, or a single ``.tmdl`` document.
        object_type: ``table``, ``column`` or ``measure``.
        old_name: Current name.
        new_name: New name.
        table: Owning table (required for columns and measures).
    """
    logger.info(
        "tmdl_rename_object called (%s %s -> %s, table=%s)", object_type, old_name, new_name, table
    )
    with _tool_errors():
        result = _get_service().rename(folder_path, object_type, old_name, new_name, table=table)
    lines = [f"✔ {result.message}"]
    if result.rewritten:
        lines.append(f"Rewrote {len(result.rewritten)} expressions:")
        lines.extend(f"  {location}" for location in result.rewritten)
    return "\n".join(lines)


@mcp.tool
def tmdl_detect_unused_columns(folder_path: str) -> str:
    """List columns that no measure, calculated column or calculated partition references.

    Args:
        folder_path: Model folder, or a single ``.tmdl`` document.
    """
    unused = _get_service().detect_unused_columns(folder_path)
    if not unused:
        return f"✔ {render_unused_columns(unused)}"
    return render_unused_columns(unused)


@mcp.tool
def tmdl_format_model(folder_path: str) -> str:
    """Re-serialize a model with tables, columns, measures and hierarchies sorted by name.

    Args:
        folder_path: Model folder, or a single ``.tmdl`` document.
    """
    with _tool_errors():
        result = _get_service().format(folder_path)
    suffix = "" if result.changed else " (already canonical)"
    return f"✔ Model formatted{suffix}."


@mcp.tool
async def tmdl_validate_model(folder_path: str, ctx: Context | None = None) -> str:
    """Validate a model and stream the findings as progress.

    Checks that the model survives a save/load cycle, that DAX references
    and relationship columns exist, that active relationships leave no
    ambiguous filter paths, plus best-practice warnings.

    Args:
        folder_path: Model folder, or a single ``.tmdl`` document.
    """
    logger.info("tmdl_validate_model called (path=%s)", folder_path)
    result, reporter = await _run_in_thread(
        lambda progress, cancel: _get_service().validate_model(folder_path, progress, cancel),
        ctx,
    )
    lines = list(reporter.transcript)
    for error in result.errors:
        if error.suggestions:
            lines.append(f"  [{error.code}] did you mean: {', '.join(error.suggestions)}?")
    return "\n".join(lines)


@mcp.tool
async def tmdl_create_model(
    folder_path: str,
    model_name: str,
    definition_json: str | None = None,
    ctx: Context | None = None,
) -> str:
    """Create a model folder, or add tables and relationships to an existing one.

    Existing tables are kept and skipped.  The folder is written once, at
    the end; a failure or cancellation leaves it untouched.

    Args:
        folder_path: Target model folder.
        model_name: Name for a new model (an existing model keeps its name).
        definition_json: Optional JSON ``{"tables": [...], "relationships": [...]}``.
            Tables have ``name``, ``description``, ``columns`` (``name``,
            ``dataType``, ``sourceColumn`` or ``expression``), ``measures``
            (``name``, ``expression``, ``formatString``) and ``partitions``
            (``name``, ``mode``, ``source``).  Relationships have
            ``fromTable``, ``fromColumn``, ``toTable``, ``toColumn`` and
            optionally ``name``, ``crossFilteringBehavior``, ``isActive``.
    """
    logger.info("tmdl_create_model called (path=%s, model=%s)", folder_path, model_name)
    definition = None
    if definition_json:
        try:
            definition = ModelDefinition.model_validate(json.loads(definition_json))
        except json.JSONDecodeError as exc:
            raise ToolError(f"Invalid definition JSON: {exc}") from exc
        except ValidationError as exc:
            raise ToolError(f"Invalid model definition: {exc}") from exc
    result, _ = await _run_in_thread(
        lambda progress, cancel: _get_service().create_model(
            folder_path, model_name, definition, progress, cancel
        ),
        ctx,
    )
    return "\n".join(result.transcript)


@mcp.tool
async def diff_tmdl(
    old_tmdl_path: str, new_tmdl_path: str, ctx: Context | None = None
) -> list[str]:
    """Git-style patch between two TMDL documents, as chunks of at most 1 KB.

    Each chunk is also sent as a progress message.  Model folders are
    resolved to their root document.  Tool failures show up as a final
    chunk starting with ``[diff]``.

    Args:
        old_tmdl_path: Original document or model folder.
        new_tmdl_path: Changed document or model folder.
    """
    logger.info("diff_tmdl called (%s -> %s)", old_tmdl_path, new_tmdl_path)

    def work(progress: ProgressReporter, cancel: threading.Event) -> list[str]:
        chunks: list[str] = []
        for chunk in _get_service().diff(old_tmdl_path, new_tmdl_path, cancel=cancel):
            chunks.append(chunk)
            progress.report(chunk)
        return chunks

    chunks, _ = await _run_in_thread(work, ctx)
    return chunks


@mcp.tool
def list_tools() -> str:
    """List the tools of this server with a one-line description each."""
    lines = [f"Tool type: {mcp.name}"]
    lines.extend(f"  - {tool.name}: {tool.description}" for tool in TOOL_REGISTRY)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


@mcp.prompt
def tidy_model() -> str:
    """Steps for cleaning up a model folder safely."""
    return """\
# Tidying a TMDL model

1. `tmdl_validate_model(folder_path)`: fix every error first.  Suggestions
   after "did you mean" list the closest existing names.
2. `tmdl_detect_unused_columns(folder_path)`: columns no DAX refers to.
   Relationship keys show up here too; keep those.
3. `tmdl_rename_object(...)` for names that should change.  DAX references
   are rewritten for you; a name clash aborts without saving.
4. `tmdl_format_model(folder_path)` last, so the diff only shows real changes.
5. `diff_tmdl(old, new)` to review the result.
"""


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server using settings from environment / .env file."""
    settings = Settings()

    logging.basicConfig(level=settings.log_level.upper())
    logger.info(
        "TMDL MCP Server v%s starting (transport=%s)",
        __version__,
        settings.mcp_transport,
    )

    global _service  # noqa: PLW0603
    _service = ModelFolderService(settings)

    if settings.mcp_transport == "stdio":
        mcp.run(transport="stdio")
    else:
        mcp.run(
            transport=settings.mcp_transport,
            host=settings.mcp_server_host,
            port=settings.mcp_server_port,
            log_level=settings.log_level.lower(),
        )


if __name__ == "__main__":
    main()
