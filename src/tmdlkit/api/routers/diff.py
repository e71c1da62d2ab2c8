"""Streaming diff endpoint."""

from __future__ import annotations

import threading
from collections.abc import AsyncIterator, Iterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

from tmdlkit.api.deps import get_service
from tmdlkit.api.schemas import DiffRequest
from tmdlkit.service.model_folder import ModelFolderService

router = APIRouter()


async def _relay(chunks: Iterator[str], cancel: threading.Event) -> AsyncIterator[str]:
    """Pull chunks in the threadpool; stop the diff process if the client goes away."""
    try:
        async for chunk in iterate_in_threadpool(chunks):
            yield chunk
    finally:
        cancel.set()
        close = getattr(chunks, "close", None)
        if close is not None:
            await run_in_threadpool(close)


@router.post("")
async def diff(
    body: DiffRequest,
    service: ModelFolderService = Depends(get_service),  # noqa: B008
) -> StreamingResponse:
    """Stream a unified diff of two documents (or model folders) in chunks of at most 1 KB.

    Tool failures are reported in a final chunk starting with ``[diff]``.
    """
    cancel = threading.Event()
    chunks = service.diff(body.old_path, body.new_path, cancel=cancel)
    return StreamingResponse(
        _relay(chunks, cancel),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
