"""
Batch Ingestion API Router

POST /api/v1/batches
  Multipart: files[] plus form fields destination, requested_by, and
  optional title, classified, progress_token. Runs the whole batch and
  returns the BatchReport. 400 NO_VALID_INPUT when every file is rejected.

GET /api/v1/batches/progress/{progress_token}
  SSE stream of unit transitions for the batch submitted with the same
  progress_token. Connect before calling POST.

POST /api/v1/batches/{progress_token}/cancel
  Cancels an in-flight batch. Units not yet terminal end FAILED(cancelled);
  the POST call still returns its report.

Destination resolution and authentication happen upstream; destination and
requested_by arrive here as opaque strings.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import AsyncGenerator, Callable, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse, StreamingResponse

from docbatch.core.types import BatchProgressEvent, BatchRequest, RawInput
from docbatch.schemas.batches import (
    BatchErrors,
    BatchProgressPayload,
    BatchReportResponse,
    ErrorResponse,
)
from docbatch.services.ingestion import BatchCoordinator, ProgressCallback

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/batches",
    tags=["Batch Ingestion"],
)

CoordinatorFactory = Callable[[Optional[ProgressCallback]], BatchCoordinator]


# ---------------------------------------------------------------------------
# In-memory SSE progress store and active batches
# Key: progress_token. Single-process only; use Redis pub/sub when scaled out.
# ---------------------------------------------------------------------------

_PROGRESS_QUEUES: dict[str, asyncio.Queue] = {}
_ACTIVE_BATCHES:  dict[str, BatchCoordinator] = {}
_PROGRESS_TOKEN_TTL = 900  # 15 minutes


def get_coordinator_factory() -> CoordinatorFactory:
    """Dependency; overridden in tests."""
    from docbatch.services.ingestion import build_batch_coordinator
    return build_batch_coordinator


# ---------------------------------------------------------------------------
# POST /batches
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=BatchReportResponse,
    status_code=status.HTTP_200_OK,
    summary="Ingest a batch of PDFs and images",
    responses={
        200: {"model": BatchReportResponse, "description": "Every unit reached a terminal state"},
        400: {"model": ErrorResponse, "description": "No file in the batch can be ingested"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
async def create_batch(
    files:          list[UploadFile] = File(..., description="PDF and image files"),
    destination:    str = Form(..., min_length=1, description="Opaque storage-location identifier"),
    requested_by:   str = Form(..., min_length=1, description="Display string of the requesting user"),
    title:          Optional[str] = Form(None, max_length=255),
    classified:     bool = Form(False),
    progress_token: Optional[str] = Form(None, description="Token of an open progress stream"),
    factory:        CoordinatorFactory = Depends(get_coordinator_factory),
) -> JSONResponse:
    request_id = str(uuid.uuid4())

    if not files:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=BatchErrors.missing_files().model_dump(mode="json"),
        )

    inputs = [
        RawInput(
            original_name=upload.filename or f"file-{position}",
            data=await upload.read(),
            declared_mime=upload.content_type,
        )
        for position, upload in enumerate(files)
    ]

    coordinator = factory(_progress_publisher(progress_token) if progress_token else None)
    if progress_token:
        _ACTIVE_BATCHES[progress_token] = coordinator

    try:
        report = await coordinator.run(
            BatchRequest(
                destination=destination,
                requested_by=requested_by,
                inputs=inputs,
                explicit_title=title,
                classified=classified,
            )
        )
    except Exception:
        logger.exception("Unhandled batch error | request_id=%s", request_id)
        if progress_token:
            await publish_progress(progress_token, {"event": "batch_error", "request_id": request_id})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=BatchErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )
    finally:
        if progress_token:
            _ACTIVE_BATCHES.pop(progress_token, None)

    if report.no_valid_input:
        if progress_token:
            await publish_progress(progress_token, {"event": "batch_complete", "batch_id": report.batch_id})
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=BatchErrors.no_valid_input(report.rejected).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    body = BatchReportResponse.from_report(report)
    if progress_token:
        await publish_progress(
            progress_token,
            {"event": "batch_complete", "batch_id": report.batch_id, "summary": body.summary},
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": request_id, "X-Batch-ID": report.batch_id},
    )


# ---------------------------------------------------------------------------
# POST /batches/{progress_token}/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/{progress_token}/cancel",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel an in-flight batch",
    responses={404: {"model": ErrorResponse}},
)
async def cancel_batch(progress_token: str) -> JSONResponse:
    coordinator = _ACTIVE_BATCHES.get(progress_token)
    if coordinator is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=ErrorResponse(
                error_code="BATCH_NOT_FOUND",
                message=f"No running batch for token '{progress_token}'.",
            ).model_dump(mode="json"),
        )

    coordinator.cancel()
    logger.info("Batch cancellation requested | token=%s", progress_token)
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"status": "cancelling"})


# ---------------------------------------------------------------------------
# GET /batches/progress/{progress_token} (SSE stream)
# ---------------------------------------------------------------------------

@router.get(
    "/progress/{progress_token}",
    summary="Stream batch progress via Server-Sent Events",
    response_class=StreamingResponse,
)
async def stream_batch_progress(progress_token: str, request: Request) -> StreamingResponse:
    queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
    _PROGRESS_QUEUES[progress_token] = queue

    async def event_generator() -> AsyncGenerator[str, None]:
        start = time.monotonic()
        try:
            yield _sse_event("connected", {"token": progress_token})

            while True:
                if await request.is_disconnected():
                    logger.debug("SSE client disconnected | token=%s", progress_token)
                    break

                if time.monotonic() - start > _PROGRESS_TOKEN_TTL:
                    yield _sse_event("timeout", {"message": "Progress stream expired"})
                    break

                try:
                    event: dict = await asyncio.wait_for(queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue

                yield _sse_event(event.get("event", "unit_progress"), event)

                if event.get("event") in ("batch_complete", "batch_error"):
                    break
        finally:
            _PROGRESS_QUEUES.pop(progress_token, None)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control":     "no-cache",
            "Connection":        "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def _progress_publisher(progress_token: str) -> ProgressCallback:
    async def publish(event: BatchProgressEvent) -> None:
        await publish_progress(
            progress_token,
            BatchProgressPayload.from_event(event).model_dump(mode="json"),
        )
    return publish


def _sse_event(event_name: str, data: dict) -> str:
    return f"event: {event_name}\ndata: {json.dumps(data)}\n\n"


async def publish_progress(progress_token: str, event: dict) -> None:
    """Push an event to the SSE queue for the given token, if a client is listening."""
    queue = _PROGRESS_QUEUES.get(progress_token)
    if queue:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.debug("SSE queue full for token=%s, dropping event", progress_token)
