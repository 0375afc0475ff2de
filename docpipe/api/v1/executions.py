"""
Pipeline Executions API Router
/api/v1/executions

Implements:
  - Start an execution for a document (idempotent, 202)
  - S3 event notification intake (trigger listener over HTTP)
  - Status polling by document ref or by execution ID
  - Operator actions: replay, retry-from-stage, cancel, resume
  - Result artifact retrieval for succeeded executions

Request lifecycle (start):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Validate document ref (non-empty container + key)    │
  │ 2. Derive execution ID = exec-sha256(container/key)     │
  │ 3. Insert-if-absent in the execution record store       │
  │ 4. Schedule a driver (asyncio task or Celery task)      │
  │ 5. Return 202 + Location of the status endpoint         │
  └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from docpipe.core.config import get_settings
from docpipe.core.errors import (
    ConcurrentModificationError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    PipelineDefinitionError,
)
from docpipe.pipeline.orchestrator import Orchestrator
from docpipe.pipeline.types import DocumentRef, ExecutionStatus
from docpipe.schemas.executions import (
    ErrorResponse,
    ExecutionAcceptedResponse,
    ExecutionDetailResponse,
    ExecutionErrors,
    ExecutionStatusResponse,
    RetryFromStageRequest,
    StartExecutionRequest,
    TriggerResponse,
)
from docpipe.storage.s3 import result_key
from docpipe.triggers.s3_events import InvalidEventError, handle_s3_event

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/executions",
    tags=["Pipeline Executions"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_orchestrator(request: Request) -> Orchestrator:
    """The orchestrator built once in the app lifespan."""
    return request.app.state.orchestrator


def get_result_reader(request: Request):
    return request.app.state.result_reader


def _status_url(execution_id: str) -> str:
    return f"/api/v1/executions/{execution_id}"


def _raise(status_code: int, body: ErrorResponse) -> None:
    raise HTTPException(status_code=status_code, detail=body.model_dump(mode="json"))


def _accepted(execution_id: str, execution_status: ExecutionStatus) -> JSONResponse:
    body = ExecutionAcceptedResponse(
        execution_id=execution_id,
        status=execution_status,
        status_url=_status_url(execution_id),
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={
            "X-Execution-ID": execution_id,
            "Location":       _status_url(execution_id),
        },
    )


# ---------------------------------------------------------------------------
# POST /executions
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=ExecutionAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start processing a document",
    description=(
        "Idempotent: repeated calls for the same document return the same execution ID "
        "and never schedule a second run."
    ),
    responses={
        202: {"model": ExecutionAcceptedResponse},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def start_execution(
    body: StartExecutionRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    ref = DocumentRef(container=body.document_ref.container, key=body.document_ref.key)
    execution_id = await orchestrator.start(ref)
    view = await orchestrator.get_execution_status(execution_id)
    return _accepted(execution_id, view.status)


# ---------------------------------------------------------------------------
# POST /executions/events/s3
# ---------------------------------------------------------------------------

@router.post(
    "/events/s3",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Accept an S3 ObjectCreated notification",
    responses={
        202: {"model": TriggerResponse},
        400: {"model": ErrorResponse, "description": "Malformed event"},
    },
)
async def receive_s3_event(
    event: dict[str, Any] = Body(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TriggerResponse:
    try:
        result = await handle_s3_event(event, orchestrator, get_settings().results_prefix)
    except InvalidEventError as exc:
        logger.warning("Rejected S3 event: %s", exc)
        _raise(status.HTTP_400_BAD_REQUEST, ExecutionErrors.invalid_event(str(exc)))
    return TriggerResponse(started=result.started, skipped=result.skipped)


# ---------------------------------------------------------------------------
# GET /executions/status?container=&key=
# ---------------------------------------------------------------------------

@router.get(
    "/status",
    response_model=ExecutionStatusResponse,
    summary="Poll pipeline status for a document",
    responses={404: {"model": ErrorResponse}},
)
async def get_status_by_document(
    container: str,
    key: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ExecutionStatusResponse:
    try:
        ref = DocumentRef(container=container, key=key)
        view = await orchestrator.get_execution_status(ref)
    except ValueError as exc:
        _raise(status.HTTP_400_BAD_REQUEST, ExecutionErrors.invalid_event(str(exc)))
    except ExecutionNotFoundError:
        _raise(status.HTTP_404_NOT_FOUND, ExecutionErrors.document_not_found(container, key))
    return ExecutionStatusResponse.from_view(view)


# ---------------------------------------------------------------------------
# GET /executions/{execution_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{execution_id}",
    response_model=ExecutionDetailResponse,
    summary="Full execution record",
    responses={404: {"model": ErrorResponse}},
)
async def get_execution(
    execution_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ExecutionDetailResponse:
    try:
        record = await orchestrator.get_record(execution_id)
    except ExecutionNotFoundError:
        _raise(status.HTTP_404_NOT_FOUND, ExecutionErrors.not_found(execution_id))
    return ExecutionDetailResponse.from_record(
        record, orchestrator.pipeline.name_at(record.current_stage_index)
    )


# ---------------------------------------------------------------------------
# GET /executions/{execution_id}/result
# ---------------------------------------------------------------------------

@router.get(
    "/{execution_id}/result",
    summary="Published result artifact (results/<key>.json)",
    responses={404: {"model": ErrorResponse}},
)
async def get_execution_result(
    execution_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    reader=Depends(get_result_reader),
) -> dict:
    try:
        record = await orchestrator.get_record(execution_id)
    except ExecutionNotFoundError:
        _raise(status.HTTP_404_NOT_FOUND, ExecutionErrors.not_found(execution_id))

    if record.status is not ExecutionStatus.SUCCEEDED:
        _raise(status.HTTP_404_NOT_FOUND, ExecutionErrors.result_not_available(execution_id))

    ref = record.document_ref
    output = record.payload.get("output") or {}
    bucket = output.get("bucket", ref.container)
    key = output.get("key", result_key(ref.key, get_settings().results_prefix))
    try:
        return await reader.get_json(bucket, key)
    except FileNotFoundError:
        logger.warning("Result artifact missing | exec=%s s3://%s/%s", execution_id, bucket, key)
        _raise(status.HTTP_404_NOT_FOUND, ExecutionErrors.result_not_available(execution_id))


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

@router.post(
    "/{execution_id}/replay",
    response_model=ExecutionAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-run a finished execution from the first stage",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def replay_execution(
    execution_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    try:
        await orchestrator.replay(execution_id)
    except ExecutionNotFoundError:
        _raise(status.HTTP_404_NOT_FOUND, ExecutionErrors.not_found(execution_id))
    except InvalidTransitionError as exc:
        _raise(status.HTTP_409_CONFLICT, ExecutionErrors.invalid_transition(execution_id, exc.status, "replay"))
    except ConcurrentModificationError:
        _raise(status.HTTP_409_CONFLICT, ExecutionErrors.conflict(execution_id))
    return _accepted(execution_id, ExecutionStatus.PENDING)


@router.post(
    "/{execution_id}/retry",
    response_model=ExecutionAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry a failed execution from a stage",
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def retry_execution(
    execution_id: str,
    body: RetryFromStageRequest | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    stage = body.stage if body is not None else None
    try:
        await orchestrator.retry_from_stage(execution_id, stage)
    except ExecutionNotFoundError:
        _raise(status.HTTP_404_NOT_FOUND, ExecutionErrors.not_found(execution_id))
    except PipelineDefinitionError:
        _raise(status.HTTP_400_BAD_REQUEST, ExecutionErrors.unknown_stage(stage))
    except InvalidTransitionError as exc:
        _raise(
            status.HTTP_409_CONFLICT,
            ExecutionErrors.invalid_transition(execution_id, exc.status, exc.operation),
        )
    except ConcurrentModificationError:
        _raise(status.HTTP_409_CONFLICT, ExecutionErrors.conflict(execution_id))
    return _accepted(execution_id, ExecutionStatus.PENDING)


@router.post(
    "/{execution_id}/cancel",
    response_model=ExecutionStatusResponse,
    summary="Request cancellation at the next stage boundary",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_execution(
    execution_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ExecutionStatusResponse:
    try:
        await orchestrator.cancel(execution_id)
        view = await orchestrator.get_execution_status(execution_id)
    except ExecutionNotFoundError:
        _raise(status.HTTP_404_NOT_FOUND, ExecutionErrors.not_found(execution_id))
    except InvalidTransitionError as exc:
        _raise(status.HTTP_409_CONFLICT, ExecutionErrors.invalid_transition(execution_id, exc.status, "cancel"))
    return ExecutionStatusResponse.from_view(view)


@router.post(
    "/{execution_id}/resume",
    response_model=ExecutionAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Resume a cancelled or stalled execution from its last checkpoint",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def resume_execution(
    execution_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    try:
        await orchestrator.resume(execution_id)
        view = await orchestrator.get_execution_status(execution_id)
    except ExecutionNotFoundError:
        _raise(status.HTTP_404_NOT_FOUND, ExecutionErrors.not_found(execution_id))
    except InvalidTransitionError as exc:
        _raise(status.HTTP_409_CONFLICT, ExecutionErrors.invalid_transition(execution_id, exc.status, "resume"))
    return _accepted(execution_id, view.status)
