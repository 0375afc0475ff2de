"""
Pipeline Executions — Pydantic Request/Response Schemas

Covers /api/v1/executions:
  - Start request (document ref) and S3 event notification passthrough
  - Execution status view and full record view (payload + audit trail)
  - Operator actions: replay, retry-from-stage, cancel, resume
  - All structured error bodies (400, 404, 409, 422, 500, 503)

Design decisions:
  - execution_id is always server-derived from container + key; never client-supplied.
  - status is the pipeline state, separate from HTTP status.
  - All timestamps are ISO-8601 UTC strings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from docpipe.pipeline.types import ExecutionRecord, ExecutionStatus, ExecutionStatusView


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class DocumentRefIn(BaseModel):
    container: str = Field(..., min_length=1, description="Bucket holding the document")
    key:       str = Field(..., min_length=1, description="Object key of the document")


class StartExecutionRequest(BaseModel):
    document_ref: DocumentRefIn


class RetryFromStageRequest(BaseModel):
    """Stage to re-enter, by name or index. Omit to retry the stage that failed."""
    stage: str | int | None = Field(None, description="Stage name (e.g. 'analyze_text') or index")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ExecutionAcceptedResponse(BaseModel):
    """HTTP 202 — the execution exists; processing is async."""
    execution_id: str
    status:       ExecutionStatus
    status_url:   str = Field(..., description="Poll this URL for pipeline progress")


class TriggerResponse(BaseModel):
    started: list[str] = Field(default_factory=list, description="Execution IDs started or coalesced")
    skipped: list[str] = Field(default_factory=list, description="Objects ignored (results prefix, non-create events)")


class ExecutionStatusResponse(BaseModel):
    """Polled by clients to track pipeline progress."""
    execution_id:        str
    container:           str
    key:                 str
    status:              ExecutionStatus
    current_stage:       str | None = Field(None, description="Stage being (or to be) run; null once finished")
    current_stage_index: int
    attempt:             int
    last_error:          str | None = None
    generation:          int
    updated_at:          datetime

    @classmethod
    def from_view(cls, view: ExecutionStatusView) -> ExecutionStatusResponse:
        return cls(
            execution_id=view.execution_id,
            container=view.document_ref.container,
            key=view.document_ref.key,
            status=view.status,
            current_stage=view.current_stage,
            current_stage_index=view.current_stage_index,
            attempt=view.attempt,
            last_error=view.last_error,
            generation=view.generation,
            updated_at=view.updated_at,
        )


class AuditEventOut(BaseModel):
    kind:   str
    at:     datetime
    detail: dict[str, Any] = Field(default_factory=dict)


class ExecutionDetailResponse(ExecutionStatusResponse):
    """Full record: payload accumulated so far plus the operator audit trail."""
    payload:          dict[str, Any]
    cancel_requested: bool
    owner:            str | None = None
    created_at:       datetime
    audit:            list[AuditEventOut] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: ExecutionRecord, current_stage: str | None) -> ExecutionDetailResponse:
        return cls(
            execution_id=record.execution_id,
            container=record.document_ref.container,
            key=record.document_ref.key,
            status=record.status,
            current_stage=current_stage,
            current_stage_index=record.current_stage_index,
            attempt=record.attempt,
            last_error=record.last_error,
            generation=record.generation,
            updated_at=record.updated_at,
            payload=record.payload,
            cancel_requested=record.cancel_requested,
            owner=record.owner,
            created_at=record.created_at,
            audit=[AuditEventOut(kind=e.kind, at=e.at, detail=e.detail) for e in record.audit],
        )


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class ExecutionErrors:
    """Factories for every documented error case."""

    @staticmethod
    def not_found(execution_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="EXECUTION_NOT_FOUND",
            message=f"Execution '{execution_id}' was not found.",
        )

    @staticmethod
    def document_not_found(container: str, key: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="EXECUTION_NOT_FOUND",
            message=f"No execution exists for document '{container}/{key}'.",
        )

    @staticmethod
    def invalid_transition(execution_id: str, status: str, operation: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_TRANSITION",
            message=f"Cannot {operation} execution '{execution_id}' while it is {status}.",
            details=[
                ErrorDetail(
                    field=None,
                    message="Replay applies to finished executions; cancel and resume to unfinished ones.",
                    code="INVALID_TRANSITION",
                )
            ],
        )

    @staticmethod
    def conflict(execution_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="CONCURRENT_MODIFICATION",
            message=f"Execution '{execution_id}' was modified concurrently. Please retry.",
        )

    @staticmethod
    def unknown_stage(stage: str | int) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNKNOWN_STAGE",
            message=f"Stage '{stage}' is not part of the pipeline.",
            details=[ErrorDetail(field="stage", message=f"Unknown stage: {stage}", code="UNKNOWN_STAGE")],
        )

    @staticmethod
    def invalid_event(detail: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_EVENT",
            message="The event is not a valid S3 notification or documentRef.",
            details=[ErrorDetail(field=None, message=detail, code="INVALID_EVENT")],
        )

    @staticmethod
    def result_not_available(execution_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="RESULT_NOT_AVAILABLE",
            message=f"Execution '{execution_id}' has no published result.",
        )

    @staticmethod
    def store_unavailable() -> ErrorResponse:
        return ErrorResponse(
            error_code="STORE_UNAVAILABLE",
            message="The execution store is temporarily unavailable. Please retry.",
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )


HTTP_ERROR_MAP: dict[int, str] = {
    400: "INVALID_EVENT",              # malformed S3 notification / documentRef
    404: "EXECUTION_NOT_FOUND",        # unknown execution or document
    409: "INVALID_TRANSITION",         # operation not allowed in current status
    422: "VALIDATION_ERROR",           # FastAPI Pydantic validation failure
    500: "INTERNAL_ERROR",             # unhandled exception
    503: "STORE_UNAVAILABLE",          # record store unreachable
}
