"""
Core data types for pipeline executions.

ExecutionRecord state machine (status):
    pending   — created on first trigger, or returned here by a cancellation
    running   — claimed by a worker; stages advancing
    succeeded — the last stage (result persistence) returned without error
    failed    — a stage exhausted its retry budget or failed fatally

Terminal records are never rewritten in place. Replay and retry-from-stage
open a new generation of the record, carrying the audit trail forward.
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

StagePayload = dict[str, Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Document identity
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentRef:
    """Identity of a stored document: the bucket (container) and object key."""
    container: str
    key:       str

    def __post_init__(self) -> None:
        if not self.container or not self.key:
            raise ValueError("DocumentRef requires a non-empty container and key")

    def __str__(self) -> str:
        return f"{self.container}/{self.key}"

    def to_dict(self) -> dict[str, str]:
        return {"container": self.container, "key": self.key}


def make_execution_id(ref: DocumentRef) -> str:
    """
    Deterministic execution ID: duplicate triggers for the same object
    always resolve to the same execution.

    The pair is hashed as a JSON array so ("a/b", "c") and ("a", "b/c")
    stay distinct.
    """
    identity = json.dumps([ref.container, ref.key], ensure_ascii=False)
    digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()
    return f"exec-{digest[:32]}"


def merge_payload(previous: StagePayload, produced: StagePayload) -> StagePayload:
    """Additive merge — keys written by earlier stages are never dropped."""
    merged = copy.deepcopy(previous)
    merged.update(copy.deepcopy(produced))
    return merged


# ---------------------------------------------------------------------------
# Execution record
# ---------------------------------------------------------------------------

class ExecutionStatus(str, Enum):
    PENDING   = "pending"
    RUNNING   = "running"
    SUCCEEDED = "succeeded"
    FAILED    = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED)


@dataclass
class AuditEvent:
    kind:   str                       # replay | retry_from_stage | cancelled
    at:     datetime = field(default_factory=utcnow)
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "at": self.at.isoformat(), "detail": dict(self.detail)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        return cls(
            kind=data["kind"],
            at=datetime.fromisoformat(data["at"]),
            detail=dict(data.get("detail") or {}),
        )


@dataclass
class ExecutionRecord:
    execution_id:        str
    document_ref:        DocumentRef
    status:              ExecutionStatus = ExecutionStatus.PENDING
    current_stage_index: int = 0
    payload:             StagePayload = field(default_factory=dict)
    attempt:             int = 0
    created_at:          datetime = field(default_factory=utcnow)
    updated_at:          datetime = field(default_factory=utcnow)
    last_error:          str | None = None

    # Concurrency control and history
    version:          int = 0
    generation:       int = 1
    owner:            str | None = None
    lease_expires_at: datetime | None = None
    cancel_requested: bool = False
    audit:            list[AuditEvent] = field(default_factory=list)

    @classmethod
    def new(cls, ref: DocumentRef) -> ExecutionRecord:
        """A fresh pending record, payload seeded with the document location."""
        return cls(
            execution_id=make_execution_id(ref),
            document_ref=ref,
            payload={"bucket": ref.container, "key": ref.key},
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def lease_expired(self, now: datetime) -> bool:
        return self.lease_expires_at is None or self.lease_expires_at <= now

    def copy(self) -> ExecutionRecord:
        return copy.deepcopy(self)


@dataclass(frozen=True)
class ExecutionStatusView:
    """Operational view returned by Orchestrator.get_execution_status()."""
    execution_id:        str
    document_ref:        DocumentRef
    status:              ExecutionStatus
    current_stage:       str | None
    current_stage_index: int
    attempt:             int
    last_error:          str | None
    generation:          int
    updated_at:          datetime
