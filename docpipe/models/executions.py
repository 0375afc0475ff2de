"""
SQLAlchemy ORM Model — Pipeline Executions

One row per document (execution_id is derived from container + key).
The `version` column backs the store's compare-and-set; `generation`
increments when a finished execution is replayed.

State machine (status column):
    pending   — created, or returned after a cancellation; waiting for a worker
    running   — owned by `owner` until `lease_expires_at`
    succeeded — result published to results/<key>.json
    failed    — see last_error; payload keeps every completed stage's output
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Execution(Base):
    __tablename__ = "pipeline_executions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'succeeded', 'failed')",
            name="pipeline_executions_status_check",
        ),
        UniqueConstraint("container", "object_key", name="uq_pipeline_executions_document"),
        Index("idx_pipeline_executions_status", "status", "updated_at"),
    )

    execution_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Document identity
    container:  Mapped[str] = mapped_column(Text, nullable=False)
    object_key: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    current_stage_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Concurrency control
    version:    Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    owner:      Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Append-only audit trail: [{"kind", "at", "detail"}]
    audit: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<Execution id={self.execution_id} doc={self.container}/{self.object_key} "
            f"status={self.status} stage={self.current_stage_index} v={self.version}>"
        )
