"""
SQL execution record store (SQLAlchemy 2.x async).

Shared by every API process and Celery worker, so it is the component that
makes "one driver per execution" hold across machines:

  create()  INSERT; a UNIQUE/PK violation means another trigger won the race,
            in which case the existing row is returned (SELECT-then-INSERT
            race handled by catching IntegrityError).
  save()    SELECT ... FOR UPDATE, version + terminal checks, UPDATE — all in
            one transaction.

Driver / connection errors surface as StoreUnavailableError so the
orchestrator can retry them; they are never swallowed here.
"""

from __future__ import annotations

import copy
import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from docpipe.core.errors import ExecutionNotFoundError, StoreUnavailableError
from docpipe.db.session import session_scope
from docpipe.models.executions import Execution
from docpipe.pipeline.types import (
    AuditEvent,
    DocumentRef,
    ExecutionRecord,
    ExecutionStatus,
    make_execution_id,
    utcnow,
)
from docpipe.store.base import ExecutionRecordStore, check_write

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


# ---------------------------------------------------------------------------
# Row <-> record mapping
# ---------------------------------------------------------------------------

def _to_record(row: Execution) -> ExecutionRecord:
    return ExecutionRecord(
        execution_id=row.execution_id,
        document_ref=DocumentRef(container=row.container, key=row.object_key),
        status=ExecutionStatus(row.status),
        current_stage_index=row.current_stage_index,
        payload=copy.deepcopy(row.payload or {}),
        attempt=row.attempt,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_error=row.last_error,
        version=row.version,
        generation=row.generation,
        owner=row.owner,
        lease_expires_at=row.lease_expires_at,
        cancel_requested=row.cancel_requested,
        audit=[AuditEvent.from_dict(item) for item in (row.audit or [])],
    )


def _apply(row: Execution, record: ExecutionRecord) -> None:
    row.status = record.status.value
    row.current_stage_index = record.current_stage_index
    row.payload = copy.deepcopy(record.payload)
    row.attempt = record.attempt
    row.last_error = record.last_error
    row.generation = record.generation
    row.owner = record.owner
    row.lease_expires_at = record.lease_expires_at
    row.cancel_requested = record.cancel_requested
    row.audit = [event.to_dict() for event in record.audit]


def _new_row(record: ExecutionRecord) -> Execution:
    now = utcnow()
    row = Execution(
        execution_id=record.execution_id,
        container=record.document_ref.container,
        object_key=record.document_ref.key,
        version=1,
        created_at=record.created_at or now,
        updated_at=now,
    )
    _apply(row, record)
    return row


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SQLExecutionRecordStore(ExecutionRecordStore):

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_scope = session_factory or session_scope

    async def load(self, execution_id: str) -> ExecutionRecord:
        try:
            async with self._session_scope() as db:
                row = await db.get(Execution, execution_id)
                record = _to_record(row) if row is not None else None
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(f"load {execution_id}: {exc}") from exc

        if record is None:
            raise ExecutionNotFoundError(execution_id)
        return record

    async def create(self, record: ExecutionRecord) -> tuple[ExecutionRecord, bool]:
        row = _new_row(record)
        try:
            async with self._session_scope() as db:
                db.add(row)
                await db.flush()   # surfaces the PK / UNIQUE violation here
            logger.debug("Record created | exec=%s", record.execution_id)
            return _to_record(row), True
        except IntegrityError:
            # Concurrent trigger for the same document inserted first
            logger.info("Record already exists | exec=%s", record.execution_id)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(f"create {record.execution_id}: {exc}") from exc

        return await self.load(record.execution_id), False

    async def save(self, record: ExecutionRecord) -> ExecutionRecord:
        try:
            async with self._session_scope() as db:
                result = await db.execute(
                    select(Execution)
                    .where(Execution.execution_id == record.execution_id)
                    .with_for_update()
                )
                row = result.scalars().first()
                if row is None:
                    raise ExecutionNotFoundError(record.execution_id)

                check_write(_to_record(row), record)

                _apply(row, record)
                row.version = record.version + 1
                row.updated_at = utcnow()
                stored = _to_record(row)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(f"save {record.execution_id}: {exc}") from exc
        return stored

    async def exists(self, ref: DocumentRef) -> str | None:
        try:
            async with self._session_scope() as db:
                result = await db.execute(
                    select(Execution.execution_id).where(
                        Execution.container == ref.container,
                        Execution.object_key == ref.key,
                    )
                )
                found = result.scalars().first()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(f"exists {ref}: {exc}") from exc

        if found is None:
            return None
        # Rows are keyed by the deterministic ID; anything else is a corrupt row
        expected = make_execution_id(ref)
        if found != expected:
            logger.warning("Execution id mismatch | doc=%s stored=%s expected=%s", ref, found, expected)
        return found

    async def list_stale(self, now: datetime, older_than: float, limit: int = 50) -> list[ExecutionRecord]:
        cutoff = now - timedelta(seconds=older_than)
        stmt = (
            select(Execution)
            .where(
                or_(
                    and_(
                        Execution.status == ExecutionStatus.PENDING.value,
                        Execution.cancel_requested.is_(False),
                        Execution.updated_at <= cutoff,
                    ),
                    and_(
                        Execution.status == ExecutionStatus.RUNNING.value,
                        or_(
                            Execution.lease_expires_at.is_(None),
                            Execution.lease_expires_at <= now,
                        ),
                    ),
                )
            )
            .order_by(Execution.updated_at)
            .limit(limit)
        )
        try:
            async with self._session_scope() as db:
                result = await db.execute(stmt)
                rows = result.scalars().all()
                records = [_to_record(row) for row in rows]
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(f"list_stale: {exc}") from exc
        return records
