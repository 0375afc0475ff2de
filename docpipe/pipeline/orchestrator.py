"""
Pipeline Orchestrator

Drives one execution per document through the ordered stage list:
  1. start()   derive the execution ID, insert-if-absent, schedule a driver
  2. run()     claim the record (version check + lease), then for each stage:
                 - hand the stage a deep copy of the payload
                 - success    → merge payload, advance, reset attempt, checkpoint
                 - retryable  → attempt += 1, checkpoint, back off, retry
                 - exhausted  → failed, last_error = "<stage>: <reason>"
                 - fatal      → failed immediately
  3. After the last stage the record becomes succeeded.

Checkpoint invariants enforced here:
  - The record is persisted after every stage completion and every retry
    decision, so a crash resumes at the last completed stage.
  - Every write is a compare-and-set on the record version; a driver that
    lost its claim stops instead of overwriting a newer checkpoint.
  - Terminal records are only reopened by replay() / retry_from_stage(),
    which start a new generation and append an audit event.

Cancellation is cooperative and takes effect between stages: the record
goes back to pending at its last checkpoint with cancel_requested held,
and stays there until resume() clears it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from docpipe.core.errors import (
    ConcurrentModificationError,
    ExecutionClaimedError,
    InvalidTransitionError,
    StoreUnavailableError,
)
from docpipe.pipeline.definition import PipelineDefinition, StageSpec
from docpipe.pipeline.scheduler import DeferredScheduler, ExecutionScheduler
from docpipe.pipeline.stages.base import StageOutcome, StageResult
from docpipe.pipeline.stages.registry import StageRegistry
from docpipe.pipeline.types import (
    AuditEvent,
    DocumentRef,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionStatusView,
    make_execution_id,
    merge_payload,
    utcnow,
)
from docpipe.store.base import ExecutionRecordStore

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]
Clock = Callable[[], datetime]

_CAS_RETRIES = 5


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class Orchestrator:

    def __init__(
        self,
        pipeline: PipelineDefinition,
        registry: StageRegistry,
        store: ExecutionRecordStore,
        *,
        scheduler: ExecutionScheduler | None = None,
        worker_id: str | None = None,
        lease_seconds: float = 600.0,
        store_retry_attempts: int = 3,
        store_retry_base_delay: float = 0.5,
        sleep: Sleeper | None = None,
        clock: Clock | None = None,
    ) -> None:
        registry.validate(pipeline)

        self._pipeline = pipeline
        self._registry = registry
        self._store = store
        self.scheduler: ExecutionScheduler = scheduler or DeferredScheduler()
        self.worker_id = worker_id or default_worker_id()
        self._lease = timedelta(seconds=lease_seconds)
        self._store_retry_attempts = max(1, store_retry_attempts)
        self._store_retry_base_delay = store_retry_base_delay
        self._sleep: Sleeper = sleep or asyncio.sleep
        self._clock: Clock = clock or utcnow
        self._active: set[str] = set()

    @property
    def pipeline(self) -> PipelineDefinition:
        return self._pipeline

    @property
    def store(self) -> ExecutionRecordStore:
        return self._store

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start(self, ref: DocumentRef) -> str:
        """
        Begin processing a document. Idempotent: a second call for the same
        document returns the existing execution ID without scheduling again.
        """
        existing = await self._store_call(self._store.exists, ref)
        if existing is not None:
            record = await self._store_call(self._store.load, existing)
            logger.info(
                "Start coalesced | exec=%s doc=%s status=%s",
                record.execution_id, ref, record.status.value,
            )
            return record.execution_id

        stored, created = await self._store_call(self._store.create, ExecutionRecord.new(ref))
        if not created:
            logger.info("Start coalesced (race) | exec=%s doc=%s", stored.execution_id, ref)
            return stored.execution_id

        logger.info("Execution created | exec=%s doc=%s", stored.execution_id, ref)
        await self._schedule(stored.execution_id)
        return stored.execution_id

    async def run(self, execution_id: str) -> ExecutionRecord:
        """
        Drive an execution to a terminal status (or back to pending on cancel).
        Resumes from the record's current_stage_index.

        Raises ExecutionClaimedError if another driver holds a live lease.
        """
        if execution_id in self._active:
            raise ExecutionClaimedError(execution_id, self.worker_id)

        self._active.add(execution_id)
        try:
            record = await self._claim(execution_id)
            if record.status is not ExecutionStatus.RUNNING:
                return record
            try:
                return await self._drive(record)
            except asyncio.CancelledError:
                logger.warning(
                    "Execution interrupted | exec=%s stage_index=%d",
                    execution_id, record.current_stage_index,
                )
                raise
        finally:
            self._active.discard(execution_id)

    async def resume(self, execution_id: str) -> str:
        """Reschedule a pending or lease-expired execution, releasing any held cancel."""
        for _ in range(_CAS_RETRIES):
            record = await self._store_call(self._store.load, execution_id)
            if record.is_terminal:
                raise InvalidTransitionError(execution_id, record.status.value, "resume")
            if not record.cancel_requested:
                break
            record.cancel_requested = False
            try:
                await self._store_call(self._store.save, record)
                break
            except ConcurrentModificationError:
                continue
        else:
            raise ExecutionClaimedError(execution_id, None)

        if record.status is ExecutionStatus.RUNNING and not record.lease_expired(self._clock()):
            logger.info("Resume skipped, execution running | exec=%s owner=%s", execution_id, record.owner)
            return execution_id

        logger.info("Execution resumed | exec=%s stage_index=%d", execution_id, record.current_stage_index)
        await self._schedule(execution_id)
        return execution_id

    async def resume_stale(self, older_than: float, limit: int = 50) -> list[str]:
        """Reschedule executions left pending too long or running under an expired lease."""
        stale = await self._store_call(self._store.list_stale, self._clock(), older_than, limit)
        resumed: list[str] = []
        for record in stale:
            logger.warning(
                "Stale execution found | exec=%s status=%s stage_index=%d owner=%s",
                record.execution_id, record.status.value,
                record.current_stage_index, record.owner,
            )
            await self._schedule(record.execution_id)
            resumed.append(record.execution_id)
        return resumed

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def replay(self, target: DocumentRef | str) -> str:
        """Re-run a finished execution from the first stage under a new generation."""
        execution_id = self._resolve_id(target)
        previous = await self._store_call(self._store.load, execution_id)
        if not previous.is_terminal:
            raise InvalidTransitionError(execution_id, previous.status.value, "replay")

        fresh = ExecutionRecord.new(previous.document_ref)
        fresh.created_at = previous.created_at
        fresh.version = previous.version
        fresh.generation = previous.generation + 1
        fresh.audit = previous.audit + [AuditEvent(
            kind="replay",
            at=self._clock(),
            detail={
                "previous_generation": previous.generation,
                "previous_status": previous.status.value,
                "previous_stage_index": previous.current_stage_index,
                "previous_error": previous.last_error,
                # left in place until this generation overwrites it
                "previous_output": previous.payload.get("output"),
            },
        )]
        await self._store_call(self._store.save, fresh)

        logger.info(
            "Execution replayed | exec=%s generation=%d previous_status=%s",
            execution_id, fresh.generation, previous.status.value,
        )
        await self._schedule(execution_id)
        return execution_id

    async def retry_from_stage(self, target: DocumentRef | str, stage: int | str | None = None) -> str:
        """
        Re-enter an execution at `stage` (defaults to the stage it stopped at),
        keeping the payload of every earlier stage.
        Allowed for failed executions and pending ones; the stage may not lie
        beyond the record's current position.
        """
        execution_id = self._resolve_id(target)
        record = await self._store_call(self._store.load, execution_id)

        if record.status not in (ExecutionStatus.FAILED, ExecutionStatus.PENDING):
            raise InvalidTransitionError(execution_id, record.status.value, "retry from stage")

        if stage is None:
            index = min(record.current_stage_index, len(self._pipeline) - 1)
        elif isinstance(stage, str):
            index = self._pipeline.index_of(stage)
        else:
            index = stage
        if not 0 <= index <= min(record.current_stage_index, len(self._pipeline) - 1):
            raise InvalidTransitionError(
                execution_id, record.status.value, f"retry from stage index {index}"
            )

        previous_status = record.status
        previous_index = record.current_stage_index
        if record.is_terminal:
            record.generation += 1
        record.status = ExecutionStatus.PENDING
        record.current_stage_index = index
        record.attempt = 0
        record.last_error = None
        record.owner = None
        record.lease_expires_at = None
        record.cancel_requested = False
        record.audit.append(AuditEvent(
            kind="retry_from_stage",
            at=self._clock(),
            detail={
                "stage": self._pipeline.name_at(index),
                "stage_index": index,
                "previous_status": previous_status.value,
                "previous_stage_index": previous_index,
            },
        ))
        await self._store_call(self._store.save, record)

        logger.info(
            "Execution retry from stage | exec=%s stage=%s generation=%d",
            execution_id, self._pipeline.name_at(index), record.generation,
        )
        await self._schedule(execution_id)
        return execution_id

    async def cancel(self, target: DocumentRef | str) -> ExecutionRecord:
        """
        Request cancellation. A running execution stops at the next stage
        boundary; a pending one is held. Finished executions cannot be cancelled.
        """
        execution_id = self._resolve_id(target)
        for _ in range(_CAS_RETRIES):
            record = await self._store_call(self._store.load, execution_id)
            if record.is_terminal:
                raise InvalidTransitionError(execution_id, record.status.value, "cancel")
            if record.cancel_requested:
                return record
            record.cancel_requested = True
            try:
                stored = await self._store_call(self._store.save, record)
            except ConcurrentModificationError:
                continue
            logger.info("Cancel requested | exec=%s status=%s", execution_id, stored.status.value)
            return stored
        raise ExecutionClaimedError(execution_id, None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_record(self, target: DocumentRef | str) -> ExecutionRecord:
        return await self._store_call(self._store.load, self._resolve_id(target))

    async def get_execution_status(self, target: DocumentRef | str) -> ExecutionStatusView:
        record = await self.get_record(target)
        return ExecutionStatusView(
            execution_id=record.execution_id,
            document_ref=record.document_ref,
            status=record.status,
            current_stage=self._pipeline.name_at(record.current_stage_index),
            current_stage_index=record.current_stage_index,
            attempt=record.attempt,
            last_error=record.last_error,
            generation=record.generation,
            updated_at=record.updated_at,
        )

    # ------------------------------------------------------------------
    # Stage loop
    # ------------------------------------------------------------------

    async def _claim(self, execution_id: str) -> ExecutionRecord:
        record = await self._store_call(self._store.load, execution_id)
        if record.is_terminal:
            logger.info("Execution already %s | exec=%s", record.status.value, execution_id)
            return record
        if record.status is ExecutionStatus.PENDING and record.cancel_requested:
            logger.info("Execution held by cancel request | exec=%s", execution_id)
            return record

        now = self._clock()
        if record.status is ExecutionStatus.RUNNING and record.owner != self.worker_id:
            if not record.lease_expired(now):
                raise ExecutionClaimedError(execution_id, record.owner)
            logger.warning(
                "Lease expired, taking over | exec=%s previous_owner=%s stage_index=%d",
                execution_id, record.owner, record.current_stage_index,
            )

        record.status = ExecutionStatus.RUNNING
        record.owner = self.worker_id
        record.lease_expires_at = now + self._lease
        try:
            claimed = await self._store_call(self._store.save, record)
        except ConcurrentModificationError as exc:
            raise ExecutionClaimedError(execution_id, None) from exc

        logger.info(
            "Execution claimed | exec=%s worker=%s stage_index=%d generation=%d",
            execution_id, self.worker_id, claimed.current_stage_index, claimed.generation,
        )
        return claimed

    async def _drive(self, record: ExecutionRecord) -> ExecutionRecord:
        while record.current_stage_index < len(self._pipeline):
            record = await self._refresh(record)
            if record.cancel_requested:
                return await self._release_cancelled(record)

            spec = self._pipeline[record.current_stage_index]
            result = await self._invoke(spec, record)

            if result.ok:
                record.payload = merge_payload(record.payload, result.payload)
                record.current_stage_index += 1
                record.attempt = 0
                record.last_error = None
                record = await self._checkpoint(record)
                logger.info(
                    "Stage completed | exec=%s stage=%s next_index=%d",
                    record.execution_id, spec.name, record.current_stage_index,
                )
                continue

            record.attempt += 1
            error = f"{spec.name}: {result.reason}"
            record.last_error = error

            if result.outcome is StageOutcome.RETRYABLE and record.attempt < spec.max_attempts:
                delay = spec.backoff_delay(record.attempt)
                record = await self._checkpoint(record)
                logger.warning(
                    "Stage retry scheduled | exec=%s stage=%s attempt=%d/%d delay=%.1fs reason=%s",
                    record.execution_id, spec.name, record.attempt,
                    spec.max_attempts, delay, result.reason,
                )
                await self._sleep(delay)
                continue

            if result.outcome is StageOutcome.RETRYABLE:
                logger.error(
                    "Stage retries exhausted | exec=%s stage=%s attempts=%d",
                    record.execution_id, spec.name, record.attempt,
                )
            return await self._finish(record, ExecutionStatus.FAILED, error)

        return await self._finish(record, ExecutionStatus.SUCCEEDED, None)

    async def _invoke(self, spec: StageSpec, record: ExecutionRecord) -> StageResult:
        stage = self._registry.get(spec.name)
        payload = record.copy().payload
        logger.info(
            "Stage started | exec=%s stage=%s attempt=%d",
            record.execution_id, spec.name, record.attempt + 1,
        )
        try:
            if spec.timeout is None:
                return await stage.execute(payload)
            return await asyncio.wait_for(stage.execute(payload), timeout=spec.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Stage timed out | exec=%s stage=%s timeout=%.1fs",
                record.execution_id, spec.name, spec.timeout,
            )
            return StageResult.retryable(payload, f"timed out after {spec.timeout:g}s")

    async def _finish(
        self, record: ExecutionRecord, status: ExecutionStatus, error: str | None
    ) -> ExecutionRecord:
        record.status = status
        record.last_error = error
        record.owner = None
        record.lease_expires_at = None
        record.cancel_requested = False
        stored = await self._checkpoint(record)
        if status is ExecutionStatus.SUCCEEDED:
            logger.info("Execution succeeded | exec=%s generation=%d", stored.execution_id, stored.generation)
        else:
            logger.error("Execution failed | exec=%s error=%s", stored.execution_id, error)
        return stored

    async def _release_cancelled(self, record: ExecutionRecord) -> ExecutionRecord:
        record.status = ExecutionStatus.PENDING
        record.owner = None
        record.lease_expires_at = None
        record.audit.append(AuditEvent(
            kind="cancelled",
            at=self._clock(),
            detail={
                "stage": self._pipeline.name_at(record.current_stage_index),
                "stage_index": record.current_stage_index,
                "worker": self.worker_id,
            },
        ))
        stored = await self._checkpoint(record)
        logger.info(
            "Execution cancelled | exec=%s stage_index=%d",
            stored.execution_id, stored.current_stage_index,
        )
        return stored

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _checkpoint(self, record: ExecutionRecord) -> ExecutionRecord:
        if record.status is ExecutionStatus.RUNNING:
            record.lease_expires_at = self._clock() + self._lease
        try:
            return await self._store_call(self._store.save, record)
        except ConcurrentModificationError:
            # Only a cancel request may have changed underneath a live claim
            record = await self._refresh(record)
            if record.is_terminal:
                record.cancel_requested = False
            return await self._store_call(self._store.save, record)

    async def _refresh(self, record: ExecutionRecord) -> ExecutionRecord:
        """Adopt an external cancel request, or stop if the claim was lost."""
        stored = await self._store_call(self._store.load, record.execution_id)
        if stored.version == record.version:
            return record
        if (
            stored.status is not ExecutionStatus.RUNNING
            or stored.owner != self.worker_id
            or stored.generation != record.generation
        ):
            logger.warning(
                "Claim lost | exec=%s owner=%s status=%s",
                record.execution_id, stored.owner, stored.status.value,
            )
            raise ExecutionClaimedError(record.execution_id, stored.owner)

        record.version = stored.version
        record.cancel_requested = stored.cancel_requested
        return record

    async def _store_call(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Retry StoreUnavailableError with exponential backoff, then propagate."""
        for attempt in range(1, self._store_retry_attempts + 1):
            try:
                return await fn(*args)
            except StoreUnavailableError as exc:
                if attempt == self._store_retry_attempts:
                    logger.error(
                        "Record store unavailable | op=%s attempts=%d error=%s",
                        getattr(fn, "__name__", fn), attempt, exc,
                    )
                    raise
                delay = self._store_retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Record store unavailable, retrying | op=%s attempt=%d delay=%.2fs",
                    getattr(fn, "__name__", fn), attempt, delay,
                )
                await self._sleep(delay)

    async def _schedule(self, execution_id: str) -> None:
        # Non-fatal: the record stays pending and the stale scanner picks it up
        try:
            await self.scheduler.schedule(execution_id)
        except Exception as exc:
            logger.error("Failed to schedule execution | exec=%s error=%s", execution_id, exc)

    @staticmethod
    def _resolve_id(target: DocumentRef | str) -> str:
        if isinstance(target, DocumentRef):
            return make_execution_id(target)
        return target
