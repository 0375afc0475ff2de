"""
In-process execution record store.

Used for local development, tests, and single-process deployments. All
operations are serialised by one asyncio.Lock, which makes save() atomic
with respect to concurrent writers in the same event loop.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from docpipe.core.errors import ExecutionNotFoundError
from docpipe.pipeline.types import DocumentRef, ExecutionRecord, make_execution_id, utcnow
from docpipe.store.base import ExecutionRecordStore, check_write, is_stale

logger = logging.getLogger(__name__)


class InMemoryExecutionRecordStore(ExecutionRecordStore):

    def __init__(self) -> None:
        self._records: dict[str, ExecutionRecord] = {}
        self._lock = asyncio.Lock()

    async def load(self, execution_id: str) -> ExecutionRecord:
        async with self._lock:
            try:
                return self._records[execution_id].copy()
            except KeyError:
                raise ExecutionNotFoundError(execution_id) from None

    async def create(self, record: ExecutionRecord) -> tuple[ExecutionRecord, bool]:
        async with self._lock:
            existing = self._records.get(record.execution_id)
            if existing is not None:
                return existing.copy(), False

            stored = record.copy()
            stored.version = 1
            stored.updated_at = utcnow()
            self._records[stored.execution_id] = stored
            logger.debug("Record created | exec=%s", stored.execution_id)
            return stored.copy(), True

    async def save(self, record: ExecutionRecord) -> ExecutionRecord:
        async with self._lock:
            current = self._records.get(record.execution_id)
            if current is None:
                raise ExecutionNotFoundError(record.execution_id)
            check_write(current, record)

            stored = record.copy()
            stored.version = current.version + 1
            stored.updated_at = utcnow()
            self._records[stored.execution_id] = stored
            return stored.copy()

    async def exists(self, ref: DocumentRef) -> str | None:
        execution_id = make_execution_id(ref)
        async with self._lock:
            return execution_id if execution_id in self._records else None

    async def list_stale(self, now: datetime, older_than: float, limit: int = 50) -> list[ExecutionRecord]:
        async with self._lock:
            stale = [r.copy() for r in self._records.values() if is_stale(r, now, older_than)]
        stale.sort(key=lambda r: r.updated_at)
        return stale[:limit]

    def __len__(self) -> int:
        return len(self._records)
