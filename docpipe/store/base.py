"""
Execution Record Store — Abstract Base

The store is the durability boundary for crash recovery and the only shared
mutable resource in the system. Every implementation guarantees:

  - create() is insert-if-absent: two concurrent starts for the same document
    yield one record.
  - save() is a compare-and-set on `version`. A writer holding a stale copy
    gets ConcurrentModificationError instead of silently overwriting a newer
    checkpoint ("last checkpoint wins" is never allowed).
  - A stored terminal record is never rewritten within its generation. Only
    a record with a higher generation (replay / retry-from-stage) replaces it.
  - Records are copied in and out; callers never share state with the store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from docpipe.core.errors import ConcurrentModificationError, TerminalRecordError
from docpipe.pipeline.types import DocumentRef, ExecutionRecord, ExecutionStatus


def check_write(stored: ExecutionRecord, incoming: ExecutionRecord) -> None:
    """Validate an incoming save against the currently stored record."""
    if stored.is_terminal and incoming.generation <= stored.generation:
        raise TerminalRecordError(stored.execution_id, stored.status.value)
    if incoming.version != stored.version:
        raise ConcurrentModificationError(
            stored.execution_id, expected=incoming.version, actual=stored.version
        )


def is_stale(record: ExecutionRecord, now: datetime, older_than: float) -> bool:
    """Pending for too long, or running under an expired lease."""
    if record.status is ExecutionStatus.PENDING:
        # A pending record with cancel_requested is held until resumed explicitly
        if record.cancel_requested:
            return False
        return (now - record.updated_at).total_seconds() >= older_than
    if record.status is ExecutionStatus.RUNNING:
        return record.lease_expired(now)
    return False


class ExecutionRecordStore(ABC):

    @abstractmethod
    async def load(self, execution_id: str) -> ExecutionRecord:
        """Return a copy of the record. Raises ExecutionNotFoundError."""

    @abstractmethod
    async def create(self, record: ExecutionRecord) -> tuple[ExecutionRecord, bool]:
        """
        Insert the record unless one already exists for its execution_id.
        Returns whichever record is stored afterwards, and whether this call inserted it.
        """

    @abstractmethod
    async def save(self, record: ExecutionRecord) -> ExecutionRecord:
        """
        Atomically replace the stored record if `record.version` matches.
        Returns the stored copy with version and updated_at advanced.
        """

    @abstractmethod
    async def exists(self, ref: DocumentRef) -> str | None:
        """Execution ID for the document, or None."""

    @abstractmethod
    async def list_stale(self, now: datetime, older_than: float, limit: int = 50) -> list[ExecutionRecord]:
        """
        Pending records idle for `older_than` seconds (held cancellations excluded)
        and running records with expired leases, oldest first.
        """

    async def close(self) -> None:
        return None
