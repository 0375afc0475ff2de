"""
Error taxonomy for the document pipeline.

  DocPipeError
  ├── StageError                 raised inside a stage, mapped to an outcome
  │   ├── RetryableStageError    transient collaborator failure (throttling, 5xx, network)
  │   └── FatalStageError        malformed / unsupported input, permanent rejection
  ├── StoreError                 execution record store problems
  │   ├── StoreUnavailableError  store unreachable — retried by the orchestrator loop
  │   ├── ConcurrentModificationError  stale version on save
  │   ├── TerminalRecordError    attempt to rewrite a finished execution
  │   └── ExecutionNotFoundError
  ├── ExecutionClaimedError      another worker owns the execution
  ├── InvalidTransitionError     operation not allowed in the current status
  └── PipelineDefinitionError    invalid stage list / unknown stage
"""

from __future__ import annotations


class DocPipeError(Exception):
    """Base class for every error raised by docpipe."""


# ---------------------------------------------------------------------------
# Stage errors
# ---------------------------------------------------------------------------

class StageError(DocPipeError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class RetryableStageError(StageError):
    """The stage may succeed if attempted again."""


class FatalStageError(StageError):
    """Retrying cannot resolve this failure."""


# ---------------------------------------------------------------------------
# Store errors
# ---------------------------------------------------------------------------

class StoreError(DocPipeError):
    pass


class StoreUnavailableError(StoreError):
    """The backing store could not be reached."""


class ConcurrentModificationError(StoreError):
    def __init__(self, execution_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Execution {execution_id} changed concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.execution_id = execution_id
        self.expected = expected
        self.actual = actual


class TerminalRecordError(StoreError):
    def __init__(self, execution_id: str, status: str) -> None:
        super().__init__(f"Execution {execution_id} is {status} and cannot be modified")
        self.execution_id = execution_id
        self.status = status


class ExecutionNotFoundError(StoreError):
    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


# ---------------------------------------------------------------------------
# Orchestration errors
# ---------------------------------------------------------------------------

class ExecutionClaimedError(DocPipeError):
    def __init__(self, execution_id: str, owner: str | None) -> None:
        super().__init__(f"Execution {execution_id} is owned by {owner or 'another worker'}")
        self.execution_id = execution_id
        self.owner = owner


class InvalidTransitionError(DocPipeError):
    def __init__(self, execution_id: str, status: str, operation: str) -> None:
        super().__init__(f"Cannot {operation} execution {execution_id} in status {status}")
        self.execution_id = execution_id
        self.status = status
        self.operation = operation


class PipelineDefinitionError(DocPipeError):
    pass
