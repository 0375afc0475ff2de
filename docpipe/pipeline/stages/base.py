"""
Stage Executor contract.

Every stage implements `process(payload) -> payload` and signals failure by
raising RetryableStageError or FatalStageError. `execute()` turns that into a
StageResult, so the orchestrator only ever sees one of three outcomes:

    SUCCESS    — updated payload, advance to the next stage
    RETRYABLE  — transient failure, retry within the stage's attempt budget
    FATAL      — stop the execution; retrying cannot help

Any other exception escaping a stage is a bug, not a transient condition,
and is reported as FATAL.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from docpipe.core.errors import FatalStageError, RetryableStageError
from docpipe.pipeline.types import DocumentRef, StagePayload

logger = logging.getLogger(__name__)


class StageOutcome(str, Enum):
    SUCCESS   = "success"
    RETRYABLE = "retryable"
    FATAL     = "fatal"


@dataclass
class StageResult:
    payload: StagePayload
    outcome: StageOutcome = StageOutcome.SUCCESS
    reason:  str | None = None

    @classmethod
    def success(cls, payload: StagePayload) -> StageResult:
        return cls(payload=payload)

    @classmethod
    def retryable(cls, payload: StagePayload, reason: str) -> StageResult:
        return cls(payload=payload, outcome=StageOutcome.RETRYABLE, reason=reason)

    @classmethod
    def fatal(cls, payload: StagePayload, reason: str) -> StageResult:
        return cls(payload=payload, outcome=StageOutcome.FATAL, reason=reason)

    @property
    def ok(self) -> bool:
        return self.outcome is StageOutcome.SUCCESS


class BaseStage(ABC):
    """
    Stateless unit of work. The payload handed in is a private deep copy;
    implementations must not keep a reference to it after returning.
    """

    name: str = ""

    async def execute(self, payload: StagePayload) -> StageResult:
        try:
            updated = await self.process(payload)
        except RetryableStageError as exc:
            logger.warning("Stage retryable | stage=%s reason=%s", self.name, exc.reason)
            return StageResult.retryable(payload, exc.reason)
        except FatalStageError as exc:
            logger.error("Stage fatal | stage=%s reason=%s", self.name, exc.reason)
            return StageResult.fatal(payload, exc.reason)
        except Exception as exc:
            logger.exception("Stage crashed | stage=%s", self.name)
            return StageResult.fatal(payload, f"{type(exc).__name__}: {exc}")
        return StageResult.success(updated)

    @abstractmethod
    async def process(self, payload: StagePayload) -> StagePayload:
        """Return the payload extended with this stage's contribution."""


def document_ref_from_payload(payload: StagePayload) -> DocumentRef:
    """The bucket/key seed every execution payload starts from."""
    bucket = payload.get("bucket")
    key = payload.get("key")
    if not isinstance(bucket, str) or not isinstance(key, str) or not bucket or not key:
        raise FatalStageError("payload is missing the document bucket/key")
    return DocumentRef(container=bucket, key=key)
