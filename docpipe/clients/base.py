"""
Collaborator interfaces used by the stages.

Stages only speak these protocols, so the AWS adapters can be swapped for
any other OCR / sentiment provider (or a fake in tests).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from docpipe.pipeline.types import DocumentRef


@dataclass(frozen=True)
class SentimentResult:
    label:  str                                   # POSITIVE | NEGATIVE | NEUTRAL | MIXED
    scores: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class StoredObject:
    """Location of an object written to storage."""
    bucket:       str
    key:          str
    size_bytes:   int
    content_type: str
    etag:         str = ""

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


class OCRClient(Protocol):
    async def detect_text(self, ref: DocumentRef) -> list[str]:
        """Ordered text lines of the document."""
        ...


class SentimentClient(Protocol):
    async def detect_sentiment(self, text: str, language_code: str) -> SentimentResult:
        ...


class ResultWriter(Protocol):
    async def put_json(self, bucket: str, key: str, document: dict[str, Any]) -> StoredObject:
        ...
