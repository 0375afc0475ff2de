"""
AWS Textract OCR client.

Calls DetectDocumentText against the object in S3 (no download into the
worker) and returns the LINE blocks in reading order.

IAM permissions required on the worker role:
  textract:DetectDocumentText
  s3:GetObject   (Textract reads the object with the caller's credentials)
"""

from __future__ import annotations

import asyncio
import logging
import time

from docpipe.pipeline.types import DocumentRef

logger = logging.getLogger(__name__)


class TextractOCRClient:
    """
    Thin async wrapper around the synchronous boto3 Textract client.
    The blocking call runs in the default thread executor.
    """

    def __init__(self, region: str = "us-east-1", client=None, credentials: dict[str, str] | None = None) -> None:
        self._region = region
        self._client = client
        self._credentials = credentials or {}

    def _textract(self):
        if self._client is None:
            import boto3

            self._client = boto3.client("textract", region_name=self._region, **self._credentials)
        return self._client

    async def detect_text(self, ref: DocumentRef) -> list[str]:
        loop = asyncio.get_event_loop()
        t0 = time.monotonic()

        lines = await loop.run_in_executor(None, self._detect_sync, ref)

        logger.info(
            "Textract | doc=%s lines=%d elapsed_ms=%.0f",
            ref, len(lines), (time.monotonic() - t0) * 1000,
        )
        return lines

    def _detect_sync(self, ref: DocumentRef) -> list[str]:
        response = self._textract().detect_document_text(
            Document={"S3Object": {"Bucket": ref.container, "Name": ref.key}}
        )
        return [
            block.get("Text", "")
            for block in response.get("Blocks", [])
            if block.get("BlockType") == "LINE"
        ]
