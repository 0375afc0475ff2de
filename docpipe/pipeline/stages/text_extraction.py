from __future__ import annotations

import logging

from docpipe.clients.base import OCRClient
from docpipe.clients.errors import to_stage_error
from docpipe.pipeline.definition import EXTRACT_TEXT
from docpipe.pipeline.stages.base import BaseStage, document_ref_from_payload
from docpipe.pipeline.types import StagePayload

logger = logging.getLogger(__name__)


class TextExtractionStage(BaseStage):
    """
    Runs OCR on the source object and stores the lines joined by newlines.

    Network / throttling / 5xx errors are retryable; malformed or unsupported
    documents are fatal.
    """

    name = EXTRACT_TEXT

    def __init__(self, ocr: OCRClient) -> None:
        self._ocr = ocr

    async def process(self, payload: StagePayload) -> StagePayload:
        ref = document_ref_from_payload(payload)
        logger.info("Running OCR | doc=%s", ref)

        try:
            lines = await self._ocr.detect_text(ref)
        except Exception as exc:
            raise to_stage_error(exc, "DetectDocumentText") from exc

        payload["text"] = "\n".join(lines)
        return payload
