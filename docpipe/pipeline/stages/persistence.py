from __future__ import annotations

import logging

from docpipe.clients.base import ResultWriter
from docpipe.clients.errors import to_stage_error
from docpipe.pipeline.definition import STORE_RESULTS
from docpipe.pipeline.stages.base import BaseStage, document_ref_from_payload
from docpipe.pipeline.types import StagePayload
from docpipe.storage.s3 import result_key

logger = logging.getLogger(__name__)


class PersistenceStage(BaseStage):
    """
    Publishes the full payload as JSON at results/<key>.json in the source
    bucket. An execution only reaches `succeeded` once this write returns.
    """

    name = STORE_RESULTS

    def __init__(self, writer: ResultWriter, *, prefix: str = "results/") -> None:
        self._writer = writer
        self._prefix = prefix

    async def process(self, payload: StagePayload) -> StagePayload:
        ref = document_ref_from_payload(payload)
        output_key = result_key(ref.key, self._prefix)

        try:
            stored = await self._writer.put_json(ref.container, output_key, payload)
        except Exception as exc:
            raise to_stage_error(exc, "PutObject") from exc

        payload["output"] = {
            "bucket": stored.bucket,
            "key":    stored.key,
            "uri":    stored.uri,
        }
        return payload
