from __future__ import annotations

from docpipe.pipeline.definition import EXTRACT_METADATA
from docpipe.pipeline.stages.base import BaseStage, document_ref_from_payload
from docpipe.pipeline.types import StagePayload


class MetadataStage(BaseStage):
    """Derives title and source from the document location. No external calls."""

    name = EXTRACT_METADATA

    async def process(self, payload: StagePayload) -> StagePayload:
        ref = document_ref_from_payload(payload)
        payload["metadata"] = {
            "title":  ref.key.split("/")[-1],
            "source": ref.container,
        }
        return payload
