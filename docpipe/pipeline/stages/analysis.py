from __future__ import annotations

import logging

from docpipe.clients.base import SentimentClient
from docpipe.clients.errors import to_stage_error
from docpipe.pipeline.definition import ANALYZE_TEXT
from docpipe.pipeline.stages.base import BaseStage
from docpipe.pipeline.types import StagePayload

logger = logging.getLogger(__name__)

# Comprehend DetectSentiment accepts at most 5 KB of UTF-8 text
DEFAULT_MAX_CHARS = 5000


def truncate_text(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    return text[:max_chars] if len(text) > max_chars else text


class AnalysisStage(BaseStage):
    """Sentiment analysis of the extracted text, capped to the provider's input limit."""

    name = ANALYZE_TEXT

    def __init__(
        self,
        sentiment: SentimentClient,
        *,
        language_code: str = "en",
        max_chars: int = DEFAULT_MAX_CHARS,
    ) -> None:
        self._sentiment = sentiment
        self._language_code = language_code
        self._max_chars = max_chars

    async def process(self, payload: StagePayload) -> StagePayload:
        text = payload.get("text") or ""
        capped = truncate_text(text, self._max_chars)
        if len(capped) < len(text):
            logger.info("Text truncated for analysis | chars=%d max=%d", len(text), self._max_chars)

        try:
            result = await self._sentiment.detect_sentiment(capped, self._language_code)
        except Exception as exc:
            raise to_stage_error(exc, "DetectSentiment") from exc

        payload["analysis"] = {
            "sentiment": result.label,
            "scores":    dict(result.scores),
        }
        return payload
