"""AWS Comprehend sentiment client (DetectSentiment)."""

from __future__ import annotations

import asyncio
import logging
import time

from docpipe.clients.base import SentimentResult

logger = logging.getLogger(__name__)


class ComprehendSentimentClient:
    def __init__(self, region: str = "us-east-1", client=None, credentials: dict[str, str] | None = None) -> None:
        self._region = region
        self._client = client
        self._credentials = credentials or {}

    def _comprehend(self):
        if self._client is None:
            import boto3

            self._client = boto3.client("comprehend", region_name=self._region, **self._credentials)
        return self._client

    async def detect_sentiment(self, text: str, language_code: str) -> SentimentResult:
        loop = asyncio.get_event_loop()
        t0 = time.monotonic()

        response = await loop.run_in_executor(
            None,
            lambda: self._comprehend().detect_sentiment(Text=text, LanguageCode=language_code),
        )

        result = SentimentResult(
            label=response["Sentiment"],
            scores={k: float(v) for k, v in response.get("SentimentScore", {}).items()},
        )
        logger.info(
            "Comprehend | chars=%d sentiment=%s elapsed_ms=%.0f",
            len(text), result.label, (time.monotonic() - t0) * 1000,
        )
        return result
