"""
Unit Tests — AWS collaborator adapters
═══════════════════════════════════════
Tests for docpipe/clients/textract.py, docpipe/clients/comprehend.py,
docpipe/clients/errors.py and docpipe/storage/s3.py.

boto3 clients are MagicMocks and the aioboto3 session is mocked; no AWS
calls are made.

Coverage:
  ✅ Textract: S3Object document reference, only LINE blocks, reading order
  ✅ Comprehend: label + float scores, Text / LanguageCode passed through
  ✅ S3ResultWriter.put_json: JSON body, content type, etag stripped
  ✅ S3ResultWriter.get_json: parsed body; NoSuchKey → FileNotFoundError
  ✅ Error classification: retryable vs fatal, StageError passthrough
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from botocore.exceptions import ClientError, ReadTimeoutError

from docpipe.clients.comprehend import ComprehendSentimentClient
from docpipe.clients.errors import is_retryable, to_stage_error
from docpipe.clients.textract import TextractOCRClient
from docpipe.core.errors import FatalStageError, RetryableStageError
from docpipe.pipeline.types import DocumentRef
from docpipe.storage.s3 import S3ResultWriter, result_key
from tests.conftest import TEST_BUCKET


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _client_error(code: str, status: int = 400, operation: str = "operation") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": "test"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


def _build_s3_mock() -> AsyncMock:
    """Build a mock S3 client context manager."""
    s3 = AsyncMock()
    s3.__aenter__ = AsyncMock(return_value=s3)
    s3.__aexit__  = AsyncMock(return_value=None)
    s3.put_object = AsyncMock(return_value={"ETag": '"9b2cf535f27731c974343645a3985328"'})
    s3.get_object = AsyncMock()
    return s3


def _writer(s3_mock) -> S3ResultWriter:
    session = MagicMock()
    session.client.return_value = s3_mock
    return S3ResultWriter(region="us-east-1", session=session)


# ─────────────────────────────────────────────────────────────────────────────
# Textract
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.stages
class TestTextractOCRClient:

    async def test_returns_line_blocks_in_order(self):
        boto_client = MagicMock()
        boto_client.detect_document_text.return_value = {
            "Blocks": [
                {"BlockType": "PAGE"},
                {"BlockType": "LINE", "Text": "Quarterly report"},
                {"BlockType": "WORD", "Text": "Quarterly"},
                {"BlockType": "LINE", "Text": "Revenue grew"},
            ]
        }
        ocr = TextractOCRClient(client=boto_client)

        lines = await ocr.detect_text(DocumentRef(TEST_BUCKET, "docs/a.pdf"))

        assert lines == ["Quarterly report", "Revenue grew"]
        boto_client.detect_document_text.assert_called_once_with(
            Document={"S3Object": {"Bucket": TEST_BUCKET, "Name": "docs/a.pdf"}}
        )

    async def test_no_blocks(self):
        boto_client = MagicMock()
        boto_client.detect_document_text.return_value = {}

        assert await TextractOCRClient(client=boto_client).detect_text(DocumentRef(TEST_BUCKET, "x")) == []

    async def test_client_error_propagates(self):
        boto_client = MagicMock()
        boto_client.detect_document_text.side_effect = _client_error("ThrottlingException")

        with pytest.raises(ClientError):
            await TextractOCRClient(client=boto_client).detect_text(DocumentRef(TEST_BUCKET, "x"))


# ─────────────────────────────────────────────────────────────────────────────
# Comprehend
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.stages
class TestComprehendSentimentClient:

    async def test_maps_response(self):
        boto_client = MagicMock()
        boto_client.detect_sentiment.return_value = {
            "Sentiment": "MIXED",
            "SentimentScore": {"Positive": 0.4, "Negative": 0.35, "Neutral": 0.05, "Mixed": 0.2},
        }
        client = ComprehendSentimentClient(client=boto_client)

        result = await client.detect_sentiment("good and bad", "en")

        assert result.label == "MIXED"
        assert result.scores["Negative"] == pytest.approx(0.35)
        boto_client.detect_sentiment.assert_called_once_with(Text="good and bad", LanguageCode="en")


# ─────────────────────────────────────────────────────────────────────────────
# S3 result writer
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.stages
class TestS3ResultWriter:

    def test_result_key(self):
        assert result_key("docs/a.pdf") == "results/docs/a.pdf.json"
        assert result_key("a.pdf", prefix="out/") == "out/a.pdf.json"

    async def test_put_json(self):
        s3_mock = _build_s3_mock()
        document = {"bucket": TEST_BUCKET, "analysis": {"sentiment": "POSITIVE"}}

        stored = await _writer(s3_mock).put_json(TEST_BUCKET, "results/docs/a.pdf.json", document)

        kwargs = s3_mock.put_object.await_args.kwargs
        assert kwargs["Bucket"] == TEST_BUCKET
        assert kwargs["Key"] == "results/docs/a.pdf.json"
        assert kwargs["ContentType"] == "application/json"
        assert json.loads(kwargs["Body"]) == document
        assert stored.etag == "9b2cf535f27731c974343645a3985328"
        assert stored.size_bytes == len(kwargs["Body"])
        assert stored.uri == f"s3://{TEST_BUCKET}/results/docs/a.pdf.json"

    async def test_get_json(self):
        s3_mock = _build_s3_mock()
        body = MagicMock()
        body.read = AsyncMock(return_value=b'{"text": "hello"}')
        s3_mock.get_object.return_value = {"Body": body}

        assert await _writer(s3_mock).get_json(TEST_BUCKET, "results/x.json") == {"text": "hello"}

    async def test_get_json_missing_key(self):
        s3_mock = _build_s3_mock()
        s3_mock.get_object.side_effect = _client_error("NoSuchKey", status=404, operation="GetObject")

        with pytest.raises(FileNotFoundError):
            await _writer(s3_mock).get_json(TEST_BUCKET, "results/missing.json")

    async def test_get_json_other_errors_propagate(self):
        s3_mock = _build_s3_mock()
        s3_mock.get_object.side_effect = _client_error("AccessDenied", status=403, operation="GetObject")

        with pytest.raises(ClientError):
            await _writer(s3_mock).get_json(TEST_BUCKET, "results/x.json")


# ─────────────────────────────────────────────────────────────────────────────
# Error classification
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.stages
class TestErrorClassification:

    def test_read_timeout_is_retryable(self):
        assert is_retryable(ReadTimeoutError(endpoint_url="https://comprehend.us-east-1.amazonaws.com"))

    @pytest.mark.parametrize("exc", [asyncio.TimeoutError(), TimeoutError()])
    def test_asyncio_timeout_is_retryable(self, exc):
        assert is_retryable(exc)
        assert isinstance(to_stage_error(exc, "PutObject"), RetryableStageError)

    def test_value_error_is_not_retryable(self):
        assert not is_retryable(ValueError("bad"))

    def test_stage_error_passes_through(self):
        original = RetryableStageError("already classified")
        assert to_stage_error(original, "DetectSentiment") is original

    def test_reason_names_operation_and_code(self):
        err = to_stage_error(_client_error("InvalidRequestException"), "DetectSentiment")

        assert isinstance(err, FatalStageError)
        assert err.reason == "DetectSentiment failed: InvalidRequestException: test"


@pytest.mark.unit
@pytest.mark.stages
class TestStaticCredentials:

    KEYS = {"aws_access_key_id": "AKIATEST", "aws_secret_access_key": "secret"}

    def test_textract_client_uses_static_keys(self):
        with patch("boto3.client") as boto_client:
            TextractOCRClient(region="eu-west-1", credentials=self.KEYS)._textract()

        boto_client.assert_called_once_with("textract", region_name="eu-west-1", **self.KEYS)

    def test_comprehend_client_uses_static_keys(self):
        with patch("boto3.client") as boto_client:
            ComprehendSentimentClient(region="eu-west-1", credentials=self.KEYS)._comprehend()

        boto_client.assert_called_once_with("comprehend", region_name="eu-west-1", **self.KEYS)

    def test_default_credential_chain_without_keys(self):
        with patch("boto3.client") as boto_client:
            TextractOCRClient(region="eu-west-1")._textract()

        boto_client.assert_called_once_with("textract", region_name="eu-west-1")

    def test_result_writer_session_uses_static_keys(self):
        with patch("docpipe.storage.s3.aioboto3.Session") as session_cls:
            S3ResultWriter(region="eu-west-1", credentials=self.KEYS)

        session_cls.assert_called_once_with(**self.KEYS)
