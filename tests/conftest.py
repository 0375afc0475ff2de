"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : doc_ref, fake collaborators, store, pipeline, registry,
                    orchestrator / make_orchestrator, app + async_client

Environment strategy:
  - The in-memory record store is used everywhere except the SQL store tests,
    which mock the AsyncSession factory.
  - AWS collaborators (Textract, Comprehend, S3) are AsyncMock fakes — no
    network calls are made.
  - Backoff sleeps are replaced by an AsyncMock so retry tests run instantly
    and can assert the delays that were requested.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no I/O)
  pytest -m integration           # API tests through the FastAPI stack
  pytest tests/unit/test_orchestrator.py
"""

from __future__ import annotations

import os
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any docpipe imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("RECORD_STORE_BACKEND",  "memory")
os.environ.setdefault("SCHEDULER_BACKEND",     "asyncio")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("LOG_LEVEL",             "DEBUG")

from docpipe.clients.base import SentimentResult, StoredObject  # noqa: E402
from docpipe.pipeline.definition import (  # noqa: E402
    DEFAULT_STAGE_ORDER,
    PipelineDefinition,
    StageSpec,
)
from docpipe.pipeline.orchestrator import Orchestrator  # noqa: E402
from docpipe.pipeline.scheduler import DeferredScheduler  # noqa: E402
from docpipe.pipeline.stages import (  # noqa: E402
    AnalysisStage,
    MetadataStage,
    PersistenceStage,
    StageRegistry,
    TextExtractionStage,
)
from docpipe.pipeline.types import DocumentRef  # noqa: E402
from docpipe.store.memory import InMemoryExecutionRecordStore  # noqa: E402

TEST_BUCKET = "document-processor-bucket"
OCR_LINES = ["Quarterly report", "Revenue grew strongly this quarter."]
SENTIMENT_SCORES = {"Positive": 0.91, "Negative": 0.02, "Neutral": 0.06, "Mixed": 0.01}


# ─────────────────────────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def doc_ref() -> DocumentRef:
    """The canonical document: s3://document-processor-bucket/docs/a.pdf"""
    return DocumentRef(container=TEST_BUCKET, key="docs/a.pdf")


@pytest.fixture
def other_doc_ref() -> DocumentRef:
    return DocumentRef(container=TEST_BUCKET, key="docs/b.pdf")


# ─────────────────────────────────────────────────────────────────────────────
# Fake AWS collaborators
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def fake_ocr():
    """OCRClient fake — Textract LINE blocks for every document."""
    ocr = AsyncMock()
    ocr.detect_text = AsyncMock(return_value=list(OCR_LINES))
    return ocr


@pytest.fixture
def fake_sentiment():
    """SentimentClient fake — always POSITIVE."""
    sentiment = AsyncMock()
    sentiment.detect_sentiment = AsyncMock(
        return_value=SentimentResult(label="POSITIVE", scores=dict(SENTIMENT_SCORES))
    )
    return sentiment


class FakeResultWriter:
    """In-memory ResultWriter: keeps every JSON document written, keyed by (bucket, key)."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], dict] = {}
        self.put_json = AsyncMock(side_effect=self._put_json)
        self.get_json = AsyncMock(side_effect=self._get_json)

    async def _put_json(self, bucket: str, key: str, document: dict) -> StoredObject:
        self.objects[(bucket, key)] = document
        return StoredObject(
            bucket=bucket,
            key=key,
            size_bytes=len(str(document)),
            content_type="application/json",
            etag="d41d8cd98f00b204e9800998ecf8427e",
        )

    async def _get_json(self, bucket: str, key: str) -> dict:
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            raise FileNotFoundError(f"Object not found: s3://{bucket}/{key}") from None


@pytest.fixture
def fake_writer() -> FakeResultWriter:
    return FakeResultWriter()


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Replaces asyncio.sleep in the orchestrator; await_args_list holds the delays."""
    return AsyncMock(return_value=None)


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline wiring
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryExecutionRecordStore:
    return InMemoryExecutionRecordStore()


@pytest.fixture
def pipeline() -> PipelineDefinition:
    """Four default stages, 3 attempts each, 2 s base backoff."""
    return PipelineDefinition([
        StageSpec(name=name, max_attempts=3, backoff_base=2.0, timeout=5.0, backoff_cap=60.0)
        for name in DEFAULT_STAGE_ORDER
    ])


@pytest.fixture
def registry(fake_ocr, fake_sentiment, fake_writer) -> StageRegistry:
    registry = StageRegistry()
    registry.register(MetadataStage())
    registry.register(TextExtractionStage(fake_ocr))
    registry.register(AnalysisStage(fake_sentiment, language_code="en", max_chars=5000))
    registry.register(PersistenceStage(fake_writer, prefix="results/"))
    return registry


@pytest.fixture
def scheduler() -> DeferredScheduler:
    return DeferredScheduler()


@pytest.fixture
def make_orchestrator(pipeline, registry, store, scheduler, no_sleep):
    """
    Factory fixture: Orchestrator over the shared fakes, any part overridable.

    Usage:
        orch = make_orchestrator()
        orch = make_orchestrator(worker_id="worker-b", lease_seconds=1)
    """
    def _build(**overrides) -> Orchestrator:
        kwargs = {
            "scheduler": scheduler,
            "worker_id": "worker-a",
            "lease_seconds": 600.0,
            "store_retry_attempts": 3,
            "store_retry_base_delay": 0.5,
            "sleep": no_sleep,
        }
        kwargs.update(overrides)
        return Orchestrator(
            kwargs.pop("pipeline", pipeline),
            kwargs.pop("registry", registry),
            kwargs.pop("store", store),
            **kwargs,
        )

    return _build


@pytest.fixture
def orchestrator(make_orchestrator) -> Orchestrator:
    return make_orchestrator()


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with orchestrator dependency override
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_overrides(orchestrator, fake_writer):
    """
    FastAPI app with external dependencies overridden:
      - get_orchestrator  → the in-memory orchestrator (DeferredScheduler)
      - get_result_reader → fake_writer (no S3)

    httpx's ASGITransport does not run the lifespan, so nothing is built from config.
    """
    from docpipe.api.v1.executions import get_orchestrator, get_result_reader
    from docpipe.main import create_app

    app = create_app()
    app.dependency_overrides[get_orchestrator]  = lambda: orchestrator
    app.dependency_overrides[get_result_reader] = lambda: fake_writer

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app."""
    from httpx import ASGITransport
    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
