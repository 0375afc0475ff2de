"""
Orchestrator Factory

Selects the record store (memory | sql) and scheduler (asyncio | celery)
from config and wires the four AWS-backed stages. The API and the Celery
workers only call build_orchestrator(); neither touches the concrete
classes directly.
"""

from __future__ import annotations

from docpipe.core.config import Settings, get_settings
from docpipe.pipeline.definition import PipelineDefinition, default_pipeline
from docpipe.pipeline.orchestrator import Orchestrator
from docpipe.pipeline.scheduler import AsyncioScheduler, ExecutionScheduler
from docpipe.pipeline.stages import (
    AnalysisStage,
    MetadataStage,
    PersistenceStage,
    StageRegistry,
    TextExtractionStage,
)
from docpipe.store.base import ExecutionRecordStore


def build_record_store(settings: Settings) -> ExecutionRecordStore:
    backend = settings.record_store_backend.lower()

    if backend == "memory":
        from docpipe.store.memory import InMemoryExecutionRecordStore
        return InMemoryExecutionRecordStore()

    if backend == "sql":
        from docpipe.store.sql import SQLExecutionRecordStore
        return SQLExecutionRecordStore()

    raise ValueError(
        f"Unknown record store backend: '{backend}'. "
        f"Valid options: 'memory', 'sql'"
    )


def build_stage_registry(settings: Settings) -> StageRegistry:
    from docpipe.clients.comprehend import ComprehendSentimentClient
    from docpipe.clients.textract import TextractOCRClient
    from docpipe.storage.s3 import S3ResultWriter

    aws = {"region": settings.aws_region, "credentials": settings.aws_credentials()}

    registry = StageRegistry()
    registry.register(MetadataStage())
    registry.register(TextExtractionStage(TextractOCRClient(**aws)))
    registry.register(AnalysisStage(
        ComprehendSentimentClient(**aws),
        language_code=settings.language_code,
        max_chars=settings.analysis_max_chars,
    ))
    registry.register(PersistenceStage(
        S3ResultWriter(**aws),
        prefix=settings.results_prefix,
    ))
    return registry


def build_scheduler(settings: Settings) -> ExecutionScheduler:
    backend = settings.scheduler_backend.lower()

    if backend == "asyncio":
        return AsyncioScheduler()

    if backend == "celery":
        from docpipe.pipeline.scheduler import CeleryScheduler
        return CeleryScheduler()

    raise ValueError(
        f"Unknown scheduler backend: '{backend}'. "
        f"Valid options: 'asyncio', 'celery'"
    )


def build_orchestrator(
    settings: Settings | None = None,
    *,
    pipeline: PipelineDefinition | None = None,
    registry: StageRegistry | None = None,
    store: ExecutionRecordStore | None = None,
    scheduler: ExecutionScheduler | None = None,
) -> Orchestrator:
    """Assemble an Orchestrator; any component can be injected (tests, workers)."""
    settings = settings or get_settings()
    scheduler = scheduler or build_scheduler(settings)

    orchestrator = Orchestrator(
        pipeline or default_pipeline(settings),
        registry or build_stage_registry(settings),
        store or build_record_store(settings),
        scheduler=scheduler,
        lease_seconds=settings.lease_seconds,
        store_retry_attempts=settings.store_retry_attempts,
        store_retry_base_delay=settings.store_retry_base_delay,
    )
    if isinstance(scheduler, AsyncioScheduler):
        scheduler.bind(orchestrator.run)
    return orchestrator
