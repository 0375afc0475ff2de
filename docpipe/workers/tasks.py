"""
Celery Tasks — Pipeline Executions

Task: run_execution
  Claims the execution in the record store and drives it from its last
  checkpoint to succeeded / failed (or back to pending on cancel).
  Stage-level retries happen inside the orchestrator; Celery retries only
  cover an unreachable record store.

Task: resume_stale_executions
  Beat task — re-queues executions pending for longer than
  STALE_AFTER_SECONDS and running executions whose worker lease expired.
"""

from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any

from celery import Task

from docpipe.core.config import get_settings
from docpipe.core.errors import ExecutionClaimedError, ExecutionNotFoundError, StoreUnavailableError
from docpipe.pipeline.orchestrator import Orchestrator
from docpipe.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Drive a coroutine to completion from Celery's synchronous task body."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


@lru_cache(maxsize=1)
def get_worker_orchestrator() -> Orchestrator:
    """One orchestrator per worker process; new executions are scheduled back onto Celery."""
    from docpipe.pipeline.factory import build_orchestrator
    from docpipe.pipeline.scheduler import CeleryScheduler

    return build_orchestrator(get_settings(), scheduler=CeleryScheduler())


async def _release_connections() -> None:
    # Pooled asyncpg connections are bound to the loop that opened them
    if get_settings().record_store_backend == "sql":
        from docpipe.db.session import dispose_engine
        await dispose_engine()


# ---------------------------------------------------------------------------
# Main execution task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipe.workers.tasks.run_execution",
    bind=True,
    max_retries=5,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
)
def run_execution(self: Task, *, execution_id: str) -> dict[str, Any]:
    try:
        return run_async(_run_execution_async(execution_id))
    except StoreUnavailableError as exc:
        logger.warning("Record store unavailable, task will retry | exec=%s", execution_id)
        raise self.retry(exc=exc)


async def _run_execution_async(execution_id: str) -> dict[str, Any]:
    orchestrator = get_worker_orchestrator()
    try:
        record = await orchestrator.run(execution_id)
    except ExecutionClaimedError as exc:
        logger.info("Execution owned by another worker | exec=%s owner=%s", execution_id, exc.owner)
        return {"status": "claimed", "execution_id": execution_id}
    except ExecutionNotFoundError:
        logger.error("Execution not found | exec=%s", execution_id)
        return {"status": "not_found", "execution_id": execution_id}
    finally:
        await _release_connections()

    return {
        "status":              record.status.value,
        "execution_id":        execution_id,
        "current_stage_index": record.current_stage_index,
        "last_error":          record.last_error,
    }


# ---------------------------------------------------------------------------
# Stale-execution scanner: runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipe.workers.tasks.resume_stale_executions",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def resume_stale_executions() -> dict[str, int]:
    return run_async(_resume_stale_async())


async def _resume_stale_async() -> dict[str, int]:
    orchestrator = get_worker_orchestrator()
    try:
        resumed = await orchestrator.resume_stale(get_settings().stale_after_seconds)
    finally:
        await _release_connections()
    if resumed:
        logger.info("Re-queued stale executions | count=%d", len(resumed))
    return {"requeued": len(resumed)}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="docpipe.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
