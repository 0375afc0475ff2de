"""
Celery app for the pipeline worker fleet

Configures the Celery app that drives pipeline executions on the worker fleet.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) as fallback for local dev.
Result backend: Redis (optional — execution state lives in the record store).

Queue topology:
  pipeline.executions  — one task per execution (run_execution)
  pipeline.recovery    — stale-execution scanner (resume_stale_executions)
  system.health        — internal health-check tasks

Task payloads carry only the execution ID; everything else is loaded from
the execution record store inside the worker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun, worker_process_init
from kombu import Exchange, Queue

from docpipe.core.config import get_settings
from docpipe.core.logging import configure_logging

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

PIPELINE_EXCHANGE = Exchange("pipeline", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "pipeline.executions",
        exchange=PIPELINE_EXCHANGE,
        routing_key="pipeline.executions",
        durable=True,
    ),
    Queue(
        "pipeline.recovery",
        exchange=PIPELINE_EXCHANGE,
        routing_key="pipeline.recovery",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docpipe.workers.tasks.run_execution":           {"queue": "pipeline.executions"},
    "docpipe.workers.tasks.resume_stale_executions": {"queue": "pipeline.recovery"},
    "docpipe.workers.tasks.health_check":            {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    settings = get_settings()
    app = Celery("docpipe")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="pipeline.executions",
        task_default_exchange="pipeline",
        task_default_routing_key="pipeline.executions",

        # --- Reliability ---
        task_acks_late=True,         # ack only after task completes (prevents message loss on crash)
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Result TTL ---
        result_expires=3600,   # state is tracked in the record store, not Celery results

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale-execution scanner) ---
        beat_schedule={
            "resume-stale-executions-every-60s": {
                "task":     "docpipe.workers.tasks.resume_stale_executions",
                "schedule": 60,
                "options":  {"queue": "pipeline.recovery"},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docpipe.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@worker_process_init.connect
def on_worker_process_init(**_):
    configure_logging(get_settings())


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s exec=%s",
        task_id, task.name, (kwargs or {}).get("execution_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s exec=%s",
        task_id, task.name, state, (kwargs or {}).get("execution_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s exec=%s error=%s",
        task_id, (kwargs or {}).get("execution_id", "-"), exception,
        exc_info=True,
    )
