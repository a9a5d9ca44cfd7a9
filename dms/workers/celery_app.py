"""
Celery Application Factory

Runs the pipeline stages as worker tasks when settings.pipeline_dispatch is
"celery" (the default). Broker and result backend come from Settings
(CELERY_BROKER_URL / CELERY_RESULT_BACKEND); Redis by default.

Queue topology:
  documents.pipeline  — the three stage tasks (process-ocr, extract-data,
                        generate-embed), one message per document per stage

Task payloads carry only the document id; workers load everything else from
the registry and the blob store.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from dms.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

PIPELINE_QUEUE = "documents.pipeline"

PIPELINE_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        PIPELINE_QUEUE,
        exchange=PIPELINE_EXCHANGE,
        routing_key=PIPELINE_QUEUE,
        durable=True,
    ),
)

TASK_ROUTES = {
    "dms.workers.tasks.*": {"queue": PIPELINE_QUEUE},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("dms")

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
        task_default_queue=PIPELINE_QUEUE,
        task_default_exchange="documents",
        task_default_routing_key=PIPELINE_QUEUE,

        # --- Reliability ---
        task_acks_late=True,         # ack only after task completes (prevents message loss on crash)
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one document stage at a time per worker process

        # --- Timeouts (OCR of a long scan is the slowest stage) ---
        task_soft_time_limit=int(settings.pipeline_stage_timeout_seconds),
        task_time_limit=int(settings.pipeline_stage_timeout_seconds) + 60,

        # --- Result TTL ---
        result_expires=3600,   # state lives in PostgreSQL, not in Celery results

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Worker ---
        worker_max_tasks_per_child=200,   # recycle workers to prevent memory bloat
    )

    app.autodiscover_tasks(["dms.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_setup_logger(**kwargs):
    kwargs["logger"].setLevel(settings.log_level.upper())


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, kwargs.get("document_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, kwargs.get("document_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, kwargs.get("document_id", "?"), exception,
        exc_info=True,
    )
