"""
Celery Application Factory

Two concerns run through the broker:
  notifications.events: document-created events emitted by the batch
                         coordinator (consumed by the notification fan-out
                         service, which is not part of this package)
  maintenance.reconcile: periodic orphaned-artifact reconciliation (beat)

Broker: RabbitMQ (amqp://) in production; Redis works for local dev.
Never put file bytes in task payloads; events carry ids and titles only.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docbatch.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

NOTIFICATIONS_QUEUE = "notifications.events"
MAINTENANCE_QUEUE   = "maintenance.reconcile"

RECONCILE_TASK = "docbatch.workers.tasks.reconcile_orphaned_artifacts"

TASK_QUEUES = (
    Queue(
        NOTIFICATIONS_QUEUE,
        exchange=Exchange("notifications", type="direct", durable=True),
        routing_key=NOTIFICATIONS_QUEUE,
        durable=True,
    ),
    Queue(
        MAINTENANCE_QUEUE,
        exchange=Exchange("maintenance", type="direct", durable=True),
        routing_key=MAINTENANCE_QUEUE,
        durable=True,
    ),
)

TASK_ROUTES = {
    "notifications.document_created": {"queue": NOTIFICATIONS_QUEUE},
    RECONCILE_TASK:                   {"queue": MAINTENANCE_QUEUE},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docbatch")

    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # JSON only; never pickle
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=MAINTENANCE_QUEUE,

        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        task_soft_time_limit=600,
        task_time_limit=660,
        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "reconcile-orphaned-artifacts": {
                "task":     RECONCILE_TASK,
                "schedule": settings.reconcile_interval_seconds,
                "options":  {"queue": MAINTENANCE_QUEUE},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docbatch.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s", task_id, task.name)


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task_id=%s task=%s state=%s", task_id, task.name, state)


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s error=%s",
        task_id, exception,
        exc_info=True,
    )
