"""
Document-created event publisher.

The pipeline only emits the event; fan-out to users (in-app, e-mail, push)
is done by whichever consumer handles the "notifications.document_created"
task on the broker. Publishing is fire-and-forget: a broker outage is
logged and never changes a unit's outcome.
"""

from __future__ import annotations

import asyncio
import logging

from docbatch.core.types import DocumentCreatedEvent

logger = logging.getLogger(__name__)

DOCUMENT_CREATED_TASK = "notifications.document_created"


class EventPublisher:
    """Interface used by the coordinator; the default implementation drops events."""

    async def publish_document_created(self, event: DocumentCreatedEvent) -> None:
        logger.debug("Event dropped (no publisher configured) | doc=%s", event.document_id)


class CeleryEventPublisher(EventPublisher):
    """
    Sends the creation event to the Celery broker by task name, so the
    consumer's code does not have to be importable here.
    Runs in a thread executor to avoid blocking the event loop.
    """

    async def publish_document_created(self, event: DocumentCreatedEvent) -> None:
        from docbatch.workers.celery_app import NOTIFICATIONS_QUEUE, celery_app

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: celery_app.send_task(
                DOCUMENT_CREATED_TASK,
                kwargs={
                    "document_id":       str(event.document_id),
                    "title":             event.title,
                    "destination":       event.destination,
                    "is_image_assembly": event.is_image_assembly,
                },
                queue=NOTIFICATIONS_QUEUE,
            ),
        )
        logger.info(
            "Document-created event published | doc=%s destination=%s",
            event.document_id, event.destination,
        )
