"""
Celery Tasks — Maintenance

Task: reconcile_orphaned_artifacts
  Beat task. Lists stored artifacts older than the grace period that have
  no documents row and, when enabled, deletes them.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Any

from docbatch.workers.celery_app import RECONCILE_TASK, celery_app

logger = logging.getLogger(__name__)


def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    # Already inside a loop (eager mode under an async caller)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


@celery_app.task(
    name=RECONCILE_TASK,
    acks_late=True,
    soft_time_limit=540,
    time_limit=600,
)
def reconcile_orphaned_artifacts() -> dict[str, Any]:
    return run_async(_reconcile_async())


async def _reconcile_async() -> dict[str, Any]:
    from docbatch.services.reconciliation import build_reconciliation_sweep

    result = await build_reconciliation_sweep().run()
    return result.as_dict()
