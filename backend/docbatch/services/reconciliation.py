"""
Orphaned-Artifact Reconciliation

An artifact is orphaned when its upload succeeded but the metadata write
that should follow it failed (or the process died in between). The batch
report already flags these per unit; this sweep finds them from the store
side, including ones whose report was never seen.

Objects younger than the grace period are skipped: a batch may still be
between put() and persist() for them.

Deletion is opt-in (settings.reconcile_delete_orphans). By default the
sweep only reports.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from botocore.exceptions import BotoCoreError, ClientError

from docbatch.services.persister import MetadataPersister
from docbatch.storage.s3 import S3ArtifactStore

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    scanned:       int = 0
    orphaned_keys: list[str] = field(default_factory=list)
    deleted_keys:  list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "scanned":  self.scanned,
            "orphaned": len(self.orphaned_keys),
            "deleted":  len(self.deleted_keys),
        }


class ReconciliationSweep:

    def __init__(
        self,
        store:          S3ArtifactStore,
        persister:      MetadataPersister,
        grace_minutes:  int = 60,
        delete_orphans: bool = False,
    ) -> None:
        self._store     = store
        self._persister = persister
        self._grace     = timedelta(minutes=grace_minutes)
        self._delete    = delete_orphans

    async def run(self, now: datetime | None = None) -> ReconciliationResult:
        now = now or datetime.now(timezone.utc)
        cutoff = now - self._grace

        objects = await self._store.list_objects()
        candidates = [obj.key for obj in objects if obj.last_modified < cutoff]

        result = ReconciliationResult(scanned=len(objects))
        if not candidates:
            logger.info("Reconciliation | scanned=%d candidates=0", len(objects))
            return result

        known = await self._persister.existing_storage_keys(candidates)
        result.orphaned_keys = [key for key in candidates if key not in known]

        for key in result.orphaned_keys:
            logger.warning("Orphaned artifact found | key=%s", key)
            if not self._delete:
                continue
            try:
                await self._store.delete(key)
            except (ClientError, BotoCoreError) as exc:
                logger.error("Orphan delete failed | key=%s error=%s", key, exc)
                continue
            result.deleted_keys.append(key)

        logger.info(
            "Reconciliation | scanned=%d candidates=%d orphaned=%d deleted=%d",
            result.scanned, len(candidates), len(result.orphaned_keys), len(result.deleted_keys),
        )
        return result


def build_reconciliation_sweep() -> ReconciliationSweep:
    from docbatch.core.config import settings
    from docbatch.db.session import get_session_factory
    from docbatch.storage.s3 import build_artifact_store

    return ReconciliationSweep(
        store=build_artifact_store(),
        persister=MetadataPersister(get_session_factory()),
        grace_minutes=settings.reconcile_grace_minutes,
        delete_orphans=settings.reconcile_delete_orphans,
    )
