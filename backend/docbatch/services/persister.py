"""
Metadata Persister

Writes one documents row per successfully uploaded artifact. Each persist()
call runs in its own session and transaction, so a failing unit cannot roll
back another unit's row and the row is never partially written.

Ordering contract (enforced by the coordinator, relied on here):
    artifact put() succeeded  →  persist()  →  creation event
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docbatch.core.exceptions import PersistError
from docbatch.core.types import DocumentRecord, PersistedDocument
from docbatch.models.documents import Document

logger = logging.getLogger(__name__)

# Bound on IN (...) list size for the reconciliation lookup
_KEY_LOOKUP_CHUNK = 500


class MetadataPersister:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def persist(self, record: DocumentRecord) -> PersistedDocument:
        """
        Insert the document row and return its persisted view.

        Raises:
            PersistError: on any database failure (the artifact referenced by
                          record.storage_key then has no metadata row).
        """
        doc_id     = uuid.uuid4()
        created_at = datetime.now(timezone.utc)

        doc = Document(
            id=doc_id,
            created_at=created_at,
            title=record.title,
            destination_id=record.destination,
            storage_key=record.storage_key,
            uploaded_by=record.requested_by,
            is_classified=record.classified,
            content_type=record.content_type,
            size_bytes=record.size_bytes,
            page_count=record.page_count,
            is_image_assembly=record.is_image_assembly,
            ocr_text=record.ocr_text,
            embedding=record.embedding,
        )

        try:
            async with self._session_factory() as session:
                session.add(doc)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "Metadata write failed | key=%s title=%r error=%s",
                record.storage_key, record.title, exc,
            )
            raise PersistError(f"Metadata write failed for {record.storage_key}: {exc}") from exc

        logger.info(
            "Document persisted | id=%s key=%s pages=%d embedding=%s",
            doc_id, record.storage_key, record.page_count, record.embedding is not None,
        )

        # Built from local values: the ORM instance is detached by now
        return PersistedDocument(
            id=doc_id,
            title=record.title,
            storage_key=record.storage_key,
            ocr_text=record.ocr_text,
            embedding=record.embedding,
            classified=record.classified,
            destination=record.destination,
            requested_by=record.requested_by,
            is_image_assembly=record.is_image_assembly,
            page_count=record.page_count,
            created_at=created_at,
        )

    async def existing_storage_keys(self, keys: Iterable[str]) -> set[str]:
        """Return the subset of keys that have a documents row."""
        pending = list(keys)
        found: set[str] = set()

        async with self._session_factory() as session:
            for start in range(0, len(pending), _KEY_LOOKUP_CHUNK):
                chunk = pending[start : start + _KEY_LOOKUP_CHUNK]
                result = await session.execute(
                    select(Document.storage_key).where(Document.storage_key.in_(chunk))
                )
                found.update(result.scalars().all())

        return found
