"""
SQLAlchemy ORM Model — Documents

One row per successfully ingested logical document (a single PDF, or an
image group assembled into one PDF). A row is only ever inserted after its
artifact upload succeeded, so storage_key always points at a real object;
the reverse (an object with no row) is what the reconciliation sweep finds.

Using SQLAlchemy 2.x mapped classes for full async support.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Document model: documents table
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Metadata record for one stored artifact.

    id and created_at are generated client-side so the persister can build
    its return value without a refresh round-trip.
    """

    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_destination_id", "destination_id"),
        Index("idx_documents_created_at",     "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    title: Mapped[str] = mapped_column(Text, nullable=False)

    # Opaque storage-unit identifier resolved upstream (department/category)
    destination_id: Mapped[str] = mapped_column(Text, nullable=False)

    storage_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        unique=True,
        comment="S3 object key: <prefix>/<destination>/<timestamp>-<uuid>.<ext>",
    )
    uploaded_by: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Display string of the requesting user",
    )
    is_classified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false",
    )

    content_type: Mapped[str] = mapped_column(Text, nullable=False, default="application/pdf")
    size_bytes:   Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    page_count:   Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    is_image_assembly: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false",
    )

    # Best-effort fields, NULL when extraction/embedding was unavailable
    ocr_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    embedding: Mapped[Optional[list]] = mapped_column(
        JSONB,
        nullable=True,
        comment="Semantic embedding vector (list of floats)",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} destination={self.destination_id} "
            f"title={self.title!r} key={self.storage_key!r}>"
        )
