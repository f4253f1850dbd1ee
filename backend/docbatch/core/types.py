"""
Batch Ingestion — Domain Types

Plain dataclasses shared by every pipeline stage. Anything crossing the
HTTP boundary is converted to the pydantic envelopes in
docbatch.schemas.batches; nothing in here knows about FastAPI or SQLAlchemy.

Lifecycle summary:
  RawInput            created at submission, immutable
  ClassifiedItem      derived once by the classifier, immutable
  ExtractionOutcome   produced by the extraction client, immutable
  AssembledArtifact   built for an image group, immutable
  LogicalDocumentUnit one eventual document; state applied by the aggregator only
  BatchReport         aggregate; mutated only by the aggregator, returned at the end
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


# ---------------------------------------------------------------------------
# Inputs and classification
# ---------------------------------------------------------------------------

class FileKind(str, Enum):
    PDF   = "pdf"
    IMAGE = "image"


@dataclass(frozen=True)
class RawInput:
    """One file selected by the user."""
    original_name: str
    data:          bytes = field(repr=False)
    declared_mime: str | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ClassifiedItem:
    """A RawInput tagged with its kind and its position in the batch."""
    kind:           FileKind
    original_index: int
    raw:            RawInput
    mime_type:      str
    extension:      str      # lowercased, including the dot

    @property
    def original_name(self) -> str:
        return self.raw.original_name

    @property
    def data(self) -> bytes:
        return self.raw.data


@dataclass(frozen=True)
class RejectedInput:
    original_index: int
    original_name:  str
    reason:         str


@dataclass
class Classification:
    """Three ordered partitions of one batch."""
    pdfs:     list[ClassifiedItem] = field(default_factory=list)
    images:   list[ClassifiedItem] = field(default_factory=list)
    rejected: list[RejectedInput]  = field(default_factory=list)

    @property
    def accepted_count(self) -> int:
        return len(self.pdfs) + len(self.images)


# ---------------------------------------------------------------------------
# Extraction and assembly
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractionOutcome:
    """
    OCR result for one item.

    text is None when extraction failed; error then carries the reason.
    method records which backend produced the text ("pymupdf" | "ocr_service").
    """
    original_index: int
    text:           str | None = None
    error:          str | None = None
    method:         str = "none"

    @property
    def succeeded(self) -> bool:
        return self.text is not None


@dataclass(frozen=True)
class AssembledArtifact:
    """Synthetic multi-page PDF built from one ordered image group."""
    ordered_source_indices: tuple[int, ...]
    data:                   bytes = field(repr=False)
    suggested_title:        str
    page_texts:             tuple[str, ...]
    combined_text:          str
    mime_type:              str = "application/pdf"
    # Source indices that became placeholder pages (undecodable image data)
    unrendered_indices:     tuple[int, ...] = ()

    @property
    def page_count(self) -> int:
        return len(self.ordered_source_indices)


# ---------------------------------------------------------------------------
# Units and their terminal outcomes
# ---------------------------------------------------------------------------

class UnitKind(str, Enum):
    PDF         = "pdf"
    IMAGE_GROUP = "image_group"


class UnitState(str, Enum):
    """
    Transitions:
      queued → classifying → extracting → [assembling] → uploading
             → persisting → persisted | failed
    """
    QUEUED      = "queued"
    CLASSIFYING = "classifying"
    EXTRACTING  = "extracting"
    ASSEMBLING  = "assembling"
    UPLOADING   = "uploading"
    PERSISTING  = "persisting"
    PERSISTED   = "persisted"
    FAILED      = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UnitState.PERSISTED, UnitState.FAILED)


class FailureReason(str, Enum):
    STORE_FAILED    = "store_failed"
    PERSIST_FAILED  = "persist_failed"
    ASSEMBLY_FAILED = "assembly_failed"
    CANCELLED       = "cancelled"
    INTERNAL        = "internal"


@dataclass(frozen=True)
class UnitFailure:
    reason:            FailureReason
    message:           str
    # An artifact exists in the binary store with no metadata row
    orphaned_artifact: bool = False
    storage_key:       str | None = None


@dataclass(frozen=True)
class DocumentRecord:
    """Everything the persister needs to write one document row."""
    storage_key:       str
    title:             str
    ocr_text:          str | None
    classified:        bool
    destination:       str
    requested_by:      str
    content_type:      str
    size_bytes:        int
    page_count:        int = 1
    is_image_assembly: bool = False
    embedding:         list[float] | None = None


@dataclass(frozen=True)
class PersistedDocument:
    id:                uuid.UUID
    title:             str
    storage_key:       str
    ocr_text:          str | None
    embedding:         list[float] | None
    classified:        bool
    destination:       str
    requested_by:      str
    is_image_assembly: bool
    page_count:        int
    created_at:        datetime


@dataclass
class LogicalDocumentUnit:
    """
    One eventual persisted document: a single PDF or the batch's image group.

    Workers never assign to state/failure/document directly. They emit
    transitions and the batch aggregator applies them here.
    """
    unit_id:  int
    kind:     UnitKind
    items:    list[ClassifiedItem]
    state:    UnitState = UnitState.QUEUED
    failure:  UnitFailure | None = None
    document: PersistedDocument | None = None
    # Set once the artifact upload succeeded
    storage_key: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def source_indices(self) -> list[int]:
        return [item.original_index for item in self.items]

    @property
    def source_names(self) -> list[str]:
        return [item.original_name for item in self.items]


# ---------------------------------------------------------------------------
# Batch request / report
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BatchRequest:
    destination:    str
    requested_by:   str
    inputs:         list[RawInput]
    # Honoured only when the batch resolves to exactly one unit
    explicit_title: str | None = None
    classified:     bool = False


@dataclass(frozen=True)
class BatchProgressEvent:
    """Pushed to progress callbacks after every unit transition."""
    batch_id:        str
    unit_id:         int
    state:           UnitState
    completed_units: int
    total_units:     int
    percent:         float
    source_names:    tuple[str, ...] = ()


@dataclass
class BatchReport:
    batch_id:       str
    destination:    str
    total_inputs:   int
    units:          list[LogicalDocumentUnit] = field(default_factory=list)
    rejected:       list[RejectedInput] = field(default_factory=list)
    state_counts:   dict[UnitState, int] = field(default_factory=dict)
    completed_units: int = 0
    no_valid_input: bool = False
    cancelled:      bool = False

    @property
    def total_units(self) -> int:
        return len(self.units)

    @property
    def succeeded(self) -> int:
        return self.state_counts.get(UnitState.PERSISTED, 0)

    @property
    def failed(self) -> int:
        return self.state_counts.get(UnitState.FAILED, 0)

    @property
    def orphaned_units(self) -> list[LogicalDocumentUnit]:
        return [u for u in self.units if u.failure and u.failure.orphaned_artifact]

    @property
    def progress_percent(self) -> float:
        if not self.units:
            return 100.0
        return round(self.completed_units * 100.0 / len(self.units), 2)

    @property
    def is_complete(self) -> bool:
        return all(u.state.is_terminal for u in self.units)

    def summary(self) -> str:
        """Caller-facing one-liner, e.g. '2 succeeded, 1 failed, 1 rejected'."""
        return (
            f"{self.succeeded} succeeded, {self.failed} failed, "
            f"{len(self.rejected)} rejected"
        )


@dataclass(frozen=True)
class DocumentCreatedEvent:
    document_id:       uuid.UUID
    title:             str
    destination:       str
    is_image_assembly: bool
