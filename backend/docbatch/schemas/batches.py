"""
Batch Ingestion — Pydantic Response Schemas

Covers POST /api/v1/batches and the progress SSE stream:
  - BatchReportResponse (200), one entry per logical unit
  - Rejected inputs, reported separately from unit failures
  - Uniform error envelope for 4xx/5xx

Domain dataclasses (docbatch.core.types) are converted here; route
handlers never serialise them by hand.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from docbatch.core.types import (
    BatchProgressEvent,
    BatchReport,
    FailureReason,
    LogicalDocumentUnit,
    RejectedInput,
    UnitKind,
    UnitState,
)


# ---------------------------------------------------------------------------
# Report entries
# ---------------------------------------------------------------------------

class RejectedInputResponse(BaseModel):
    original_index: int
    original_name:  str
    reason:         str

    @classmethod
    def from_rejected(cls, rejected: RejectedInput) -> "RejectedInputResponse":
        return cls(
            original_index=rejected.original_index,
            original_name=rejected.original_name,
            reason=rejected.reason,
        )


class UnitFailureResponse(BaseModel):
    reason:            FailureReason
    message:           str
    orphaned_artifact: bool = Field(
        False,
        description="True when the artifact was stored but its metadata row was not written",
    )
    storage_key:       str | None = None


class PersistedDocumentResponse(BaseModel):
    document_id:       UUID
    title:             str
    storage_key:       str
    page_count:        int
    is_image_assembly: bool
    has_embedding:     bool
    created_at:        datetime


class UnitReportResponse(BaseModel):
    unit_id:        int
    kind:           UnitKind
    state:          UnitState
    source_indices: list[int]
    source_names:   list[str]
    document:       PersistedDocumentResponse | None = None
    failure:        UnitFailureResponse | None = None
    warnings:       list[str] = Field(default_factory=list)

    @classmethod
    def from_unit(cls, unit: LogicalDocumentUnit) -> "UnitReportResponse":
        document = None
        if unit.document is not None:
            doc = unit.document
            document = PersistedDocumentResponse(
                document_id=doc.id,
                title=doc.title,
                storage_key=doc.storage_key,
                page_count=doc.page_count,
                is_image_assembly=doc.is_image_assembly,
                has_embedding=doc.embedding is not None,
                created_at=doc.created_at,
            )

        failure = None
        if unit.failure is not None:
            failure = UnitFailureResponse(
                reason=unit.failure.reason,
                message=unit.failure.message,
                orphaned_artifact=unit.failure.orphaned_artifact,
                storage_key=unit.failure.storage_key,
            )

        return cls(
            unit_id=unit.unit_id,
            kind=unit.kind,
            state=unit.state,
            source_indices=unit.source_indices,
            source_names=unit.source_names,
            document=document,
            failure=failure,
            warnings=list(unit.warnings),
        )


# ---------------------------------------------------------------------------
# Batch report (200 OK)
# ---------------------------------------------------------------------------

class BatchReportResponse(BaseModel):
    """Returned once every unit of the batch is terminal."""

    batch_id:         str
    destination:      str
    total_inputs:     int
    total_units:      int
    succeeded:        int
    failed:           int
    progress_percent: float = Field(..., ge=0.0, le=100.0)
    cancelled:        bool = False
    summary:          str  = Field(..., description="e.g. '2 succeeded, 1 failed, 1 rejected'")
    units:            list[UnitReportResponse]
    rejected:         list[RejectedInputResponse]

    @classmethod
    def from_report(cls, report: BatchReport) -> "BatchReportResponse":
        return cls(
            batch_id=report.batch_id,
            destination=report.destination,
            total_inputs=report.total_inputs,
            total_units=report.total_units,
            succeeded=report.succeeded,
            failed=report.failed,
            progress_percent=report.progress_percent,
            cancelled=report.cancelled,
            summary=report.summary(),
            units=[UnitReportResponse.from_unit(u) for u in report.units],
            rejected=[RejectedInputResponse.from_rejected(r) for r in report.rejected],
        )


# ---------------------------------------------------------------------------
# SSE progress payload
# ---------------------------------------------------------------------------

class BatchProgressPayload(BaseModel):
    """
    event: unit_progress
    data:  <json of this model>
    """
    event:           str = "unit_progress"
    batch_id:        str
    unit_id:         int
    state:           UnitState
    completed_units: int
    total_units:     int
    percent:         float = Field(0.0, ge=0.0, le=100.0)
    source_names:    list[str] = Field(default_factory=list)

    @classmethod
    def from_event(cls, event: BatchProgressEvent) -> "BatchProgressPayload":
        return cls(
            batch_id=event.batch_id,
            unit_id=event.unit_id,
            state=event.state,
            completed_units=event.completed_units,
            total_units=event.total_units,
            percent=event.percent,
            source_names=list(event.source_names),
        )


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field:   str | None = Field(None, description="Request field or file that caused the error")
    message: str
    code:    str


class ErrorResponse(BaseModel):
    """Uniform error envelope for all 4xx/5xx responses."""
    error_code: str = Field(..., description="Stable machine-readable code")
    message:    str
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None = None


class BatchErrors:
    """Factories for every documented error case."""

    @staticmethod
    def no_valid_input(rejected: list[RejectedInput]) -> ErrorResponse:
        return ErrorResponse(
            error_code="NO_VALID_INPUT",
            message="None of the submitted files can be ingested.",
            details=[
                ErrorDetail(
                    field=r.original_name,
                    message=r.reason,
                    code="REJECTED_INPUT",
                )
                for r in rejected
            ],
        )

    @staticmethod
    def missing_files() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILES",
            message="No files were provided in the request.",
            details=[
                ErrorDetail(
                    field="files",
                    message="At least one 'files' multipart field is required.",
                    code="MISSING_FILES",
                )
            ],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
