"""
Ingestion error taxonomy.

Only NoValidInputError is a batch-level condition. Every other error is
caught by the BatchCoordinator and recorded on the owning unit's report
entry; none of them escape BatchCoordinator.run().
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from docbatch.core.types import RejectedInput


class IngestionError(Exception):
    """Base exception for all batch ingestion errors."""


class NoValidInputError(IngestionError):
    """Raised by the classifier when every input was rejected."""

    def __init__(self, rejected: list[RejectedInput]) -> None:
        super().__init__(f"No valid input: all {len(rejected)} file(s) were rejected")
        self.rejected = rejected


class ExtractionError(IngestionError):
    """OCR call failed or timed out. Non-fatal to the unit."""


class EmbeddingError(IngestionError):
    """Semantic embedding call failed. Non-fatal to the unit."""


class StoreError(IngestionError):
    """Artifact upload failed. Fatal to the unit; no metadata write follows."""


class PersistError(IngestionError):
    """Metadata write failed after a successful artifact upload."""


class AssemblyError(IngestionError):
    """Image group could not be rendered into a paginated document."""
