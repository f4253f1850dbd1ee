"""
Batch Ingestion Coordinator

Orchestrates one batch of user-selected files:
  1. Classify inputs into PDFs, images and rejected files
  2. Build logical units: one per PDF, one for the whole image group
  3. Per unit, concurrently:
       PDF:         extract text → upload → embed → persist → event
       image group: extract every page → assemble (original_index order)
                    → upload → embed → persist → event
  4. Aggregate per-unit transitions into the BatchReport and push progress

Invariants enforced here:
  - A unit's failure never touches another unit; every unit ends PERSISTED
    or FAILED, never both.
  - persist() is only called after put() returned a key. A persist failure
    after a successful upload is reported as an orphaned artifact.
  - Workers never mutate units or counters. They put transitions on a queue
    consumed by a single aggregator task, the only writer of BatchReport.
  - Extraction and embedding failures are warnings, not unit failures.
  - Cancellation interrupts a unit only before its upload is sent. A sent
    upload and the metadata write settle first, so a committed row is
    always reported PERSISTED.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable

from docbatch.core.exceptions import (
    AssemblyError,
    EmbeddingError,
    NoValidInputError,
    PersistError,
    StoreError,
)
from docbatch.core.types import (
    BatchProgressEvent,
    BatchReport,
    BatchRequest,
    ClassifiedItem,
    DocumentCreatedEvent,
    DocumentRecord,
    ExtractionOutcome,
    FailureReason,
    LogicalDocumentUnit,
    PersistedDocument,
    UnitFailure,
    UnitKind,
    UnitState,
)
from docbatch.processing.assembler import ImageSetAssembler, count_pdf_pages, default_title
from docbatch.processing.classifier import classify
from docbatch.processing.embeddings import (
    MAX_INPUT_CHARS,
    EmbeddingService,
    build_embedding_input,
)
from docbatch.processing.ocr import TextExtractionClient
from docbatch.services.notifications import EventPublisher
from docbatch.services.persister import MetadataPersister
from docbatch.storage.s3 import S3ArtifactStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[BatchProgressEvent], Awaitable[None]]

PDF_CONTENT_TYPE = "application/pdf"


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Transition:
    """One message from a unit worker to the aggregator."""
    unit_id:     int
    state:       UnitState | None = None     # None: warning only
    failure:     UnitFailure | None = None
    document:    PersistedDocument | None = None
    storage_key: str | None = None
    warning:     str | None = None
    cancelled:   bool = False


class _BatchAggregator:
    """
    Sole owner of the BatchReport while the batch runs.

    Transitions for a unit that is already terminal are dropped, so a late
    cancellation can never overwrite PERSISTED.
    """

    def __init__(self, report: BatchReport, progress_cb: ProgressCallback | None) -> None:
        self._report   = report
        self._progress = progress_cb
        self._units    = {unit.unit_id: unit for unit in report.units}
        self._queue: asyncio.Queue[_Transition | None] = asyncio.Queue()

    def emit(self, transition: _Transition) -> None:
        # Unbounded queue: never blocks, safe from cancellation handlers
        self._queue.put_nowait(transition)

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def run(self) -> None:
        while True:
            transition = await self._queue.get()
            if transition is None:
                return
            await self._apply(transition)

    async def _apply(self, t: _Transition) -> None:
        unit = self._units[t.unit_id]

        if unit.state.is_terminal:
            logger.debug(
                "Transition ignored, unit already terminal | unit=%d state=%s",
                unit.unit_id, unit.state.value,
            )
            return

        if t.warning:
            unit.warnings.append(t.warning)
        if t.storage_key:
            unit.storage_key = t.storage_key

        new_state = UnitState.FAILED if t.cancelled else t.state
        if new_state is None:
            return

        failure = t.failure
        if t.cancelled:
            failure = UnitFailure(
                reason=FailureReason.CANCELLED,
                message=f"Batch cancelled while unit was {unit.state.value}",
                orphaned_artifact=unit.storage_key is not None,
                storage_key=unit.storage_key,
            )

        counts = self._report.state_counts
        counts[unit.state] = counts.get(unit.state, 0) - 1
        counts[new_state]  = counts.get(new_state, 0) + 1

        unit.state = new_state
        if failure is not None:
            unit.failure = failure
        if t.document is not None:
            unit.document = t.document
        if new_state.is_terminal:
            self._report.completed_units += 1

        if self._progress is None:
            return

        event = BatchProgressEvent(
            batch_id=self._report.batch_id,
            unit_id=unit.unit_id,
            state=new_state,
            completed_units=self._report.completed_units,
            total_units=self._report.total_units,
            percent=self._report.progress_percent,
            source_names=tuple(unit.source_names),
        )
        try:
            await self._progress(event)
        except Exception:
            # A broken listener must not stall the batch
            logger.exception("Progress callback failed | batch=%s", self._report.batch_id)


async def _settle(task: asyncio.Task) -> None:
    """Wait for task to finish; further cancellations of the caller are absorbed."""
    while not task.done():
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            continue


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class BatchCoordinator:
    """
    One instance per batch. All collaborators are injected.

    Usage:
        coordinator = BatchCoordinator(extractor=..., assembler=..., store=..., persister=...)
        report = await coordinator.run(request)

    cancel() may be called from another task while run() is in progress.
    """

    def __init__(
        self,
        *,
        extractor:  TextExtractionClient,
        assembler:  ImageSetAssembler,
        store:      S3ArtifactStore,
        persister:  MetadataPersister,
        embedder:   EmbeddingService | None = None,
        publisher:  EventPublisher | None = None,
        progress_cb: ProgressCallback | None = None,
        max_concurrent_extractions: int = 4,
        max_concurrent_uploads:     int = 4,
        max_file_size_bytes:        int | None = None,
        embedding_max_chars:        int = MAX_INPUT_CHARS,
    ) -> None:
        self._extractor = extractor
        self._assembler = assembler
        self._store     = store
        self._persister = persister
        self._embedder  = embedder
        self._publisher = publisher or EventPublisher()
        self._progress  = progress_cb
        self._max_extractions = max(1, max_concurrent_extractions)
        self._max_uploads     = max(1, max_concurrent_uploads)
        self._max_file_size   = max_file_size_bytes
        self._embed_max_chars = embedding_max_chars

        self._tasks: list[asyncio.Task] = []
        self._started          = False
        self._cancel_requested = False

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """
        Cancel every in-flight unit; run() still returns a full report.

        A unit whose upload was already sent waits for it; if the object was
        stored, the unit ends FAILED(cancelled) flagged orphaned with its key.
        A unit in PERSISTING is not interrupted and ends by its own outcome.
        """
        self._cancel_requested = True
        for task in self._tasks:
            if not task.done():
                task.cancel()

    async def run(self, request: BatchRequest) -> BatchReport:
        if self._started:
            raise RuntimeError("BatchCoordinator instances are single-use")
        self._started = True

        batch_id = uuid.uuid4().hex
        t0 = time.monotonic()

        logger.info(
            "Batch start | batch=%s destination=%s requested_by=%s inputs=%d",
            batch_id, request.destination, request.requested_by, len(request.inputs),
        )

        try:
            classification = classify(request.inputs, max_file_size_bytes=self._max_file_size)
        except NoValidInputError as exc:
            logger.warning("Batch has no valid input | batch=%s rejected=%d", batch_id, len(exc.rejected))
            return BatchReport(
                batch_id=batch_id,
                destination=request.destination,
                total_inputs=len(request.inputs),
                rejected=list(exc.rejected),
                no_valid_input=True,
            )

        units = self._build_units(classification.pdfs, classification.images)
        report = BatchReport(
            batch_id=batch_id,
            destination=request.destination,
            total_inputs=len(request.inputs),
            units=units,
            rejected=list(classification.rejected),
            state_counts={UnitState.QUEUED: len(units)},
        )

        # Explicit title only when the whole batch is one document
        single_title = request.explicit_title if len(units) == 1 else None

        extraction_slots = asyncio.Semaphore(self._max_extractions)
        upload_slots     = asyncio.Semaphore(self._max_uploads)

        aggregator = _BatchAggregator(report, self._progress)
        aggregator_task = asyncio.create_task(aggregator.run())

        self._tasks = [
            asyncio.create_task(
                self._run_unit(
                    unit, request, aggregator, single_title, extraction_slots, upload_slots,
                )
            )
            for unit in units
        ]
        if self._cancel_requested:
            self.cancel()

        try:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
        except asyncio.CancelledError:
            aggregator_task.cancel()
            logger.warning("Batch run cancelled by caller | batch=%s", batch_id)
            raise

        for unit, result in zip(units, results):
            if isinstance(result, asyncio.CancelledError):
                aggregator.emit(_Transition(unit.unit_id, cancelled=True))

        aggregator.close()
        await aggregator_task

        report.cancelled = self._cancel_requested

        logger.info(
            "Batch done | batch=%s units=%d %s orphaned=%d cancelled=%s elapsed_ms=%.0f",
            batch_id, report.total_units, report.summary(), len(report.orphaned_units),
            report.cancelled, (time.monotonic() - t0) * 1000,
        )
        return report

    # ------------------------------------------------------------------
    # Unit construction
    # ------------------------------------------------------------------

    @staticmethod
    def _build_units(
        pdfs:   list[ClassifiedItem],
        images: list[ClassifiedItem],
    ) -> list[LogicalDocumentUnit]:
        groups: list[tuple[UnitKind, list[ClassifiedItem]]] = [
            (UnitKind.PDF, [item]) for item in pdfs
        ]
        if images:
            groups.append((UnitKind.IMAGE_GROUP, list(images)))

        # Number units in submission order of their first file
        groups.sort(key=lambda group: min(item.original_index for item in group[1]))

        return [
            LogicalDocumentUnit(unit_id=n, kind=kind, items=items)
            for n, (kind, items) in enumerate(groups, start=1)
        ]

    # ------------------------------------------------------------------
    # Unit worker
    # ------------------------------------------------------------------

    async def _run_unit(
        self,
        unit:             LogicalDocumentUnit,
        request:          BatchRequest,
        aggregator:       _BatchAggregator,
        explicit_title:   str | None,
        extraction_slots: asyncio.Semaphore,
        upload_slots:     asyncio.Semaphore,
    ) -> None:
        emit = aggregator.emit
        storage_key: str | None = None

        async def extract(item: ClassifiedItem) -> ExtractionOutcome:
            async with extraction_slots:
                outcome = await self._extractor.extract(item)
            if not outcome.succeeded:
                emit(_Transition(
                    unit.unit_id,
                    warning=f"Text extraction failed for '{item.original_name}': {outcome.error}",
                ))
            return outcome

        try:
            emit(_Transition(unit.unit_id, UnitState.CLASSIFYING))
            emit(_Transition(unit.unit_id, UnitState.EXTRACTING))

            if unit.kind is UnitKind.PDF:
                item    = unit.items[0]
                outcome = await extract(item)
                payload        = item.data
                suggested_name = item.original_name
                title          = (explicit_title or "").strip() or default_title(item.original_name)
                ocr_text       = outcome.text or ""
                loop = asyncio.get_running_loop()
                page_count = await loop.run_in_executor(None, count_pdf_pages, payload)
            else:
                outcomes = await asyncio.gather(*(extract(item) for item in unit.items))

                emit(_Transition(unit.unit_id, UnitState.ASSEMBLING))
                try:
                    artifact = await self._assembler.assemble(
                        list(zip(unit.items, outcomes)),
                        explicit_title=explicit_title,
                    )
                except (AssemblyError, ValueError) as exc:
                    logger.error(
                        "Assembly failed | unit=%d pages=%d error=%s",
                        unit.unit_id, len(unit.items), exc,
                    )
                    emit(_Transition(
                        unit.unit_id, UnitState.FAILED,
                        failure=UnitFailure(FailureReason.ASSEMBLY_FAILED, str(exc)),
                    ))
                    return

                for index in artifact.unrendered_indices:
                    emit(_Transition(
                        unit.unit_id,
                        warning=f"Image at position {index} could not be rendered; placeholder page used",
                    ))

                payload        = artifact.data
                title          = artifact.suggested_title
                suggested_name = f"{title}.pdf"
                ocr_text       = artifact.combined_text
                page_count     = artifact.page_count

            # ---- Upload ------------------------------------------------
            emit(_Transition(unit.unit_id, UnitState.UPLOADING))
            try:
                async with upload_slots:
                    upload = asyncio.create_task(self._store.put(
                        payload,
                        suggested_name,
                        destination=request.destination,
                        content_type=PDF_CONTENT_TYPE,
                    ))
                    try:
                        storage_key = await asyncio.shield(upload)
                    except asyncio.CancelledError:
                        # put_object may still land; report the key so the unit is flagged orphaned
                        await _settle(upload)
                        if not upload.cancelled() and upload.exception() is None:
                            emit(_Transition(unit.unit_id, storage_key=upload.result()))
                        raise
            except StoreError as exc:
                emit(_Transition(
                    unit.unit_id, UnitState.FAILED,
                    failure=UnitFailure(FailureReason.STORE_FAILED, str(exc)),
                ))
                return

            emit(_Transition(unit.unit_id, UnitState.PERSISTING, storage_key=storage_key))
            commit = asyncio.create_task(self._commit(
                unit, request, aggregator,
                storage_key=storage_key,
                payload=payload,
                title=title,
                ocr_text=ocr_text,
                page_count=page_count,
            ))

        except Exception as exc:
            logger.exception("Unit failed unexpectedly | unit=%d key=%s", unit.unit_id, storage_key)
            emit(_Transition(
                unit.unit_id, UnitState.FAILED,
                failure=UnitFailure(
                    FailureReason.INTERNAL, f"{type(exc).__name__}: {exc}",
                    orphaned_artifact=storage_key is not None,
                    storage_key=storage_key,
                ),
            ))
            return

        # The row may be committed before a cancellation is delivered, so the
        # write always settles and decides the unit's outcome.
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError:
            logger.info(
                "Cancellation deferred until metadata write settles | unit=%d key=%s",
                unit.unit_id, storage_key,
            )
            await _settle(commit)
            raise

    async def _commit(
        self,
        unit:       LogicalDocumentUnit,
        request:    BatchRequest,
        aggregator: _BatchAggregator,
        *,
        storage_key: str,
        payload:     bytes,
        title:       str,
        ocr_text:    str,
        page_count:  int,
    ) -> None:
        """Embed, persist, publish. Always ends the unit PERSISTED or FAILED."""
        emit = aggregator.emit
        try:
            embedding = await self._embed(unit, aggregator, title, ocr_text)
            record = DocumentRecord(
                storage_key=storage_key,
                title=title,
                ocr_text=ocr_text,
                classified=request.classified,
                destination=request.destination,
                requested_by=request.requested_by,
                content_type=PDF_CONTENT_TYPE,
                size_bytes=len(payload),
                page_count=page_count,
                is_image_assembly=unit.kind is UnitKind.IMAGE_GROUP,
                embedding=embedding,
            )
            document = await self._persister.persist(record)
        except PersistError as exc:
            logger.error(
                "Orphaned artifact | unit=%d key=%s error=%s",
                unit.unit_id, storage_key, exc,
            )
            emit(_Transition(
                unit.unit_id, UnitState.FAILED,
                failure=UnitFailure(
                    FailureReason.PERSIST_FAILED, str(exc),
                    orphaned_artifact=True, storage_key=storage_key,
                ),
            ))
            return
        except Exception as exc:
            logger.exception("Metadata write failed unexpectedly | unit=%d key=%s", unit.unit_id, storage_key)
            emit(_Transition(
                unit.unit_id, UnitState.FAILED,
                failure=UnitFailure(
                    FailureReason.INTERNAL, f"{type(exc).__name__}: {exc}",
                    orphaned_artifact=True, storage_key=storage_key,
                ),
            ))
            return

        emit(_Transition(unit.unit_id, UnitState.PERSISTED, document=document))
        logger.info(
            "Unit persisted | unit=%d kind=%s doc=%s key=%s",
            unit.unit_id, unit.kind.value, document.id, storage_key,
        )
        await self._publish(document)

    # ------------------------------------------------------------------
    # Best-effort side calls
    # ------------------------------------------------------------------

    async def _embed(
        self,
        unit:       LogicalDocumentUnit,
        aggregator: _BatchAggregator,
        title:      str,
        ocr_text:   str,
    ) -> list[float] | None:
        if self._embedder is None or not ocr_text.strip():
            return None
        try:
            return await self._embedder.embed(
                build_embedding_input(title, ocr_text, self._embed_max_chars)
            )
        except EmbeddingError as exc:
            logger.warning("Embedding skipped | unit=%d error=%s", unit.unit_id, exc)
            aggregator.emit(_Transition(unit.unit_id, warning=f"Embedding failed: {exc}"))
            return None

    async def _publish(self, document: PersistedDocument) -> None:
        event = DocumentCreatedEvent(
            document_id=document.id,
            title=document.title,
            destination=document.destination,
            is_image_assembly=document.is_image_assembly,
        )
        try:
            await self._publisher.publish_document_created(event)
        except Exception as exc:
            # Non-fatal: the document row is committed
            logger.error("Failed to publish document-created event | doc=%s error=%s", document.id, exc)


def build_batch_coordinator(progress_cb: ProgressCallback | None = None) -> BatchCoordinator:
    """Wire a coordinator from application settings."""
    from docbatch.core.config import settings
    from docbatch.db.session import get_session_factory
    from docbatch.processing.embeddings import build_embedding_service
    from docbatch.processing.ocr import build_extraction_client
    from docbatch.services.notifications import CeleryEventPublisher
    from docbatch.storage.s3 import build_artifact_store

    return BatchCoordinator(
        extractor=build_extraction_client(),
        assembler=ImageSetAssembler(
            page_width=settings.page_width_pt,
            page_height=settings.page_height_pt,
            margin=settings.page_margin_pt,
        ),
        store=build_artifact_store(),
        persister=MetadataPersister(get_session_factory()),
        embedder=build_embedding_service(),
        publisher=CeleryEventPublisher(),
        progress_cb=progress_cb,
        max_concurrent_extractions=settings.max_concurrent_extractions,
        max_concurrent_uploads=settings.max_concurrent_uploads,
        max_file_size_bytes=settings.max_file_size_bytes,
        embedding_max_chars=settings.embedding_max_chars,
    )
