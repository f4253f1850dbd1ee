"""
Unit Tests — BatchCoordinator
══════════════════════════════
Every collaborator is an in-memory fake from conftest.py; no network,
database or broker is touched.

Coverage targets:
  ✅ Mixed batch → one PDF unit, one two-page image unit, one rejection
  ✅ Every input accounted for; every unit terminal
  ✅ Page order = original_index order, whatever the extraction order
  ✅ Failed page extraction → unit still persisted, empty segment, warning
  ✅ Extraction failing everywhere → all units persisted with ocr_text ""
  ✅ Store failure → no persist call, unit FAILED(store_failed)
  ✅ Persist failure after upload → FAILED(persist_failed), orphaned flag
  ✅ Unexpected error → FAILED(internal), orphaned when a key exists
  ✅ Assembly failure → FAILED(assembly_failed), nothing uploaded
  ✅ Identical filenames → distinct storage keys
  ✅ Progress non-decreasing, ends at exactly 100
  ✅ Title rule: explicit title only for single-unit batches
  ✅ Embedding best-effort; skipped for empty text
  ✅ One creation event per persisted unit; publish failure non-fatal
  ✅ cancel(): persisted units stay persisted, the rest FAILED(cancelled)
  ✅ Cancel during the metadata write → committed row reported PERSISTED
  ✅ Cancel during an upload that lands → FAILED(cancelled), orphaned, key kept
  ✅ Cancelling run() itself propagates CancelledError
  ✅ Extraction and upload concurrency bounded by their semaphores
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from docbatch.core.exceptions import AssemblyError, EmbeddingError
from docbatch.core.types import (
    BatchRequest,
    FailureReason,
    UnitKind,
    UnitState,
)
from docbatch.processing.assembler import ImageSetAssembler
from docbatch.processing.embeddings import EmbeddingService
from tests.conftest import (
    FakeExtractor,
    FakePersister,
    FakePublisher,
    FakeStore,
    exe_input,
    image_input,
    pdf_input,
)


def _request(inputs, **overrides) -> BatchRequest:
    fields = dict(destination="dept-7", requested_by="Kim (kim@example.com)", inputs=inputs)
    fields.update(overrides)
    return BatchRequest(**fields)


def _unit(report, kind: UnitKind):
    return next(u for u in report.units if u.kind is kind)


# ─────────────────────────────────────────────────────────────────────────────
# Happy path and partitioning
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.coordinator
class TestBatchHappyPath:

    async def test_mixed_batch_scenario(self, make_coordinator, fake_persister, fake_publisher):
        inputs = [pdf_input("a.pdf"), image_input("b.jpg"), image_input("c.jpg"), exe_input("d.exe")]

        report = await make_coordinator().run(_request(inputs))

        assert report.total_units == 2
        assert report.succeeded == 2
        assert report.failed == 0
        assert [(r.original_name, r.reason) for r in report.rejected] == [("d.exe", "unsupported file type")]
        assert report.summary() == "2 succeeded, 0 failed, 1 rejected"

        pdf_unit = _unit(report, UnitKind.PDF)
        assert pdf_unit.state is UnitState.PERSISTED
        assert pdf_unit.document.title == "a"
        assert pdf_unit.document.is_image_assembly is False

        image_unit = _unit(report, UnitKind.IMAGE_GROUP)
        assert image_unit.state is UnitState.PERSISTED
        assert image_unit.source_names == ["b.jpg", "c.jpg"]
        assert image_unit.document.title == "b"
        assert image_unit.document.page_count == 2
        assert image_unit.document.is_image_assembly is True
        assert image_unit.document.ocr_text == (
            "--- Page 1 ---\ntext of b.jpg\n\n--- Page 2 ---\ntext of c.jpg"
        )

        assert len(fake_persister.records) == 2
        assert len(fake_publisher.events) == 2

    async def test_every_input_accounted_for_and_terminal(self, make_coordinator):
        inputs = [
            image_input("1.png", "image/png"), pdf_input("2.pdf"), exe_input("3.exe"),
            pdf_input("4.pdf"), image_input("5.gif", "image/gif"),
        ]

        report = await make_coordinator().run(_request(inputs))

        assert len(report.rejected) + sum(len(u.items) for u in report.units) == len(inputs)
        assert all(u.state.is_terminal for u in report.units)
        assert report.is_complete
        assert sum(report.state_counts.values()) == report.total_units

    async def test_units_numbered_by_first_source_position(self, make_coordinator):
        inputs = [image_input("p.jpg"), pdf_input("x.pdf"), image_input("q.jpg"), pdf_input("y.pdf")]

        report = await make_coordinator().run(_request(inputs))

        assert [(u.unit_id, u.kind, u.source_indices) for u in report.units] == [
            (1, UnitKind.IMAGE_GROUP, [0, 2]),
            (2, UnitKind.PDF, [1]),
            (3, UnitKind.PDF, [3]),
        ]

    async def test_record_carries_request_fields(self, make_coordinator, fake_persister, fake_store):
        await make_coordinator().run(_request([pdf_input("a.pdf")], classified=True))

        record = fake_persister.records[0]
        assert record.classified is True
        assert record.destination == "dept-7"
        assert record.requested_by == "Kim (kim@example.com)"
        assert record.content_type == "application/pdf"
        assert record.storage_key == fake_store.puts[0]["key"]
        assert fake_store.puts[0]["destination"] == "dept-7"

    async def test_no_valid_input_short_circuits(self, make_coordinator, fake_extractor, fake_store):
        report = await make_coordinator().run(_request([exe_input("a.exe"), exe_input("b.exe")]))

        assert report.no_valid_input is True
        assert report.units == []
        assert len(report.rejected) == 2
        assert report.progress_percent == 100.0
        assert fake_extractor.calls == []
        assert fake_store.puts == []

    async def test_coordinator_is_single_use(self, make_coordinator):
        coordinator = make_coordinator()
        await coordinator.run(_request([pdf_input()]))
        with pytest.raises(RuntimeError):
            await coordinator.run(_request([pdf_input()]))


# ─────────────────────────────────────────────────────────────────────────────
# Ordering and extraction isolation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.coordinator
class TestOrderingAndExtraction:

    async def test_page_order_ignores_completion_order(self, make_coordinator, recording_renderer):
        extractor = FakeExtractor(delays={"b.jpg": 0.06, "c.jpg": 0.03, "d.jpg": 0.0})
        inputs = [image_input("b.jpg"), image_input("c.jpg"), image_input("d.jpg")]

        report = await make_coordinator(extractor=extractor).run(_request(inputs))

        assert extractor.completed == [2, 1, 0]
        assert recording_renderer.calls == [["b.jpg", "c.jpg", "d.jpg"]]
        text = report.units[0].document.ocr_text
        assert text.index("text of b.jpg") < text.index("text of c.jpg") < text.index("text of d.jpg")

    async def test_one_failed_page_keeps_unit_persisted(self, make_coordinator):
        extractor = FakeExtractor(fail={"p2.jpg"})
        inputs = [image_input("p1.jpg"), image_input("p2.jpg"), image_input("p3.jpg")]

        report = await make_coordinator(extractor=extractor).run(_request(inputs))

        unit = report.units[0]
        assert unit.state is UnitState.PERSISTED
        assert unit.document.ocr_text == (
            "--- Page 1 ---\ntext of p1.jpg\n\n--- Page 2 ---\n\n\n--- Page 3 ---\ntext of p3.jpg"
        )
        assert any("p2.jpg" in w for w in unit.warnings)

    async def test_extraction_failing_everywhere_still_persists(self, make_coordinator):
        extractor = FakeExtractor(fail={"a.pdf", "b.jpg", "c.jpg"})
        inputs = [pdf_input("a.pdf"), image_input("b.jpg"), image_input("c.jpg")]

        report = await make_coordinator(extractor=extractor).run(_request(inputs))

        assert report.succeeded == 2
        assert all(u.document.ocr_text == "" for u in report.units)

    async def test_extraction_concurrency_is_bounded(self, make_coordinator):
        extractor = FakeExtractor(delays={f"{n}.jpg": 0.01 for n in range(6)})
        inputs = [image_input(f"{n}.jpg") for n in range(6)]

        await make_coordinator(extractor=extractor, max_concurrent_extractions=2).run(_request(inputs))

        assert extractor.max_in_flight == 2

    async def test_upload_concurrency_is_bounded(self, make_coordinator):
        store = FakeStore(delay=0.01)
        inputs = [pdf_input(f"{n}.pdf") for n in range(5)]

        report = await make_coordinator(store=store, max_concurrent_uploads=1).run(_request(inputs))

        assert store.max_in_flight == 1
        assert report.succeeded == 5


# ─────────────────────────────────────────────────────────────────────────────
# Failure isolation and the two-store ordering
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.coordinator
class TestUnitFailures:

    async def test_store_failure_skips_persist(self, make_coordinator, fake_persister):
        store = FakeStore(fail_names={"a.pdf"})
        inputs = [pdf_input("a.pdf"), pdf_input("b.pdf")]

        report = await make_coordinator(store=store).run(_request(inputs))

        failed = report.units[0]
        assert failed.state is UnitState.FAILED
        assert failed.failure.reason is FailureReason.STORE_FAILED
        assert failed.failure.orphaned_artifact is False
        assert failed.document is None
        assert [r.title for r in fake_persister.records] == ["b"]
        assert report.units[1].state is UnitState.PERSISTED
        assert report.summary() == "1 succeeded, 1 failed, 0 rejected"

    async def test_persist_failure_flags_orphaned_artifact(self, make_coordinator, fake_store, fake_publisher):
        persister = FakePersister(fail_titles={"a"})

        report = await make_coordinator(persister=persister).run(_request([pdf_input("a.pdf")]))

        unit = report.units[0]
        assert unit.state is UnitState.FAILED
        assert unit.failure.reason is FailureReason.PERSIST_FAILED
        assert unit.failure.orphaned_artifact is True
        assert unit.failure.storage_key == fake_store.puts[0]["key"]
        assert report.orphaned_units == [unit]
        assert fake_publisher.events == []

    async def test_unexpected_error_after_upload_is_internal_and_orphaned(self, make_coordinator):
        persister = MagicMock()
        persister.persist = AsyncMock(side_effect=RuntimeError("pool exhausted"))

        report = await make_coordinator(persister=persister).run(_request([pdf_input("a.pdf")]))

        failure = report.units[0].failure
        assert failure.reason is FailureReason.INTERNAL
        assert failure.orphaned_artifact is True
        assert "pool exhausted" in failure.message

    async def test_assembly_failure_uploads_nothing(self, make_coordinator, fake_store):
        assembler = MagicMock(spec=ImageSetAssembler)
        assembler.assemble = AsyncMock(side_effect=AssemblyError("cannot render"))
        inputs = [image_input("a.jpg"), pdf_input("b.pdf")]

        report = await make_coordinator(assembler=assembler).run(_request(inputs))

        image_unit = _unit(report, UnitKind.IMAGE_GROUP)
        assert image_unit.failure.reason is FailureReason.ASSEMBLY_FAILED
        assert [p["name"] for p in fake_store.puts] == ["b.pdf"]
        assert _unit(report, UnitKind.PDF).state is UnitState.PERSISTED

    async def test_identical_names_get_distinct_keys(self, make_coordinator, fake_store):
        inputs = [pdf_input("scan.pdf"), pdf_input("scan.pdf"), pdf_input("scan.pdf")]

        report = await make_coordinator().run(_request(inputs))

        keys = [u.document.storage_key for u in report.units]
        assert len(set(keys)) == 3
        assert report.succeeded == 3

    async def test_publish_failure_is_not_fatal(self, make_coordinator):
        report = await make_coordinator(publisher=FakePublisher(fail=True)).run(_request([pdf_input()]))
        assert report.units[0].state is UnitState.PERSISTED


# ─────────────────────────────────────────────────────────────────────────────
# Progress, titles and embeddings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.coordinator
class TestProgressTitlesEmbeddings:

    async def test_progress_is_monotonic_and_reaches_100(self, make_coordinator):
        events = []

        async def on_progress(event):
            events.append(event)

        inputs = [pdf_input("a.pdf"), pdf_input("b.pdf"), image_input("c.jpg"), image_input("d.jpg")]
        store = FakeStore(fail_names={"b.pdf"})

        report = await make_coordinator(progress_cb=on_progress, store=store).run(_request(inputs))

        percents = [e.percent for e in events]
        assert percents == sorted(percents)
        assert percents[-1] == 100.0
        assert report.progress_percent == 100.0
        assert sum(1 for e in events if e.state.is_terminal) == report.total_units
        assert all(e.total_units == 3 for e in events)

    async def test_broken_progress_callback_does_not_stop_batch(self, make_coordinator):
        async def on_progress(event):
            raise ValueError("listener gone")

        report = await make_coordinator(progress_cb=on_progress).run(_request([pdf_input()]))

        assert report.succeeded == 1

    async def test_explicit_title_used_for_single_unit(self, make_coordinator):
        inputs = [image_input("b.jpg"), image_input("c.jpg")]
        report = await make_coordinator().run(_request(inputs, explicit_title="Lease contract"))
        assert report.units[0].document.title == "Lease contract"

    async def test_explicit_title_ignored_for_multiple_units(self, make_coordinator):
        inputs = [pdf_input("a.pdf"), image_input("b.jpg")]

        report = await make_coordinator().run(_request(inputs, explicit_title="Lease contract"))

        assert sorted(u.document.title for u in report.units) == ["a", "b"]

    async def test_embedding_attached_when_text_present(self, make_coordinator):
        embedder = MagicMock(spec=EmbeddingService)
        embedder.embed = AsyncMock(return_value=[0.5, 0.25])

        report = await make_coordinator(embedder=embedder).run(_request([pdf_input("a.pdf")]))

        assert report.units[0].document.embedding == [0.5, 0.25]
        assert embedder.embed.call_args.args[0] == "a\n\ntext of a.pdf"

    async def test_embedding_failure_is_a_warning(self, make_coordinator):
        embedder = MagicMock(spec=EmbeddingService)
        embedder.embed = AsyncMock(side_effect=EmbeddingError("rate limited"))

        report = await make_coordinator(embedder=embedder).run(_request([pdf_input("a.pdf")]))

        unit = report.units[0]
        assert unit.state is UnitState.PERSISTED
        assert unit.document.embedding is None
        assert any("rate limited" in w for w in unit.warnings)

    async def test_embedding_skipped_for_empty_text(self, make_coordinator):
        embedder = MagicMock(spec=EmbeddingService)
        embedder.embed = AsyncMock(return_value=[1.0])
        extractor = FakeExtractor(fail={"a.pdf"})

        await make_coordinator(embedder=embedder, extractor=extractor).run(_request([pdf_input("a.pdf")]))

        embedder.embed.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.coordinator
class TestCancellation:

    async def test_cancel_keeps_persisted_units(self, make_coordinator, fake_publisher):
        pdf_done = asyncio.Event()

        async def on_progress(event):
            if event.state is UnitState.PERSISTED:
                pdf_done.set()

        extractor = FakeExtractor(block={"b.jpg"})
        coordinator = make_coordinator(extractor=extractor, progress_cb=on_progress)
        inputs = [pdf_input("a.pdf"), image_input("b.jpg"), image_input("c.jpg")]

        run = asyncio.create_task(coordinator.run(_request(inputs)))
        await asyncio.wait_for(pdf_done.wait(), timeout=5)
        coordinator.cancel()
        report = await asyncio.wait_for(run, timeout=5)

        assert report.cancelled is True
        assert _unit(report, UnitKind.PDF).state is UnitState.PERSISTED
        image_unit = _unit(report, UnitKind.IMAGE_GROUP)
        assert image_unit.state is UnitState.FAILED
        assert image_unit.failure.reason is FailureReason.CANCELLED
        assert image_unit.failure.orphaned_artifact is False
        assert report.progress_percent == 100.0
        assert len(fake_publisher.events) == 1

    async def test_cancel_before_run_cancels_every_unit(self, make_coordinator, fake_store):
        coordinator = make_coordinator()
        coordinator.cancel()

        report = await coordinator.run(_request([pdf_input("a.pdf"), image_input("b.jpg")]))

        assert report.cancelled is True
        assert all(u.failure.reason is FailureReason.CANCELLED for u in report.units)
        assert fake_store.puts == []

    async def test_cancel_during_metadata_write_keeps_committed_row(self, make_coordinator, fake_publisher):
        persister = FakePersister(delay=0.05)
        coordinator = make_coordinator(persister=persister)

        run = asyncio.create_task(coordinator.run(_request([pdf_input("a.pdf")])))
        await asyncio.wait_for(persister.started.wait(), timeout=5)
        coordinator.cancel()
        report = await asyncio.wait_for(run, timeout=5)

        unit = report.units[0]
        assert unit.state is UnitState.PERSISTED
        assert unit.failure is None
        assert unit.document.storage_key == persister.records[0].storage_key
        assert report.cancelled is True
        assert report.orphaned_units == []
        assert len(fake_publisher.events) == 1

    async def test_cancel_during_upload_reports_landed_object(self, make_coordinator, fake_persister):
        store = FakeStore(delay=0.05)
        coordinator = make_coordinator(store=store)

        run = asyncio.create_task(coordinator.run(_request([pdf_input("a.pdf")])))
        await asyncio.wait_for(store.started.wait(), timeout=5)
        coordinator.cancel()
        report = await asyncio.wait_for(run, timeout=5)

        failure = report.units[0].failure
        assert failure.reason is FailureReason.CANCELLED
        assert failure.orphaned_artifact is True
        assert failure.storage_key == store.puts[0]["key"]
        assert report.orphaned_units == [report.units[0]]
        assert fake_persister.records == []

    async def test_cancelling_run_propagates(self, make_coordinator):
        extractor = FakeExtractor(block={"a.pdf"})
        run = asyncio.create_task(
            make_coordinator(extractor=extractor).run(_request([pdf_input("a.pdf")]))
        )
        await asyncio.sleep(0.01)

        run.cancel()

        with pytest.raises(asyncio.CancelledError):
            await run
