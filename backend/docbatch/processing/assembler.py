"""
Image-Set Assembler
═══════════════════

Merges the batch's image group into one synthetic paginated PDF.

Page order is decided here and only here: pages are sorted by
original_index, never by the order in which concurrent extraction
results arrived. The combined OCR transcript uses the same sorted order.

Rendering (PyMuPDF):
  - one page per image, fixed geometry (A4 portrait by default)
  - image fitted inside the page margin, aspect ratio preserved
  - an image MuPDF cannot decode becomes a placeholder page so the page
    count and numbering stay aligned with the source indices
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Sequence

from docbatch.core.exceptions import AssemblyError
from docbatch.core.types import AssembledArtifact, ClassifiedItem, ExtractionOutcome

logger = logging.getLogger(__name__)

A4_WIDTH_PT  = 595.0
A4_HEIGHT_PT = 842.0
PAGE_MARGIN_PT = 24.0

PAGE_MARKER = "--- Page {number} ---"

# (ordered [(filename, image_bytes)]) -> (pdf_bytes, positions that failed to render)
PageRenderer = Callable[[list[tuple[str, bytes]]], tuple[bytes, list[int]]]


def default_title(filename: str) -> str:
    """Base filename without directory or extension: 'scans/b.JPG' -> 'b'."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    stem, dot, _ = basename.rpartition(".")
    return (stem if dot and stem else basename).strip() or "Untitled"


def count_pdf_pages(pdf_bytes: bytes) -> int:
    """Page count of a submitted PDF; 0 when MuPDF cannot open it. Blocking."""
    import fitz  # PyMuPDF

    try:
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            return doc.page_count
    except Exception as exc:
        logger.warning("Could not count PDF pages: %s", exc)
        return 0


def combine_page_texts(page_texts: Sequence[str]) -> str:
    """
    Join per-page text with page-boundary markers.

    A page with no text keeps its marker and an empty segment. If no page
    produced any text the transcript is the empty string.
    """
    if not any(page_texts):
        return ""
    return "\n\n".join(
        f"{PAGE_MARKER.format(number=n)}\n{text}"
        for n, text in enumerate(page_texts, start=1)
    )


class ImageSetAssembler:
    """
    Stateless; one instance can serve every batch.

    Usage:
        assembler = ImageSetAssembler()
        artifact  = await assembler.assemble(pairs, explicit_title=None)
    """

    def __init__(
        self,
        page_width:  float = A4_WIDTH_PT,
        page_height: float = A4_HEIGHT_PT,
        margin:      float = PAGE_MARGIN_PT,
        renderer:    PageRenderer | None = None,
    ) -> None:
        self._width    = page_width
        self._height   = page_height
        self._margin   = margin
        self._renderer = renderer or self._render_pdf

    async def assemble(
        self,
        pages: Sequence[tuple[ClassifiedItem, ExtractionOutcome]],
        *,
        explicit_title: str | None = None,
    ) -> AssembledArtifact:
        if not pages:
            raise ValueError("Cannot assemble an empty image group")

        for item, outcome in pages:
            if item.original_index != outcome.original_index:
                raise ValueError(
                    f"Outcome index {outcome.original_index} paired with "
                    f"item index {item.original_index}"
                )

        ordered = sorted(pages, key=lambda pair: pair[0].original_index)
        sources = [(item.original_name, item.data) for item, _ in ordered]

        loop = asyncio.get_running_loop()
        try:
            data, unrendered = await loop.run_in_executor(None, self._renderer, sources)
        except AssemblyError:
            raise
        except Exception as exc:
            raise AssemblyError(f"Failed to render image group: {exc}") from exc

        page_texts = tuple((outcome.text or "").strip() for _, outcome in ordered)
        indices    = tuple(item.original_index for item, _ in ordered)

        title = (explicit_title or "").strip() or default_title(ordered[0][0].original_name)

        logger.info(
            "Assembled image group | pages=%d unrendered=%d bytes=%d title=%r",
            len(indices), len(unrendered), len(data), title,
        )

        return AssembledArtifact(
            ordered_source_indices=indices,
            data=data,
            suggested_title=title,
            page_texts=page_texts,
            combined_text=combine_page_texts(page_texts),
            unrendered_indices=tuple(indices[pos] for pos in unrendered),
        )

    def _render_pdf(self, sources: list[tuple[str, bytes]]) -> tuple[bytes, list[int]]:
        """Blocking render, runs in a thread executor."""
        import fitz  # PyMuPDF

        unrendered: list[int] = []
        frame = fitz.Rect(
            self._margin, self._margin,
            self._width - self._margin, self._height - self._margin,
        )

        with fitz.open() as doc:
            for position, (name, image_bytes) in enumerate(sources):
                page = doc.new_page(width=self._width, height=self._height)
                try:
                    page.insert_image(frame, stream=image_bytes, keep_proportion=True)
                except Exception as exc:
                    logger.warning("Image could not be rendered | file=%s error=%s", name, exc)
                    page.insert_text(
                        (self._margin, self._margin + 14),
                        f"[image could not be rendered: {name}]",
                        fontsize=11,
                    )
                    unrendered.append(position)

            return doc.tobytes(garbage=3, deflate=True), unrendered
