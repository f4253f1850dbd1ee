"""
Text Extraction — Strategy Pattern + Per-File Isolation
═══════════════════════════════════════════════════════

Two strategies, tried in order of speed and cost:

  Strategy 1: PyMuPDF text layer (PDF only)
    - Native PDF text extraction, runs in-process in a thread executor
    - Zero API calls
    - Returns near-empty text for scanned PDFs

  Strategy 2: Remote OCR service (CLOVA General OCR, V2 API)
    - Used for every image, and for PDFs whose text layer is too thin
    - One HTTP POST per file; base64 payload, X-OCR-SECRET header
    - Response fields are joined word-by-word, breaking lines on lineBreak

TextExtractionClient is the boundary the coordinator talks to. It is safe
to call concurrently and never raises: timeouts, unsupported content and
service errors all come back as ExtractionOutcome(text=None, error=...).
Extraction is best-effort: a failed outcome never fails a unit.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
import uuid
from abc import ABC, abstractmethod

import httpx

from docbatch.core.exceptions import ExtractionError
from docbatch.core.types import ClassifiedItem, ExtractionOutcome, FileKind

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration defaults (overridden from settings in build_extraction_client)
# ---------------------------------------------------------------------------

MIN_CHARS_PER_PAGE_THRESHOLD = 50
OCR_TIMEOUT_SECONDS = 60.0

# CLOVA accepts these format tokens; anything else is sent as the MIME subtype
_OCR_FORMATS: dict[str, str] = {
    "application/pdf": "pdf",
    "image/jpeg":      "jpg",
    "image/png":       "png",
    "image/tiff":      "tiff",
}


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseTextExtractor(ABC):
    """
    Abstract base for text extraction strategies.

    Implementations raise ExtractionError on failure; isolation is the
    job of TextExtractionClient, not of the strategy.
    """

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging and outcome.method."""

    @abstractmethod
    async def extract(self, data: bytes, *, mime_type: str, filename: str) -> str:
        """Return recognised text for one file."""


# ---------------------------------------------------------------------------
# Strategy 1: PyMuPDF text layer
# ---------------------------------------------------------------------------

class PyMuPDFTextLayer:
    """
    Reads the native PDF text layer page by page.

    fitz.open() returns an independent document object per call, so this
    is safe to run concurrently in the default executor.
    """

    strategy_name = "pymupdf"

    async def extract_pages(self, pdf_bytes: bytes) -> list[str]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._extract_sync, pdf_bytes)

    @staticmethod
    def _extract_sync(pdf_bytes: bytes) -> list[str]:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        pages: list[str] = []
        try:
            with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
                for page in doc:
                    pages.append((page.get_text("text") or "").strip())
        except Exception as exc:
            raise ExtractionError(f"Unreadable PDF: {exc}") from exc
        return pages


# ---------------------------------------------------------------------------
# Strategy 2: remote OCR service
# ---------------------------------------------------------------------------

class ClovaOCRExtractor(BaseTextExtractor):
    """
    Client for a CLOVA-style General OCR endpoint.

    Request body:
        {version: "V2", requestId, timestamp, lang,
         images: [{format, name, data: <base64>}]}

    Response body:
        {images: [{inferResult, message, fields: [{inferText, lineBreak}, ...]}]}

    A transport can be injected (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        api_url:    str,
        secret_key: str,
        lang:       str = "ko",
        timeout:    float = OCR_TIMEOUT_SECONDS,
        transport:  httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_url    = api_url
        self._secret_key = secret_key
        self._lang       = lang
        self._timeout    = timeout
        self._transport  = transport

    @property
    def strategy_name(self) -> str:
        return "ocr_service"

    async def extract(self, data: bytes, *, mime_type: str, filename: str) -> str:
        payload = {
            "version":   "V2",
            "requestId": str(uuid.uuid4()),
            "timestamp": int(time.time() * 1000),
            "lang":      self._lang,
            "images": [
                {
                    "format": _OCR_FORMATS.get(mime_type, mime_type.rsplit("/", 1)[-1]),
                    "name":   "document",
                    "data":   base64.b64encode(data).decode("ascii"),
                }
            ],
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as http:
                resp = await http.post(
                    self._api_url,
                    json=payload,
                    headers={"X-OCR-SECRET": self._secret_key},
                )
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ExtractionError(
                f"OCR service returned {exc.response.status_code} for {filename}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExtractionError(f"OCR service unreachable: {exc}") from exc
        except ValueError as exc:
            raise ExtractionError("OCR service returned a non-JSON body") from exc

        return self.parse_response(body)

    @staticmethod
    def parse_response(body: dict) -> str:
        """
        Join inferText fields with spaces; a field with lineBreak=true ends
        the current line.
        """
        lines: list[str] = []

        for image in body.get("images") or []:
            result = image.get("inferResult")
            if result and result != "SUCCESS":
                raise ExtractionError(
                    f"OCR inference {result}: {image.get('message', 'no message')}"
                )

            buffer: list[str] = []
            for fld in image.get("fields") or []:
                infer_text = fld.get("inferText") if isinstance(fld, dict) else None
                if not isinstance(infer_text, str):
                    continue
                buffer.append(infer_text)
                if fld.get("lineBreak"):
                    lines.append(" ".join(buffer))
                    buffer = []
            if buffer:
                lines.append(" ".join(buffer))

        return "\n".join(lines).strip()


# ---------------------------------------------------------------------------
# Isolation boundary
# ---------------------------------------------------------------------------

class TextExtractionClient:
    """
    Per-file extraction with failure isolation.

    PDF:   text layer first; if avg chars/page < threshold the document is
           treated as scanned and sent to the OCR service.
    Image: OCR service.

    Usage:
        client  = TextExtractionClient(ocr_service=ClovaOCRExtractor(url, key))
        outcome = await client.extract(item)   # never raises
    """

    def __init__(
        self,
        ocr_service: BaseTextExtractor | None = None,
        text_layer:  PyMuPDFTextLayer | None = None,
        *,
        timeout:            float = OCR_TIMEOUT_SECONDS,
        min_chars_per_page: int = MIN_CHARS_PER_PAGE_THRESHOLD,
    ) -> None:
        self._ocr        = ocr_service
        self._text_layer = text_layer or PyMuPDFTextLayer()
        self._timeout    = timeout
        self._min_chars  = min_chars_per_page

    async def extract(self, item: ClassifiedItem) -> ExtractionOutcome:
        t0 = time.monotonic()
        try:
            text, method = await asyncio.wait_for(self._extract(item), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Extraction timed out | file=%s index=%d timeout=%.0fs",
                item.original_name, item.original_index, self._timeout,
            )
            return ExtractionOutcome(
                original_index=item.original_index,
                error=f"timed out after {self._timeout:.0f}s",
            )
        except Exception as exc:
            logger.warning(
                "Extraction failed | file=%s index=%d error=%s",
                item.original_name, item.original_index, exc,
            )
            return ExtractionOutcome(original_index=item.original_index, error=str(exc))

        logger.info(
            "Extraction ok | file=%s index=%d method=%s chars=%d elapsed_ms=%.0f",
            item.original_name, item.original_index, method, len(text),
            (time.monotonic() - t0) * 1000,
        )
        return ExtractionOutcome(original_index=item.original_index, text=text, method=method)

    async def _extract(self, item: ClassifiedItem) -> tuple[str, str]:
        if item.kind is FileKind.PDF:
            return await self._extract_pdf(item)
        return await self._ocr_extract(item), self._ocr_name

    async def _extract_pdf(self, item: ClassifiedItem) -> tuple[str, str]:
        try:
            pages = await self._text_layer.extract_pages(item.data)
        except ExtractionError:
            if self._ocr is None:
                raise
            logger.info("Text layer unreadable, falling back to OCR | file=%s", item.original_name)
            return await self._ocr_extract(item), self._ocr_name

        total = sum(len(p) for p in pages)
        avg   = total / len(pages) if pages else 0.0
        text  = "\n\n".join(p for p in pages if p)

        if avg >= self._min_chars or self._ocr is None:
            return text, self._text_layer.strategy_name

        logger.info(
            "PDF looks scanned, using OCR service | file=%s pages=%d avg_chars=%.0f",
            item.original_name, len(pages), avg,
        )
        return await self._ocr_extract(item), self._ocr_name

    async def _ocr_extract(self, item: ClassifiedItem) -> str:
        if self._ocr is None:
            raise ExtractionError("No OCR service configured")
        return await self._ocr.extract(
            item.data, mime_type=item.mime_type, filename=item.original_name,
        )

    @property
    def _ocr_name(self) -> str:
        return self._ocr.strategy_name if self._ocr else "none"


def build_extraction_client() -> TextExtractionClient:
    """Create the extraction client from application settings."""
    from docbatch.core.config import settings

    ocr_service: BaseTextExtractor | None = None
    if settings.ocr_api_url:
        ocr_service = ClovaOCRExtractor(
            api_url=settings.ocr_api_url,
            secret_key=settings.ocr_secret_key,
            lang=settings.ocr_lang,
            timeout=settings.ocr_timeout_seconds,
        )
    else:
        logger.warning("OCR_API_URL not set, images will be stored without OCR text")

    return TextExtractionClient(
        ocr_service=ocr_service,
        timeout=settings.ocr_timeout_seconds,
        min_chars_per_page=settings.ocr_min_chars_per_page,
    )
