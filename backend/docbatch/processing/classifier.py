"""
File Classifier

Sorts raw batch inputs into three ordered partitions:

  pdfs      → each becomes its own logical document
  images    → together become one assembled multi-page document
  rejected  → reported back, never processed

Kind detection order:
  1. Declared MIME type (client hint) if it is specific
  2. Filename extension, case-insensitive, against a closed allow-list

Generic hints such as application/octet-stream carry no information and
fall through to the extension check. Size limits are enforced here so an
oversized file never reaches the OCR service or the artifact store.
"""

from __future__ import annotations

import logging
from typing import Sequence

from docbatch.core.exceptions import NoValidInputError
from docbatch.core.types import (
    Classification,
    ClassifiedItem,
    FileKind,
    RawInput,
    RejectedInput,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Allow-lists: exactly two families
# ---------------------------------------------------------------------------

PDF_MIME_TYPES: frozenset[str] = frozenset({"application/pdf", "application/x-pdf"})
PDF_EXTENSIONS: frozenset[str] = frozenset({".pdf"})

IMAGE_MIME_TYPES: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/jpg":  ".jpg",
    "image/pjpeg": ".jpg",
    "image/png":  ".png",
    "image/gif":  ".gif",
    "image/bmp":  ".bmp",
    "image/webp": ".webp",
    "image/tiff": ".tiff",
}
IMAGE_EXTENSIONS: dict[str, str] = {
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png":  "image/png",
    ".gif":  "image/gif",
    ".bmp":  "image/bmp",
    ".webp": "image/webp",
    ".tif":  "image/tiff",
    ".tiff": "image/tiff",
}

_GENERIC_MIME_TYPES: frozenset[str] = frozenset(
    {"", "application/octet-stream", "binary/octet-stream", "application/unknown"}
)

REASON_UNSUPPORTED = "unsupported file type"
REASON_EMPTY       = "empty file"
REASON_TOO_LARGE   = "file too large"


def get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    parts = basename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 and parts[-1] else ""


def _normalize_mime(declared: str | None) -> str:
    if not declared:
        return ""
    return declared.split(";", 1)[0].strip().lower()


def detect_kind(raw: RawInput) -> tuple[FileKind, str, str] | None:
    """
    Determine (kind, mime_type, extension) for one input, or None if it
    belongs to neither family.
    """
    ext  = get_extension(raw.original_name)
    mime = _normalize_mime(raw.declared_mime)

    if mime and mime not in _GENERIC_MIME_TYPES:
        if mime in PDF_MIME_TYPES:
            return FileKind.PDF, "application/pdf", ".pdf"
        if mime in IMAGE_MIME_TYPES:
            canonical = "image/jpeg" if mime in ("image/jpg", "image/pjpeg") else mime
            return FileKind.IMAGE, canonical, ext if ext in IMAGE_EXTENSIONS else IMAGE_MIME_TYPES[mime]
        # A specific but foreign hint (e.g. application/x-msdownload) still
        # gets the extension check; browsers often mislabel files.

    if ext in PDF_EXTENSIONS:
        return FileKind.PDF, "application/pdf", ".pdf"
    if ext in IMAGE_EXTENSIONS:
        return FileKind.IMAGE, IMAGE_EXTENSIONS[ext], ext
    return None


def classify(
    inputs: Sequence[RawInput],
    *,
    max_file_size_bytes: int | None = None,
) -> Classification:
    """
    Partition inputs, preserving batch order inside every partition.

    Raises:
        NoValidInputError: if both accepted partitions end up empty.
    """
    result = Classification()

    for index, raw in enumerate(inputs):
        if raw.size_bytes == 0:
            result.rejected.append(RejectedInput(index, raw.original_name, REASON_EMPTY))
            continue

        if max_file_size_bytes is not None and raw.size_bytes > max_file_size_bytes:
            result.rejected.append(RejectedInput(index, raw.original_name, REASON_TOO_LARGE))
            continue

        detected = detect_kind(raw)
        if detected is None:
            result.rejected.append(RejectedInput(index, raw.original_name, REASON_UNSUPPORTED))
            continue

        kind, mime, ext = detected
        item = ClassifiedItem(
            kind=kind,
            original_index=index,
            raw=raw,
            mime_type=mime,
            extension=ext,
        )
        (result.pdfs if kind is FileKind.PDF else result.images).append(item)

    logger.info(
        "Classified | inputs=%d pdfs=%d images=%d rejected=%d",
        len(inputs), len(result.pdfs), len(result.images), len(result.rejected),
    )

    if result.accepted_count == 0:
        raise NoValidInputError(result.rejected)

    return result
