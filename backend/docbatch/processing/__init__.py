"""
Document Processing Package
════════════════════════════

Per-file work done inside one batch unit:

  Classification → Text Extraction → Image Assembly → Embedding

Modules
───────
  classifier.py  Sorts raw inputs into PDFs, images and rejected files
  ocr.py         PyMuPDF text layer → remote OCR service, per-file isolation
  assembler.py   Image group → one paginated PDF in original_index order
  embeddings.py  Single-text OpenAI embeddings with retry
"""

from docbatch.processing.assembler import ImageSetAssembler
from docbatch.processing.classifier import classify
from docbatch.processing.embeddings import EmbeddingService
from docbatch.processing.ocr import TextExtractionClient

__all__ = [
    "ImageSetAssembler",
    "classify",
    "EmbeddingService",
    "TextExtractionClient",
]
