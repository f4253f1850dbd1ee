"""Batch document ingestion: classify, extract, assemble, store, persist."""

__version__ = "1.0.0"
