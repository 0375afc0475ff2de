"""
docpipe — document processing pipeline orchestrator.

Drives each uploaded document through metadata extraction, OCR, sentiment
analysis and result persistence, one checkpointed execution per document.
"""

__version__ = "1.0.0"
