"""
sitemark - annotation persistence and report export backend.

This package provides:
- Stable content-derived ids for remote drawing PDFs
- Per-page annotation storage (strokes, notes, camera pins)
- Transactional per-file reference numbers
- Server-side report composition (PyMuPDF) and publishing with export history
"""

__version__ = "1.0.0"
