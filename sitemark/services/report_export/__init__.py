"""
Report Export

Turns rasterized drawing pages plus photo markers into one downloadable PDF
and publishes it with provenance history.

Components:
- PhotoLoader: Resolves photo image references (data URLs, own bucket, http)
- ReportComposer: Builds the report PDF with PyMuPDF
- ExportPublisher: Stores the PDF, mints a download URL, records history
"""

from .photo_loader import PhotoLoader, PhotoLoadError, LoadedPhoto, decode_data_url
from .composer import ReportComposer
from .publisher import ExportPublisher, PublishedExport, sanitize_file_name

__all__ = [
    "PhotoLoader",
    "PhotoLoadError",
    "LoadedPhoto",
    "decode_data_url",
    "ReportComposer",
    "ExportPublisher",
    "PublishedExport",
    "sanitize_file_name",
]
