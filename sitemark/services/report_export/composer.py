"""
Report Composer

Builds the exported project report with PyMuPDF:

1. Optional cover page and executive summary / conclusion (template pages)
2. One page per rasterized drawing, sized to the drawing, image full-bleed
3. Photo appendix (only when photo markers are supplied): a "Photo Index"
   table followed by "Photos" entries grouped by (page, refNo)

Input is validated eagerly so bad requests are rejected before any rendering.
Photo failures are per marker: the entry degrades to a caption with
"Image unavailable" and the export carries on.
"""

import io
import logging
import math
from collections import OrderedDict
from datetime import datetime
from typing import List, Optional, Tuple

import fitz  # PyMuPDF
from PIL import Image, UnidentifiedImageError

from sitemark.config import settings
from sitemark.errors import ReportValidationError
from sitemark.models.report import DrawingPage, PhotoMarker, ReportProjectMeta, ReportRequest

from .layout import (
    BODY_SIZE,
    LETTER,
    LINE_HEIGHT,
    MUTED_COLOR,
    PageWriter,
    format_date_long,
    format_timestamp,
    safe_text,
    truncate_text,
)
from .photo_loader import DecodedDataUrl, PhotoLoadError, PhotoLoader, decode_data_url

logger = logging.getLogger(__name__)

PHOTO_MAX_HEIGHT = 320
PHOTO_GAP = 14
INDEX_ROW_HEIGHT = 18
UNAVAILABLE_TEXT = "Image unavailable"
CREATOR = "sitemark report export"


def _positive(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def photo_caption(ref_no: Optional[int], page: int, created_at: Optional[datetime]) -> str:
    ref = str(ref_no) if ref_no is not None else "-"
    return f"Ref {ref} | Page {page} | {format_timestamp(created_at)}"


def group_markers(markers: List[PhotoMarker]) -> "OrderedDict[Tuple[int, Optional[int]], List[PhotoMarker]]":
    """Group markers by (page, refNo); pages ascending, unnumbered refs last."""
    ordered = sorted(
        markers,
        key=lambda m: (
            m.page,
            m.ref_no is None,
            m.ref_no or 0,
            m.created_at.timestamp() if m.created_at else 0,
        ),
    )
    groups: "OrderedDict[Tuple[int, Optional[int]], List[PhotoMarker]]" = OrderedDict()
    for marker in ordered:
        groups.setdefault((marker.page, marker.ref_no), []).append(marker)
    return groups


class ReportComposer:
    """Composes one report PDF from drawing pages and photo markers."""

    def __init__(self, photo_loader: Optional[PhotoLoader] = None, include_cover: Optional[bool] = None):
        self.photo_loader = photo_loader or PhotoLoader()
        self.include_cover = settings.report_include_cover if include_cover is None else include_cover

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, request: ReportRequest) -> List[DecodedDataUrl]:
        """
        Reject unusable input before any rendering work.

        Returns:
            Decoded image payloads for each drawing page, in input order

        Raises:
            ReportValidationError: Missing project data, no pages, or a bad page
        """
        if not (request.project_id or "").strip():
            raise ReportValidationError("Missing projectId")
        if request.project is None or not (request.project.id or "").strip():
            raise ReportValidationError("Missing project")
        if not request.drawing_pages:
            raise ReportValidationError("At least one drawing page is required")

        decoded = []
        for index, page in enumerate(request.drawing_pages, start=1):
            if not (_positive(page.width) and _positive(page.height)):
                raise ReportValidationError(
                    f"Drawing page {index} has an invalid size",
                    details={"page": index, "width": page.width, "height": page.height},
                )
            try:
                image = decode_data_url(page.data_url)
                with Image.open(io.BytesIO(image.data)) as img:
                    img.verify()
            except (ValueError, UnidentifiedImageError, OSError) as e:
                raise ReportValidationError(
                    f"Drawing page {index} image could not be decoded",
                    details={"page": index, "error": str(e)},
                ) from e
            decoded.append(image)
        return decoded

    # =========================================================================
    # Template pages
    # =========================================================================

    def _add_cover_page(self, doc: fitz.Document, meta: ReportProjectMeta):
        writer = PageWriter(doc, LETTER)
        height = writer.height
        title = safe_text(meta.name, "Project Report")
        target = safe_text(meta.client_name or meta.project_owner or meta.owner_name or meta.owner_email, title)
        owner = safe_text(meta.project_owner or meta.owner_name or meta.owner_email, "Not specified")

        writer.centered(title, height * 0.3, 28, bold=True, color=(0.1, 0.1, 0.1))
        writer.centered(f"Project Report {target}", height * 0.38, 16, color=(0.25, 0.25, 0.25))
        writer.centered(f"Owner: {owner}", height * 0.46, 12, color=MUTED_COLOR)
        writer.centered(f"Generated on {format_date_long(datetime.now())}", height * 0.51, 12, color=MUTED_COLOR)

    def _add_summary_page(self, doc: fitz.Document, meta: ReportProjectMeta):
        writer = PageWriter(doc, LETTER)
        writer.heading("Executive Summary", size=18)
        summary = safe_text(meta.description) or (
            f"This report summarizes the project {safe_text(meta.name)} and documents the latest "
            f"review notes, annotations, and photo evidence."
        )
        writer.paragraph(summary)
        writer.y += 20
        writer.ensure_space(40)
        writer.heading("Conclusion", size=16, gap=8)
        writer.paragraph(safe_text(meta.conclusion, "No conclusion provided."))

    # =========================================================================
    # Drawings
    # =========================================================================

    def _add_drawing_pages(self, doc: fitz.Document, pages: List[DrawingPage], images: List[DecodedDataUrl]):
        for page, image in zip(pages, images):
            out = doc.new_page(width=float(page.width), height=float(page.height))
            out.insert_image(out.rect, stream=image.data, keep_proportion=False)

    # =========================================================================
    # Photo appendix
    # =========================================================================

    def _marker_description(self, marker: PhotoMarker) -> str:
        note = safe_text(marker.note)
        if note:
            return note
        return f"Photo on page {marker.page}"

    def _add_photo_index(self, doc: fitz.Document, markers: List[PhotoMarker]):
        writer = PageWriter(doc, LETTER)
        col_description = round(writer.content_width * 0.7)
        ref_x = writer.margin + col_description

        def header(title: str):
            writer.heading(title, size=18, gap=12)
            writer.text("Image Description", bold=True)
            writer.text("Ref No", x=ref_x, bold=True)
            writer.y += INDEX_ROW_HEIGHT
            writer.rule()

        header("Photo Index")
        ordered = sorted(markers, key=lambda m: m.created_at.timestamp() if m.created_at else 0)
        for marker in ordered:
            if writer.ensure_space(INDEX_ROW_HEIGHT):
                header("Photo Index (cont.)")
            description = truncate_text(self._marker_description(marker), BODY_SIZE, col_description - 10)
            writer.text(description)
            writer.text(str(marker.ref_no) if marker.ref_no is not None else "-", x=ref_x)
            writer.y += INDEX_ROW_HEIGHT

    def _draw_unavailable(self, writer: PageWriter):
        writer.ensure_space(LINE_HEIGHT)
        writer.text(UNAVAILABLE_TEXT, color=MUTED_COLOR)
        writer.y += LINE_HEIGHT

    def _draw_photo(self, writer: PageWriter, url: str) -> bool:
        try:
            photo = self.photo_loader.load(url)
        except PhotoLoadError as e:
            logger.warning(f"Photo unavailable ({url[:80]}): {e}")
            return False

        scale = min(writer.content_width / photo.width, PHOTO_MAX_HEIGHT / photo.height, 1.0)
        width, height = photo.width * scale, photo.height * scale
        writer.ensure_space(height + PHOTO_GAP)
        rect = fitz.Rect(writer.margin, writer.y, writer.margin + width, writer.y + height)
        try:
            writer.page.insert_image(rect, stream=photo.data)
        except (RuntimeError, ValueError) as e:
            logger.warning(f"Photo could not be embedded ({url[:80]}): {e}")
            return False
        writer.y += height + PHOTO_GAP
        return True

    def _add_photos(self, doc: fitz.Document, markers: List[PhotoMarker]) -> int:
        """Photo entries grouped by (page, refNo); returns the number of degraded markers."""
        writer = PageWriter(doc, LETTER)
        writer.heading("Photos", size=18, gap=12)
        degraded = 0

        for (page, ref_no), group in group_markers(markers).items():
            writer.ensure_space(LINE_HEIGHT * 3)
            writer.text(photo_caption(ref_no, page, group[0].created_at), bold=True)
            writer.y += LINE_HEIGHT

            for marker in group:
                note = safe_text(marker.note)
                if note:
                    writer.paragraph(note)
                urls = [u for u in marker.image_urls if (u or "").strip()]
                drawn = [self._draw_photo(writer, url) for url in urls]
                if not urls or not all(drawn):
                    degraded += 1
                    self._draw_unavailable(writer)
            writer.y += 8
            writer.ensure_space(LINE_HEIGHT)
            writer.rule(gap=12)
        return degraded

    # =========================================================================
    # Orchestration
    # =========================================================================

    def _set_metadata(self, doc: fitz.Document, request: ReportRequest):
        meta = request.project
        metadata = doc.metadata or {}
        metadata["title"] = f"{meta.display_name} - Project Report"
        metadata["author"] = safe_text(meta.project_owner or meta.owner_name or meta.owner_email, "")
        metadata["subject"] = safe_text(request.file_name, "Project Report")
        metadata["creator"] = CREATOR
        metadata["producer"] = "PyMuPDF"
        doc.set_metadata(metadata)

    def compose(self, request: ReportRequest) -> bytes:
        """
        Compose the report.

        Args:
            request: Project metadata, drawing pages and photo markers

        Returns:
            PDF bytes

        Raises:
            ReportValidationError: Input rejected before rendering
        """
        images = self.validate(request)
        include_cover = self.include_cover if request.include_cover is None else request.include_cover

        doc = fitz.open()
        try:
            if include_cover:
                self._add_cover_page(doc, request.project)
                self._add_summary_page(doc, request.project)

            self._add_drawing_pages(doc, request.drawing_pages, images)

            degraded = 0
            if request.photo_markers:
                self._add_photo_index(doc, request.photo_markers)
                degraded = self._add_photos(doc, request.photo_markers)

            self._set_metadata(doc, request)
            page_count = doc.page_count
            data = doc.tobytes(garbage=4, deflate=True)
        finally:
            doc.close()

        logger.info(
            f"Composed report for project {request.project_id}: {page_count} pages, "
            f"{len(request.photo_markers)} photo markers ({degraded} unavailable)"
        )
        return data
