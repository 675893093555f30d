"""
Tests for the Report Composer.

Tests:
- Eager validation of project data and drawing pages
- Drawing pages keep their order and size
- Optional cover and summary pages
- Photo appendix layout and graceful degradation for unreachable images

Run with: python -m pytest sitemark/tests/test_report_composer.py -v
"""

from datetime import datetime
from unittest.mock import MagicMock

import fitz  # PyMuPDF
import pytest
import requests

from sitemark.errors import ReportValidationError
from sitemark.models.report import DrawingPage, PhotoMarker, ReportProjectMeta, ReportRequest
from sitemark.services.report_export import ReportComposer
from sitemark.services.report_export.composer import UNAVAILABLE_TEXT, group_markers, photo_caption
from sitemark.services.report_export.photo_loader import PhotoLoader, decode_data_url
from sitemark.tests.conftest import make_png, png_data_url


def offline_loader(storage=None):
    """Photo loader whose HTTP client always fails."""
    http = MagicMock()
    http.get.side_effect = requests.ConnectionError("network unreachable")
    return PhotoLoader(storage=storage, http=http)


def make_request(pages=None, markers=None, **kwargs):
    return ReportRequest(
        project_id=kwargs.pop("project_id", "P1"),
        project=kwargs.pop("project", ReportProjectMeta(id="P1", name="Harbour Tower")),
        drawing_pages=pages if pages is not None else [DrawingPage(300, 200, png_data_url(60, 40))],
        photo_markers=markers or [],
        file_name="plan.pdf",
        **kwargs,
    )


def open_pdf(data: bytes) -> fitz.Document:
    return fitz.open(stream=data, filetype="pdf")


def all_text(doc: fitz.Document) -> str:
    return "\n".join(page.get_text() for page in doc)


@pytest.fixture
def composer():
    return ReportComposer(photo_loader=offline_loader(), include_cover=False)


class TestValidation:
    """Tests for validate()."""

    def test_no_pages(self, composer):
        with pytest.raises(ReportValidationError, match="drawing page"):
            composer.compose(make_request(pages=[]))

    def test_missing_project(self, composer):
        with pytest.raises(ReportValidationError):
            composer.compose(make_request(project=None))

    def test_blank_project_id(self, composer):
        with pytest.raises(ReportValidationError):
            composer.compose(make_request(project_id="  "))

    def test_project_without_id(self, composer):
        with pytest.raises(ReportValidationError):
            composer.compose(make_request(project=ReportProjectMeta(id="")))

    @pytest.mark.parametrize("data_url", [
        "https://example.com/page.png",
        "data:image/png;base64,",
        "data:image/png;base64,!!!not-base64!!!",
        "data:image/png;base64,aGVsbG8gd29ybGQ=",
    ])
    def test_bad_page_image(self, composer, data_url):
        """Non-data URLs, empty or invalid payloads and non-images are rejected."""
        with pytest.raises(ReportValidationError):
            composer.compose(make_request(pages=[DrawingPage(300, 200, data_url)]))

    @pytest.mark.parametrize("width,height", [(-1, 200), (300, 0), (float("nan"), 200), (True, 200)])
    def test_bad_page_size(self, composer, width, height):
        with pytest.raises(ReportValidationError):
            composer.compose(make_request(pages=[DrawingPage(width, height, png_data_url())]))

    def test_second_page_reported(self, composer):
        pages = [DrawingPage(300, 200, png_data_url()), DrawingPage(300, 200, "data:,")]
        with pytest.raises(ReportValidationError) as exc_info:
            composer.validate(make_request(pages=pages))
        assert exc_info.value.details["page"] == 2


class TestDrawingPages:
    """Tests for drawing page rendering."""

    def test_single_page_matches_size(self, composer):
        """One drawing gives one page at the drawing's size."""
        doc = open_pdf(composer.compose(make_request()))
        assert doc.page_count == 1
        assert doc[0].rect.width == pytest.approx(300)
        assert doc[0].rect.height == pytest.approx(200)

    def test_page_order_preserved(self, composer):
        pages = [
            DrawingPage(300, 200, png_data_url(30, 20, (255, 0, 0))),
            DrawingPage(400, 500, png_data_url(40, 50, (0, 255, 0))),
            DrawingPage(250, 250, png_data_url(25, 25, (0, 0, 255))),
        ]
        doc = open_pdf(composer.compose(make_request(pages=pages)))
        assert [(p.rect.width, p.rect.height) for p in doc] == [(300, 200), (400, 500), (250, 250)]

    def test_metadata(self, composer):
        doc = open_pdf(composer.compose(make_request()))
        assert doc.metadata["title"] == "Harbour Tower - Project Report"


class TestCoverPages:
    """Tests for the optional cover and summary pages."""

    def test_include_cover_from_request(self, composer):
        """Cover and summary come before the drawing."""
        doc = open_pdf(composer.compose(make_request(include_cover=True)))
        assert doc.page_count == 3
        assert "Harbour Tower" in doc[0].get_text()
        assert "Executive Summary" in doc[1].get_text()
        assert "No conclusion provided." in doc[1].get_text()

    def test_default_from_composer(self):
        composer = ReportComposer(photo_loader=offline_loader(), include_cover=True)
        doc = open_pdf(composer.compose(make_request()))
        assert doc.page_count == 3


class TestPhotoAppendix:
    """Tests for the photo index and photo entries."""

    def test_marker_from_data_url(self, composer):
        """One marker adds an index page and a photo page."""
        marker = PhotoMarker(
            id="m1",
            page=1,
            ref_no=4,
            created_at=datetime(2024, 5, 1, 9, 30),
            note="Cracked slab edge",
            image_urls=[png_data_url(80, 60)],
        )
        doc = open_pdf(composer.compose(make_request(markers=[marker])))
        assert doc.page_count == 3
        assert "Photo Index" in doc[1].get_text()
        assert "Cracked slab edge" in doc[1].get_text()
        photos = doc[2].get_text()
        assert "Ref 4 | Page 1 | 2024-05-01 09:30" in photos
        assert UNAVAILABLE_TEXT not in photos
        assert len(doc[2].get_images()) == 1

    def test_unreachable_image_degrades(self, composer):
        """A failing fetch still produces the report with a placeholder line."""
        marker = PhotoMarker(
            id="m1", page=2, ref_no=7, image_urls=["https://photos.example.com/missing.jpg"],
        )
        doc = open_pdf(composer.compose(make_request(markers=[marker])))
        assert doc.page_count == 3
        text = all_text(doc)
        assert UNAVAILABLE_TEXT in text
        assert "Ref 7 | Page 2 | Unknown date" in text

    def test_marker_without_images_degrades(self, composer):
        marker = PhotoMarker(id="m1", page=1, ref_no=1, image_urls=[])
        doc = open_pdf(composer.compose(make_request(markers=[marker])))
        assert UNAVAILABLE_TEXT in all_text(doc)

    def test_own_stored_photo(self, storage):
        """Photos stored in this service's bucket are read without HTTP."""
        blob = storage.put("projects/P1/pins/1/a.png", make_png(50, 50), content_type="image/png")
        loader = offline_loader(storage)
        composer = ReportComposer(photo_loader=loader, include_cover=False)
        marker = PhotoMarker(id="m1", page=1, ref_no=2, image_urls=[blob.url])

        doc = open_pdf(composer.compose(make_request(markers=[marker])))
        assert UNAVAILABLE_TEXT not in all_text(doc)
        loader.http.get.assert_not_called()

    def test_many_markers_continue_index(self, composer):
        markers = [
            PhotoMarker(id=f"m{i}", page=1, ref_no=i, note=f"Item {i}", image_urls=[])
            for i in range(1, 61)
        ]
        doc = open_pdf(composer.compose(make_request(markers=markers)))
        assert "Photo Index (cont.)" in all_text(doc)


class TestHelpers:
    """Tests for caption and grouping helpers."""

    def test_photo_caption(self):
        assert photo_caption(None, 3, None) == "Ref - | Page 3 | Unknown date"

    def test_group_markers(self):
        markers = [
            PhotoMarker(id="a", page=2, ref_no=1),
            PhotoMarker(id="b", page=1, ref_no=None),
            PhotoMarker(id="c", page=1, ref_no=5),
            PhotoMarker(id="d", page=1, ref_no=5),
        ]
        groups = group_markers(markers)
        assert list(groups) == [(1, 5), (1, None), (2, 1)]
        assert [m.id for m in groups[(1, 5)]] == ["c", "d"]

    def test_decode_plain_data_url(self):
        decoded = decode_data_url("data:text/plain,hello%20world")
        assert decoded.mime == "text/plain"
        assert decoded.data == b"hello world"
