"""
Report export input models.

These are the composer-facing shapes; the HTTP layer validates the JSON body
with pydantic and converts it with ``to_report_request()``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class ReportProjectMeta:
    """Project metadata printed on the cover and summary pages."""

    id: str
    name: Optional[str] = None
    client_name: Optional[str] = None
    project_owner: Optional[str] = None
    owner_name: Optional[str] = None
    owner_email: Optional[str] = None
    description: Optional[str] = None
    conclusion: Optional[str] = None

    @property
    def display_name(self) -> str:
        return (self.name or "").strip() or "Project"


@dataclass
class DrawingPage:
    """One rasterized drawing page (pixel size + image data URL)."""

    width: float
    height: float
    data_url: str


@dataclass
class PhotoMarker:
    """Photo marker bound to a drawing page."""

    id: str
    page: int
    ref_no: Optional[int] = None
    created_at: Optional[datetime] = None
    note: Optional[str] = None
    image_urls: List[str] = field(default_factory=list)


@dataclass
class ReportRequest:
    """Everything the composer needs for one export."""

    project_id: str
    project: Optional[ReportProjectMeta]
    drawing_pages: List[DrawingPage]
    photo_markers: List[PhotoMarker] = field(default_factory=list)
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    pdf_id: Optional[str] = None
    include_cover: Optional[bool] = None
