"""
Export router.

Endpoints:
- POST /project-report - Compose, publish and return the project report PDF

The PDF is returned directly for "download now"; the durable link is sent
in the ``X-Export-Url`` header.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import sessionmaker

from sitemark.config import settings
from sitemark.db import get_session_factory
from sitemark.errors import ReportValidationError
from sitemark.models.report import DrawingPage, PhotoMarker, ReportProjectMeta, ReportRequest
from sitemark.routers.auth import get_current_user
from sitemark.services.blob_storage import DatabaseBlobStorage
from sitemark.services.report_export import ExportPublisher, PhotoLoader, ReportComposer
from sitemark.utils.timestamps import coerce_datetime

logger = logging.getLogger(__name__)

router = APIRouter()

EXPORT_URL_HEADER = "X-Export-Url"


# =============================================================================
# Request Models
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProjectMetaBody(CamelModel):
    id: Optional[str] = None
    name: Optional[str] = None
    client_name: Optional[str] = Field(default=None, alias="clientName")
    project_owner: Optional[str] = Field(default=None, alias="projectOwner")
    owner_name: Optional[str] = Field(default=None, alias="ownerName")
    owner_email: Optional[str] = Field(default=None, alias="ownerEmail")
    description: Optional[str] = None
    conclusion: Optional[str] = None


class DrawingPageBody(CamelModel):
    width: float
    height: float
    data_url: str = Field(alias="dataUrl")


class PhotoMarkerBody(CamelModel):
    id: str
    page: int
    ref_no: Optional[int] = Field(default=None, alias="refNo")
    created_at: Optional[Union[datetime, float]] = Field(default=None, alias="createdAt")
    note: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list, alias="imageUrls")


def _marker_created_at(marker: PhotoMarkerBody) -> Optional[datetime]:
    try:
        return coerce_datetime(marker.created_at, default_now=False)
    except ValueError as e:
        raise ReportValidationError(
            f"Photo marker {marker.id} has an invalid createdAt",
            details={"marker": marker.id},
        ) from e


class ProjectReportRequest(CamelModel):
    project_id: Optional[str] = Field(default=None, alias="projectId")
    pdf_id: Optional[str] = Field(default=None, alias="pdfId")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_url: Optional[str] = Field(default=None, alias="fileUrl")
    include_cover: Optional[bool] = Field(default=None, alias="includeCover")
    project: Optional[ProjectMetaBody] = None
    drawing_pages: List[DrawingPageBody] = Field(default_factory=list, alias="drawingPages")
    photo_markers: List[PhotoMarkerBody] = Field(default_factory=list, alias="photoMarkers")

    def to_report_request(self) -> ReportRequest:
        project = None
        if self.project is not None:
            project = ReportProjectMeta(
                id=(self.project.id or "").strip(),
                name=self.project.name,
                client_name=self.project.client_name,
                project_owner=self.project.project_owner,
                owner_name=self.project.owner_name,
                owner_email=self.project.owner_email,
                description=self.project.description,
                conclusion=self.project.conclusion,
            )
        return ReportRequest(
            project_id=(self.project_id or "").strip(),
            project=project,
            drawing_pages=[DrawingPage(p.width, p.height, p.data_url) for p in self.drawing_pages],
            photo_markers=[
                PhotoMarker(
                    id=m.id,
                    page=m.page,
                    ref_no=m.ref_no,
                    created_at=_marker_created_at(m),
                    note=m.note,
                    image_urls=list(m.image_urls),
                )
                for m in self.photo_markers
            ],
            file_name=self.file_name,
            file_url=(self.file_url or "").strip() or None,
            pdf_id=self.pdf_id,
            include_cover=self.include_cover,
        )


# =============================================================================
# Helper Functions
# =============================================================================

def enforce_payload_limit(request: Request):
    """Reject oversized export bodies before they are parsed."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.max_export_payload_bytes:
        raise HTTPException(status_code=400, detail="Export payload too large")


def content_disposition(file_name: str) -> str:
    ascii_name = file_name.encode("ascii", "replace").decode("ascii").replace('"', "_")
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(file_name)}"


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/project-report", dependencies=[Depends(enforce_payload_limit)])
def export_project_report(
    body: ProjectReportRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """
    Compose and publish a project report.

    Required: projectId, project, and at least one drawing page. Validation
    errors return 400 before any rendering or storage work.
    """
    report = body.to_report_request()
    storage = DatabaseBlobStorage(session_factory)

    composer = ReportComposer(photo_loader=PhotoLoader(storage=storage))
    pdf = composer.compose(report)

    publisher = ExportPublisher(storage=storage, session_factory=session_factory)
    published = publisher.publish(
        pdf,
        project_id=report.project_id,
        exported_by=user["uid"],
        file_name=report.file_name,
        file_url=report.file_url,
        pdf_id=report.pdf_id,
    )

    logger.info(f"Export {published.storage_path} delivered to {user['uid']}")
    return Response(
        content=published.data,
        media_type="application/pdf",
        headers={
            "Content-Disposition": content_disposition(published.file_name),
            EXPORT_URL_HEADER: published.url,
        },
    )
