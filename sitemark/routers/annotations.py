"""
Annotation router.

Endpoints (all require a caller identity):
- POST /open - Open (or create) the FileRecord for a remote document
- GET /{file_id}/artifacts - Load every annotation grouped by page
- POST /{file_id}/pages/{page}/strokes - Save a stroke, returns refNo
- POST /{file_id}/pages/{page}/notes - Create a note
- PUT /{file_id}/pages/{page}/notes/{note_id} - Update a note
- DELETE /{file_id}/pages/{page}/notes/{note_id} - Delete a note
- POST /{file_id}/pages/{page}/pins - Save a camera pin, returns refNo
- DELETE /{file_id}/pages/{page}/pins/{pin_id} - Delete a camera pin
- POST /{file_id}/pages/{page}/pins/{pin_id}/image - Upload a pin photo
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import sessionmaker

from sitemark.db import get_session_factory
from sitemark.models.artifacts import CameraPinInput, DocPoint, NormRect, NoteInput, StrokeInput
from sitemark.routers.auth import get_current_user
from sitemark.services.annotation_store import AnnotationStore
from sitemark.utils.timestamps import coerce_datetime

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Request/Response Models
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PointBody(BaseModel):
    x: float
    y: float


class RectBody(BaseModel):
    x: float
    y: float
    w: float
    h: float


class OpenFileRequest(CamelModel):
    file_url: str = Field(alias="fileUrl")
    file_name: str = Field(alias="fileName")
    project_id: Optional[str] = Field(default=None, alias="projectId")
    override_key: Optional[str] = Field(default=None, alias="overrideKey")


class OpenFileResponse(CamelModel):
    file_id: str = Field(alias="fileId")
    created: bool


class StrokeBody(CamelModel):
    color: str = "#000000"
    width: float = 1.0
    tool_type: int = Field(default=0, alias="toolType")
    is_eraser: bool = Field(default=False, alias="isEraser")
    points: List[PointBody]
    pressure_values: List[float] = Field(default_factory=list, alias="pressureValues")


class NoteBody(CamelModel):
    id: Optional[str] = None
    ann_type: int = Field(default=0, alias="annType")
    position: PointBody
    text: str = ""
    color: str = "#000000"
    width: float = 150.0
    height: float = 100.0


class CameraPinBody(CamelModel):
    id: str
    position: PointBody
    image_path: str = Field(default="", alias="imagePath")
    created_at: Optional[Union[datetime, float]] = Field(default=None, alias="createdAt")
    note: Optional[str] = None
    rect: Optional[RectBody] = None
    norm_x: Optional[float] = Field(default=None, alias="normX")
    norm_y: Optional[float] = Field(default=None, alias="normY")
    norm_w: Optional[float] = Field(default=None, alias="normW")
    norm_h: Optional[float] = Field(default=None, alias="normH")
    remote_image_url: Optional[str] = Field(default=None, alias="remoteImageUrl")


class RefNoResponse(CamelModel):
    ref_no: int = Field(alias="refNo")


# =============================================================================
# Helper Functions
# =============================================================================

def _point(body: PointBody) -> DocPoint:
    return DocPoint(body.x, body.y)


def _note_input(body: NoteBody, note_id: Optional[str] = None) -> NoteInput:
    return NoteInput(
        id=note_id or body.id or "",
        ann_type=body.ann_type,
        position=_point(body.position),
        text=body.text,
        color=body.color,
        width=body.width,
        height=body.height,
    )


def _store(
    file_id: str,
    user: Dict[str, Any],
    session_factory: sessionmaker,
) -> AnnotationStore:
    return AnnotationStore.for_file_id(file_id, session_factory=session_factory, author=user)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/open", response_model=OpenFileResponse, response_model_by_alias=True)
def open_file(
    request: OpenFileRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """
    Open the FileRecord for a remote document, creating it on first use.

    The same object referenced through a different storage dialect or a
    refreshed access token opens the same record.
    """
    store = AnnotationStore(
        request.file_url,
        request.file_name,
        author=user,
        project_id=request.project_id,
        override_key=request.override_key,
        session_factory=session_factory,
    )
    created = store.init()
    return OpenFileResponse(file_id=store.file_id, created=created)


@router.get("/{file_id}/artifacts")
def load_artifacts(
    file_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Every parsable annotation for the file, keyed by page number."""
    pages = _store(file_id, user, session_factory).load_all()
    return {
        "fileId": file_id,
        "pages": {str(page): [item.to_dict() for item in items] for page, items in pages.items()},
    }


@router.post("/{file_id}/pages/{page}/strokes", response_model=RefNoResponse, response_model_by_alias=True)
def save_stroke(
    file_id: str,
    page: int,
    body: StrokeBody,
    user: Dict[str, Any] = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Save an immutable stroke."""
    stroke = StrokeInput(
        color=body.color,
        width=body.width,
        tool_type=body.tool_type,
        is_eraser=body.is_eraser,
        points=[_point(p) for p in body.points],
        pressure_values=body.pressure_values,
    )
    ref_no = _store(file_id, user, session_factory).save_stroke(page, stroke)
    return RefNoResponse(ref_no=ref_no)


@router.post("/{file_id}/pages/{page}/notes")
def create_note(
    file_id: str,
    page: int,
    body: NoteBody,
    user: Dict[str, Any] = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Create a note (merges into an existing note with the same id)."""
    note = _note_input(body)
    _store(file_id, user, session_factory).create_note(page, note)
    return {"id": note.id}


@router.put("/{file_id}/pages/{page}/notes/{note_id}")
def update_note(
    file_id: str,
    page: int,
    note_id: str,
    body: NoteBody,
    user: Dict[str, Any] = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Update a note; last write wins."""
    _store(file_id, user, session_factory).update_note(page, _note_input(body, note_id))
    return {"id": note_id}


@router.delete("/{file_id}/pages/{page}/notes/{note_id}")
def delete_note(
    file_id: str,
    page: int,
    note_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Hard-delete a note."""
    deleted = _store(file_id, user, session_factory).delete_note(page, note_id)
    return {"deleted": deleted}


@router.post("/{file_id}/pages/{page}/pins", response_model=RefNoResponse, response_model_by_alias=True)
def save_camera_pin(
    file_id: str,
    page: int,
    body: CameraPinBody,
    user: Dict[str, Any] = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Save a camera pin; remoteImageUrl, when given, replaces the local image path."""
    try:
        created_at = coerce_datetime(body.created_at)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid createdAt") from e

    pin = CameraPinInput(
        id=body.id,
        position=_point(body.position),
        image_path=body.image_path,
        created_at=created_at,
        note=body.note,
        rect=NormRect(body.rect.x, body.rect.y, body.rect.w, body.rect.h) if body.rect else None,
        norm_x=body.norm_x,
        norm_y=body.norm_y,
        norm_w=body.norm_w,
        norm_h=body.norm_h,
    )
    ref_no = _store(file_id, user, session_factory).save_camera_pin(page, pin, body.remote_image_url)
    return RefNoResponse(ref_no=ref_no)


@router.delete("/{file_id}/pages/{page}/pins/{pin_id}")
def delete_camera_pin(
    file_id: str,
    page: int,
    pin_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Hard-delete a camera pin."""
    deleted = _store(file_id, user, session_factory).delete_camera_pin(page, pin_id)
    return {"deleted": deleted}


@router.post("/{file_id}/pages/{page}/pins/{pin_id}/image")
async def upload_camera_image(
    file_id: str,
    page: int,
    pin_id: str,
    file: UploadFile = File(...),
    user: Dict[str, Any] = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Upload a pin photo; returns its download URL."""
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty image upload")
    url = _store(file_id, user, session_factory).upload_camera_image(page, pin_id, data, file.content_type)
    logger.info(f"Uploaded pin image for {file_id}/{page}/{pin_id} ({len(data)} bytes)")
    return {"url": url}
