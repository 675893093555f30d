"""
Annotation artifact models.

Three variants form a tagged union on the ``type`` discriminant:

- ``stroke``     - freehand ink, immutable, labelled with a refNo
- ``annotation`` - text / sticky note, mutable, keyed by caller id
- ``cameraPin``  - photo marker, labelled with a refNo

Stored documents are untrusted input. The ``parse_*`` functions coerce each
field and raise ArtifactParseError on documents that cannot be represented;
bulk loaders skip those records instead of failing.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, List, Optional, Union

from sitemark.utils.colors import OPAQUE_BLACK, color_int_to_hex


STROKE = "stroke"
NOTE = "annotation"
CAMERA_PIN = "cameraPin"

DEFAULT_NOTE_WIDTH = 150.0
DEFAULT_NOTE_HEIGHT = 100.0


class ArtifactParseError(ValueError):
    """Stored document cannot be parsed into an artifact variant."""


class NoteType(IntEnum):
    """annType values used by the viewer."""

    TEXT = 0
    STICKY = 1


# =============================================================================
# Geometry
# =============================================================================

@dataclass
class DocPoint:
    """Point in PDF document space."""

    x: float
    y: float

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}


@dataclass
class NormRect:
    """Rectangle in page-normalised (0.0-1.0) coordinates."""

    x: float
    y: float
    w: float
    h: float

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass
class BBox:
    """Axis-aligned bounding box of a stroke."""

    min_x: float = 0.0
    min_y: float = 0.0
    max_x: float = 0.0
    max_y: float = 0.0

    @classmethod
    def from_points(cls, points: List[DocPoint]) -> "BBox":
        if not points:
            return cls()
        xs = [p.x for p in points]
        ys = [p.y for p in points]
        return cls(min(xs), min(ys), max(xs), max(ys))

    def to_dict(self) -> Dict[str, float]:
        return {"minX": self.min_x, "minY": self.min_y, "maxX": self.max_x, "maxY": self.max_y}


def is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # ints beyond float range
        return False


def clamp01(value: float) -> float:
    if not is_finite_number(value):
        return 0.0
    return min(1.0, max(0.0, float(value)))


def normalize_rect(rect: Optional[NormRect]) -> Optional[NormRect]:
    """Validate a normalised rect; non-finite or empty rects are dropped."""
    if rect is None:
        return None
    values = (rect.x, rect.y, rect.w, rect.h)
    if not all(is_finite_number(v) for v in values):
        return None
    if rect.w <= 0 or rect.h <= 0:
        return None
    return NormRect(clamp01(rect.x), clamp01(rect.y), clamp01(rect.w), clamp01(rect.h))


# =============================================================================
# Write inputs
# =============================================================================

@dataclass
class StrokeInput:
    """Stroke as captured by the viewer."""

    color: str
    width: float
    tool_type: int
    is_eraser: bool
    points: List[DocPoint]
    pressure_values: List[float] = field(default_factory=list)


@dataclass
class NoteInput:
    """Note as captured by the viewer; id is supplied by the caller."""

    id: str
    ann_type: int
    position: DocPoint
    text: str
    color: str
    width: float
    height: float


@dataclass
class CameraPinInput:
    """Photo marker as captured by the viewer."""

    id: str
    position: DocPoint
    image_path: str
    created_at: datetime
    note: Optional[str] = None
    rect: Optional[NormRect] = None
    norm_x: Optional[float] = None
    norm_y: Optional[float] = None
    norm_w: Optional[float] = None
    norm_h: Optional[float] = None

    def resolved_rect(self) -> Optional[NormRect]:
        """Explicit rect wins; otherwise build one from the norm* fields."""
        rect = normalize_rect(self.rect)
        if rect:
            return rect
        norms = (self.norm_x, self.norm_y, self.norm_w, self.norm_h)
        if all(is_finite_number(v) for v in norms):
            return normalize_rect(NormRect(*norms))
        return None


# =============================================================================
# Stored variants
# =============================================================================

@dataclass
class StrokeArtifact:
    """Parsed stroke."""

    page: int
    color: int
    width: float
    tool_type: int
    is_eraser: bool
    points: List[DocPoint]
    pressure_values: List[float]
    ref_no: Optional[int] = None
    bbox: Optional[BBox] = None
    author: Optional[Dict[str, Any]] = None
    created_at: Optional[int] = None  # epoch milliseconds
    updated_at: Optional[int] = None
    type: str = STROKE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "refNo": self.ref_no,
            "page": self.page,
            "color": self.color,
            "colorHex": color_int_to_hex(self.color),
            "width": self.width,
            "toolType": self.tool_type,
            "isEraser": self.is_eraser,
            "points": [p.to_dict() for p in self.points],
            "pressureValues": list(self.pressure_values),
            "bbox": (self.bbox or BBox.from_points(self.points)).to_dict(),
            "author": self.author,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class NoteArtifact:
    """Parsed text / sticky note."""

    id: str
    page: int
    ann_type: int
    position: DocPoint
    text: str
    color: int
    width: float
    height: float
    author: Optional[Dict[str, Any]] = None
    type: str = NOTE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "page": self.page,
            "annType": self.ann_type,
            "position": self.position.to_dict(),
            "text": self.text,
            "color": self.color,
            "colorHex": color_int_to_hex(self.color),
            "width": self.width,
            "height": self.height,
            "author": self.author,
        }


@dataclass
class CameraPinArtifact:
    """Parsed photo marker."""

    id: str
    page: int
    position: DocPoint
    image_path: str
    created_at: int  # epoch milliseconds
    ref_no: Optional[int] = None
    note: Optional[str] = None
    rect: Optional[NormRect] = None
    author: Optional[Dict[str, Any]] = None
    type: str = CAMERA_PIN

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "id": self.id,
            "refNo": self.ref_no,
            "page": self.page,
            "position": self.position.to_dict(),
            "imagePath": self.image_path,
            "createdAt": self.created_at,
            "note": self.note,
            "author": self.author,
        }
        if self.rect:
            data["rect"] = self.rect.to_dict()
            data.update(normX=self.rect.x, normY=self.rect.y, normW=self.rect.w, normH=self.rect.h)
        return data


Artifact = Union[StrokeArtifact, NoteArtifact, CameraPinArtifact]


# =============================================================================
# Defensive parsing
# =============================================================================

def _number(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return number if math.isfinite(number) else default


def _int(value: Any, default: int) -> int:
    return int(_number(value, default))


def _optional_int(value: Any) -> Optional[int]:
    if is_finite_number(value):
        return int(value)
    return None


def _point(value: Any, strict: bool = False) -> DocPoint:
    if not isinstance(value, dict):
        if strict:
            raise ArtifactParseError(f"point must be an object, got {type(value).__name__}")
        return DocPoint(0.0, 0.0)
    return DocPoint(_number(value.get("x"), 0.0), _number(value.get("y"), 0.0))


def _color(value: Any) -> int:
    if is_finite_number(value):
        return int(value)
    return OPAQUE_BLACK


def _author(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def _require_mapping(data: Any, kind: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ArtifactParseError(f"{kind} document must be an object, got {type(data).__name__}")
    return data


def to_epoch_ms(value: Any) -> Optional[int]:
    """Coerce datetimes, ISO strings and epoch numbers to epoch milliseconds."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if is_finite_number(value):
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return to_epoch_ms(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def parse_stroke(
    data: Any,
    page: int,
    ref_no: Optional[int] = None,
    fallback_created_at: Optional[datetime] = None,
) -> StrokeArtifact:
    """Parse a stored stroke; ``points`` must be a list of point objects."""
    doc = _require_mapping(data, "stroke")
    raw_points = doc.get("points")
    if not isinstance(raw_points, list):
        raise ArtifactParseError("stroke is missing its points list")
    points = [_point(p, strict=True) for p in raw_points]

    pressures = doc.get("pressureValues")
    pressure_values = [_number(v, 0.0) for v in pressures] if isinstance(pressures, list) else []

    created_at = to_epoch_ms(doc.get("createdAt"))
    if created_at is None and fallback_created_at is not None:
        created_at = to_epoch_ms(fallback_created_at)

    stored_ref = _optional_int(doc.get("refNo"))
    return StrokeArtifact(
        page=_int(doc.get("page"), page) or page,
        color=_color(doc.get("color")),
        width=_number(doc.get("width"), 1.0),
        tool_type=_int(doc.get("toolType"), 0),
        is_eraser=bool(doc.get("isEraser")),
        points=points,
        pressure_values=pressure_values,
        ref_no=stored_ref if stored_ref is not None else ref_no,
        bbox=BBox.from_points(points),
        author=_author(doc.get("author")),
        created_at=created_at,
        updated_at=to_epoch_ms(doc.get("updatedAt")) or created_at,
    )


def parse_note(data: Any, page: int, note_id: Optional[str] = None) -> NoteArtifact:
    """Parse a stored note; an id is required (document id or record key)."""
    doc = _require_mapping(data, "note")
    ident = doc.get("id") or note_id
    if not ident or not str(ident).strip():
        raise ArtifactParseError("note has no id")
    return NoteArtifact(
        id=str(ident),
        page=_int(doc.get("page"), page) or page,
        ann_type=_int(doc.get("annType"), int(NoteType.TEXT)),
        position=_point(doc.get("position")),
        text=str(doc.get("text") or ""),
        color=_color(doc.get("color")),
        width=_number(doc.get("width"), DEFAULT_NOTE_WIDTH),
        height=_number(doc.get("height"), DEFAULT_NOTE_HEIGHT),
        author=_author(doc.get("author")),
    )


def _rect(doc: Dict[str, Any]) -> Optional[NormRect]:
    raw = doc.get("rect")
    if isinstance(raw, dict):
        rect = normalize_rect(NormRect(raw.get("x"), raw.get("y"), raw.get("w"), raw.get("h")))
        if rect:
            return rect
    norms = (doc.get("normX"), doc.get("normY"), doc.get("normW"), doc.get("normH"))
    if all(is_finite_number(v) for v in norms):
        return normalize_rect(NormRect(*norms))
    return None


def parse_camera_pin(
    data: Any,
    page: int,
    pin_id: Optional[str] = None,
    ref_no: Optional[int] = None,
    fallback_created_at: Optional[datetime] = None,
) -> CameraPinArtifact:
    """Parse a stored camera pin; createdAt may be a datetime, ISO string or epoch ms."""
    doc = _require_mapping(data, "camera pin")
    ident = doc.get("pinId") or doc.get("id") or pin_id
    if not ident or not str(ident).strip():
        raise ArtifactParseError("camera pin has no id")

    created_at = to_epoch_ms(doc.get("createdAt"))
    if created_at is None:
        created_at = to_epoch_ms(fallback_created_at or datetime.now(timezone.utc))

    note = doc.get("note")
    stored_ref = _optional_int(doc.get("refNo"))
    return CameraPinArtifact(
        id=str(ident),
        page=_int(doc.get("page"), page) or page,
        position=_point(doc.get("position")),
        image_path=str(doc.get("imagePath") or ""),
        created_at=created_at,
        ref_no=stored_ref if stored_ref is not None else ref_no,
        note=note if isinstance(note, str) else None,
        rect=_rect(doc),
        author=_author(doc.get("author")),
    )
