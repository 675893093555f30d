"""Data models shared by the annotation store and the report exporter."""

from .artifacts import (
    Artifact,
    ArtifactParseError,
    BBox,
    CameraPinArtifact,
    CameraPinInput,
    DocPoint,
    NormRect,
    NoteArtifact,
    NoteInput,
    NoteType,
    StrokeArtifact,
    StrokeInput,
    parse_camera_pin,
    parse_note,
    parse_stroke,
)
from .report import (
    DrawingPage,
    PhotoMarker,
    ReportProjectMeta,
    ReportRequest,
)

__all__ = [
    "Artifact",
    "ArtifactParseError",
    "BBox",
    "CameraPinArtifact",
    "CameraPinInput",
    "DocPoint",
    "NormRect",
    "NoteArtifact",
    "NoteInput",
    "NoteType",
    "StrokeArtifact",
    "StrokeInput",
    "parse_camera_pin",
    "parse_note",
    "parse_stroke",
    "DrawingPage",
    "PhotoMarker",
    "ReportProjectMeta",
    "ReportRequest",
]
