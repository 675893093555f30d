"""
Annotation Store

Per-file, per-page persistence for the three annotation variants:

    strokes      append-only, refNo allocated in the same transaction
    notes        merge-upsert keyed by the caller's id (last write wins)
    camera_pins  keyed by pin id, refNo allocated in the same transaction

The FileRecord is located through the Identity Resolver, so re-opening the
same remote document with a refreshed access token lands on the same record.
Every mutation touches ``FileMeta.updated_at`` and ``FileRecord.updated_at``.
"""

import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from sitemark.db import (
    CameraPinRecord,
    FileMeta,
    FileRecord,
    NoteRecord,
    PageRecord,
    StrokeRecord,
    get_session_factory,
)
from sitemark.errors import AnnotationContextError, RecordNotFoundError
from sitemark.models.artifacts import (
    CAMERA_PIN,
    NOTE,
    STROKE,
    Artifact,
    ArtifactParseError,
    BBox,
    CameraPinInput,
    NoteInput,
    StrokeInput,
    parse_camera_pin,
    parse_note,
    parse_stroke,
    to_epoch_ms,
)
from sitemark.services.blob_storage import DatabaseBlobStorage
from sitemark.services.identity import resolve_file_id
from sitemark.services.ref_counter import RefCounterAllocator
from sitemark.utils.colors import color_hex_to_int

logger = logging.getLogger(__name__)

T = TypeVar("T")

ANONYMOUS_AUTHOR = {"uid": "anonymous", "name": None, "email": None}

# Concurrent first inserts of a page or note collide on the unique key; the
# retried transaction then sees the committed row and updates it.
WRITE_ATTEMPTS = 3

# Stored documents are untrusted; any of these while parsing one record skips it
RECORD_ERRORS = (ArtifactParseError, TypeError, ValueError, OverflowError)


def normalize_page(page: Any) -> int:
    """1-based page number; non-finite or < 1 maps to 1."""
    try:
        value = float(page)
    except (TypeError, ValueError):
        return 1
    if not math.isfinite(value) or value < 1:
        return 1
    return int(math.floor(value))


def _iso_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


class AnnotationStore:
    """
    Annotation persistence for one logical remote document.

    Args:
        file_url: Remote document reference (any storage dialect)
        file_name: Display name; part of the file identity
        author: ``{uid, name, email}`` of the caller, stamped on every record
        project_id: Owning project, used for pin image paths
        override_key: Explicit identity key, bypasses URL canonicalisation
        file_id: Already-resolved FileRecord id (skips resolution)
    """

    def __init__(
        self,
        file_url: str,
        file_name: str,
        author: Optional[Dict[str, Any]] = None,
        project_id: Optional[str] = None,
        override_key: Optional[str] = None,
        file_id: Optional[str] = None,
        session_factory: Optional[sessionmaker] = None,
        allocator: Optional[RefCounterAllocator] = None,
        storage: Optional[DatabaseBlobStorage] = None,
    ):
        self.file_url = (file_url or "").strip()
        self.file_name = (file_name or "").strip()
        self.project_id = project_id
        self.author = dict(author) if author else dict(ANONYMOUS_AUTHOR)
        self.session_factory = session_factory or get_session_factory()
        self.allocator = allocator or RefCounterAllocator(self.session_factory)
        self.storage = storage or DatabaseBlobStorage(self.session_factory)
        self._opened = False

        self._assert_context()
        self.file_id = file_id or resolve_file_id(self.file_url, self.file_name, override_key)
        self._assert_context()

    @classmethod
    def for_file_id(cls, file_id: str, session_factory: Optional[sessionmaker] = None, **kwargs) -> "AnnotationStore":
        """Store bound to an existing FileRecord; raises RecordNotFoundError if absent."""
        factory = session_factory or get_session_factory()
        session = factory()
        try:
            record = session.get(FileRecord, file_id)
        finally:
            session.close()
        if record is None:
            raise RecordNotFoundError(f"File not found: {file_id}", details={"file_id": file_id})
        return cls(
            record.file_url,
            record.file_name,
            project_id=record.project_id,
            file_id=record.id,
            session_factory=factory,
            **kwargs,
        )

    # =========================================================================
    # Validation and shared write plumbing
    # =========================================================================

    def _assert_context(self):
        missing = []
        if not self.file_url:
            missing.append("fileUrl")
        if not self.file_name:
            missing.append("fileName")
        if hasattr(self, "file_id") and not (self.file_id or "").strip():
            missing.append("fileId")
        if self.project_id is not None and not str(self.project_id).strip():
            missing.append("projectId")
        if missing:
            raise AnnotationContextError(
                f"Invalid write context: {', '.join(missing)}",
                details={"missing": missing},
            )

    @staticmethod
    def _assert_id(label: str, value: Optional[str]) -> str:
        if not value or not str(value).strip():
            raise AnnotationContextError(f"Missing {label}", details={"field": label})
        return str(value).strip()

    def _author(self) -> Dict[str, Any]:
        return {
            "uid": self.author.get("uid") or "anonymous",
            "name": self.author.get("name"),
            "email": self.author.get("email"),
        }

    def _ensure_page(self, session: Session, page: int):
        if session.get(PageRecord, (self.file_id, page)) is None:
            session.add(PageRecord(file_id=self.file_id, page_number=page))
            session.flush()

    def _touch(self, session: Session):
        now = datetime.utcnow()
        session.execute(
            update(FileMeta).where(FileMeta.file_id == self.file_id).values(updated_at=now)
        )
        session.execute(
            update(FileRecord).where(FileRecord.id == self.file_id).values(updated_at=now)
        )

    def _attempt(self, write: Callable[[Session], T]) -> T:
        session = self.session_factory()
        try:
            result = write(session)
            session.commit()
            return result
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _run(self, write: Callable[[Session], T]) -> T:
        """Run a single-record write in its own transaction."""
        retrying = Retrying(
            stop=stop_after_attempt(WRITE_ATTEMPTS),
            wait=wait_random_exponential(multiplier=0.01, max=0.2),
            retry=retry_if_exception_type(IntegrityError),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"Retrying write for file {self.file_id}: {retry_state.outcome.exception()}"
            ),
        )
        return retrying(self._attempt, write)

    def _ensure_open(self):
        if not self._opened:
            self.init()

    # =========================================================================
    # Open
    # =========================================================================

    def init(self) -> bool:
        """
        Ensure the FileRecord and its metadata sub-record exist.

        Idempotent: an existing record is never recreated or overwritten.

        Returns:
            True if the FileRecord was created by this call
        """
        self._assert_context()

        def write(session: Session) -> bool:
            created = False
            if session.get(FileRecord, self.file_id) is None:
                session.add(FileRecord(
                    id=self.file_id,
                    file_url=self.file_url,
                    file_name=self.file_name,
                    project_id=self.project_id,
                ))
                session.flush()
                created = True
            if session.get(FileMeta, self.file_id) is None:
                session.add(FileMeta(
                    file_id=self.file_id,
                    file_url=self.file_url,
                    file_name=self.file_name,
                ))
                session.flush()
            return created

        created = self._run(write)
        self._opened = True
        if created:
            logger.info(f"Created file record {self.file_id} for {self.file_name!r}")
        return created

    # =========================================================================
    # Strokes
    # =========================================================================

    def save_stroke(self, page: Any, stroke: StrokeInput) -> int:
        """Persist an immutable stroke; returns its refNo."""
        self._assert_context()
        safe_page = normalize_page(page)
        self._ensure_open()

        points = [p.to_dict() for p in stroke.points]

        def write(session: Session, ref_no: int) -> int:
            self._ensure_page(session, safe_page)
            now = _iso_now()
            session.add(StrokeRecord(
                file_id=self.file_id,
                page_number=safe_page,
                ref_no=ref_no,
                data={
                    "type": STROKE,
                    "refNo": ref_no,
                    "page": safe_page,
                    "color": color_hex_to_int(stroke.color),
                    "width": stroke.width,
                    "toolType": stroke.tool_type,
                    "isEraser": bool(stroke.is_eraser),
                    "points": points,
                    "pressureValues": list(stroke.pressure_values or []),
                    "bbox": BBox.from_points(stroke.points).to_dict(),
                    "author": self._author(),
                    "createdAt": now,
                    "updatedAt": now,
                },
            ))
            self._touch(session)
            return ref_no

        ref_no = self.allocator.run_with_ref_no(self.file_id, write)
        logger.debug(f"Saved stroke refNo={ref_no} on page {safe_page} of {self.file_id}")
        return ref_no

    # =========================================================================
    # Notes
    # =========================================================================

    def _upsert_note(self, page: Any, note: NoteInput):
        self._assert_context()
        note_id = self._assert_id("note.id", note.id)
        safe_page = normalize_page(page)
        self._ensure_open()

        fields = {
            "type": NOTE,
            "id": note_id,
            "page": safe_page,
            "annType": int(note.ann_type),
            "position": note.position.to_dict(),
            "text": note.text or "",
            "color": color_hex_to_int(note.color),
            "width": note.width,
            "height": note.height,
            "author": self._author(),
        }

        def write(session: Session):
            self._ensure_page(session, safe_page)
            now = datetime.utcnow()
            record = session.execute(
                select(NoteRecord).where(
                    NoteRecord.file_id == self.file_id,
                    NoteRecord.page_number == safe_page,
                    NoteRecord.note_id == note_id,
                )
            ).scalar_one_or_none()

            if record is None:
                data = dict(fields, updatedAt=now.isoformat() + "Z")
                data["createdAt"] = data["updatedAt"]
                session.add(NoteRecord(
                    file_id=self.file_id,
                    page_number=safe_page,
                    note_id=note_id,
                    data=data,
                    created_at=now,
                    updated_at=now,
                ))
                session.flush()
            else:
                merged = dict(record.data) if isinstance(record.data, dict) else {}
                merged.update(fields)
                merged["updatedAt"] = now.isoformat() + "Z"
                merged.setdefault("createdAt", merged["updatedAt"])
                record.data = merged
                record.updated_at = now
            self._touch(session)

        self._run(write)
        logger.debug(f"Upserted note {note_id} on page {safe_page} of {self.file_id}")

    def create_note(self, page: Any, note: NoteInput):
        """Create (or merge into) a note keyed by its caller-supplied id."""
        self._upsert_note(page, note)

    def update_note(self, page: Any, note: NoteInput):
        """Merge new field values into a note; createdAt is preserved."""
        self._upsert_note(page, note)

    def delete_note(self, page: Any, note_id: str) -> bool:
        """Hard-delete a note; returns False if it did not exist."""
        self._assert_context()
        note_id = self._assert_id("noteId", note_id)
        safe_page = normalize_page(page)

        def write(session: Session) -> bool:
            result = session.execute(
                delete(NoteRecord).where(
                    NoteRecord.file_id == self.file_id,
                    NoteRecord.page_number == safe_page,
                    NoteRecord.note_id == note_id,
                )
            )
            self._touch(session)
            return result.rowcount > 0

        return self._run(write)

    # =========================================================================
    # Camera pins
    # =========================================================================

    def save_camera_pin(self, page: Any, pin: CameraPinInput, remote_image_url: Optional[str] = None) -> int:
        """
        Persist a photo marker with a freshly allocated refNo.

        Saving an existing pin id again merges over it and assigns a new refNo.

        Returns:
            The allocated refNo
        """
        self._assert_context()
        pin_id = self._assert_id("pin.id", pin.id)
        safe_page = normalize_page(page)
        self._ensure_open()

        rect = pin.resolved_rect()
        created_at = to_epoch_ms(pin.created_at)
        image_path = (remote_image_url or "").strip() or pin.image_path

        def write(session: Session, ref_no: int) -> int:
            self._ensure_page(session, safe_page)
            data = {
                "type": CAMERA_PIN,
                "refNo": ref_no,
                "page": safe_page,
                "pinId": pin_id,
                "position": pin.position.to_dict(),
                "imagePath": image_path,
                "note": pin.note,
                "author": self._author(),
                "createdAt": created_at,
                "updatedAt": _iso_now(),
            }
            if rect:
                data["rect"] = rect.to_dict()
                data.update(normX=rect.x, normY=rect.y, normW=rect.w, normH=rect.h)

            record = session.execute(
                select(CameraPinRecord).where(
                    CameraPinRecord.file_id == self.file_id,
                    CameraPinRecord.page_number == safe_page,
                    CameraPinRecord.pin_id == pin_id,
                )
            ).scalar_one_or_none()
            if record is None:
                session.add(CameraPinRecord(
                    file_id=self.file_id,
                    page_number=safe_page,
                    pin_id=pin_id,
                    ref_no=ref_no,
                    data=data,
                ))
            else:
                merged = dict(record.data) if isinstance(record.data, dict) else {}
                merged.update(data)
                record.data = merged
                record.ref_no = ref_no
            self._touch(session)
            return ref_no

        ref_no = self.allocator.run_with_ref_no(self.file_id, write)
        logger.debug(f"Saved camera pin {pin_id} refNo={ref_no} on page {safe_page} of {self.file_id}")
        return ref_no

    def delete_camera_pin(self, page: Any, pin_id: str) -> bool:
        """Hard-delete a camera pin; its refNo is never reissued."""
        self._assert_context()
        pin_id = self._assert_id("pinId", pin_id)
        safe_page = normalize_page(page)

        def write(session: Session) -> bool:
            result = session.execute(
                delete(CameraPinRecord).where(
                    CameraPinRecord.file_id == self.file_id,
                    CameraPinRecord.page_number == safe_page,
                    CameraPinRecord.pin_id == pin_id,
                )
            )
            self._touch(session)
            return result.rowcount > 0

        return self._run(write)

    def upload_camera_image(
        self,
        page: Any,
        pin_id: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> str:
        """Store a pin photo and return its token-bearing download URL."""
        self._assert_context()
        pin_id = self._assert_id("pinId", pin_id)
        safe_page = normalize_page(page)

        if self.project_id:
            base_path = f"projects/{self.project_id}/files/{self.file_id}"
        else:
            base_path = f"files/{self.file_id}"
        ext = "png" if content_type == "image/png" else "jpg"
        path = f"{base_path}/pins/{safe_page}/{pin_id}.{ext}"

        blob = self.storage.put(
            path,
            data,
            content_type=content_type or "image/jpeg",
            metadata={"fileId": self.file_id, "page": safe_page, "pinId": pin_id},
        )
        return blob.url

    # =========================================================================
    # Bulk load
    # =========================================================================

    def _load_strokes(self, session: Session, page: int) -> List[Artifact]:
        records = session.execute(
            select(StrokeRecord)
            .where(StrokeRecord.file_id == self.file_id, StrokeRecord.page_number == page)
            .order_by(StrokeRecord.ref_no, StrokeRecord.created_at)
        ).scalars()
        items = []
        for record in records:
            try:
                items.append(parse_stroke(
                    record.data,
                    page,
                    ref_no=record.ref_no,
                    fallback_created_at=record.created_at,
                ))
            except RECORD_ERRORS as e:
                logger.warning(f"Skipping stroke {record.id} on page {page} of {self.file_id}: {e}")
        return items

    def _load_notes(self, session: Session, page: int) -> List[Artifact]:
        records = session.execute(
            select(NoteRecord)
            .where(NoteRecord.file_id == self.file_id, NoteRecord.page_number == page)
            .order_by(NoteRecord.created_at, NoteRecord.note_id)
        ).scalars()
        items = []
        for record in records:
            try:
                items.append(parse_note(record.data, page, note_id=record.note_id))
            except RECORD_ERRORS as e:
                logger.warning(f"Skipping note {record.note_id} on page {page} of {self.file_id}: {e}")
        return items

    def _load_pins(self, session: Session, page: int) -> List[Artifact]:
        records = session.execute(
            select(CameraPinRecord)
            .where(CameraPinRecord.file_id == self.file_id, CameraPinRecord.page_number == page)
            .order_by(CameraPinRecord.ref_no, CameraPinRecord.created_at)
        ).scalars()
        items = []
        for record in records:
            try:
                items.append(parse_camera_pin(
                    record.data,
                    page,
                    pin_id=record.pin_id,
                    ref_no=record.ref_no,
                    fallback_created_at=record.created_at,
                ))
            except RECORD_ERRORS as e:
                logger.warning(f"Skipping camera pin {record.pin_id} on page {page} of {self.file_id}: {e}")
        return items

    def load_all(self) -> Dict[int, List[Artifact]]:
        """
        Every parsable annotation, grouped by page number.

        Malformed records are skipped and a failing variant query on one page
        does not stop the others. Pages with nothing parsable are omitted.
        Order per page: strokes by refNo, notes by creation, pins by refNo.
        """
        out: Dict[int, List[Artifact]] = {}
        session = self.session_factory()
        try:
            pages = list(session.execute(
                select(PageRecord.page_number)
                .where(PageRecord.file_id == self.file_id)
                .order_by(PageRecord.page_number)
            ).scalars())

            for page in pages:
                items: List[Artifact] = []
                for kind, loader in (
                    ("strokes", self._load_strokes),
                    ("notes", self._load_notes),
                    ("camera pins", self._load_pins),
                ):
                    try:
                        items.extend(loader(session, page))
                    except SQLAlchemyError as e:
                        session.rollback()
                        logger.warning(f"Failed to load {kind} for page {page} of {self.file_id}: {e}")
                if items:
                    out[page] = items
        finally:
            session.close()
        return out
