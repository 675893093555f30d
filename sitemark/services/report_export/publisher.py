"""
Export Publisher

Stores a composed report under a fresh, timestamped path, mints a
token-bearing download URL and, only after the object is stored, records the
export on the FileRecord (history entry + latest-export pointer).

If recording history fails the stored object is deleted again, so a failed
publish leaves neither a dangling object nor a half-written history.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from sitemark.config import settings
from sitemark.db import ExportHistoryEntry, FileMeta, FileRecord, get_session_factory
from sitemark.errors import PublishError, StorageError
from sitemark.services.blob_storage import DatabaseBlobStorage
from sitemark.services.identity import resolve_file_id

logger = logging.getLogger(__name__)

DEFAULT_FILE_NAME = "Project Report.pdf"
PDF_CONTENT_TYPE = "application/pdf"

UNSAFE_CHARS_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f\x7f]')
WHITESPACE_RE = re.compile(r"\s+")
PDF_SUFFIX_RE = re.compile(r"\.pdf$", re.IGNORECASE)


def sanitize_file_name(name: Optional[str]) -> str:
    """Filesystem- and header-safe ``.pdf`` file name."""
    cleaned = UNSAFE_CHARS_RE.sub("_", name or "")
    cleaned = WHITESPACE_RE.sub(" ", cleaned).strip()
    cleaned = PDF_SUFFIX_RE.sub("", cleaned).strip()
    if not cleaned:
        return DEFAULT_FILE_NAME
    return f"{cleaned}.pdf"


def safe_path_segment(value: Optional[str]) -> str:
    """Single storage path segment; separators and control chars become ``_``."""
    cleaned = WHITESPACE_RE.sub(" ", UNSAFE_CHARS_RE.sub("_", value or "")).strip()
    if cleaned in ("", ".", ".."):
        return "_"
    return cleaned


def export_stamp(now: Optional[datetime] = None) -> str:
    """ISO timestamp with ``:`` and ``.`` replaced, safe inside object paths."""
    moment = now or datetime.now(timezone.utc)
    iso = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return iso.replace(":", "-").replace(".", "-")


@dataclass
class PublishedExport:
    """Outcome of one publish call."""

    file_name: str
    url: str
    storage_path: str
    data: bytes
    file_id: Optional[str] = None


class ExportPublisher:
    """Persists composed reports and records export provenance."""

    def __init__(
        self,
        storage: Optional[DatabaseBlobStorage] = None,
        session_factory: Optional[sessionmaker] = None,
        prefix: Optional[str] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.storage = storage or DatabaseBlobStorage(self.session_factory)
        self.prefix = (prefix or settings.export_prefix).strip("/")

    def build_storage_path(self, project_id: str, safe_name: str, now: Optional[datetime] = None) -> str:
        # Random suffix keeps same-millisecond exports apart
        return f"{self.prefix}/{safe_path_segment(project_id)}/{export_stamp(now)}-{uuid.uuid4().hex[:8]}-{safe_name}"

    def _record_history(
        self,
        file_url: str,
        file_name: str,
        project_id: str,
        url: str,
        storage_path: str,
        exported_by: str,
        pdf_id: Optional[str],
    ) -> str:
        file_id = resolve_file_id(file_url, file_name)
        now = datetime.utcnow()
        session = self.session_factory()
        try:
            record = session.get(FileRecord, file_id)
            if record is None:
                record = FileRecord(
                    id=file_id,
                    file_url=file_url,
                    file_name=file_name,
                    project_id=project_id,
                )
                session.add(record)
                session.add(FileMeta(file_id=file_id, file_url=file_url, file_name=file_name))
                session.flush()

            session.add(ExportHistoryEntry(
                file_id=file_id,
                url=url,
                storage_path=storage_path,
                exported_by=exported_by,
                pdf_id=pdf_id,
                exported_at=now,
            ))
            record.exported_pdf_url = url
            record.exported_at = now
            record.exported_by = exported_by
            record.updated_at = now
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()
        return file_id

    def publish(
        self,
        data: bytes,
        project_id: str,
        exported_by: str,
        file_name: Optional[str] = None,
        file_url: Optional[str] = None,
        pdf_id: Optional[str] = None,
    ) -> PublishedExport:
        """
        Store a composed report and record it.

        Args:
            data: PDF bytes
            project_id: Owning project (part of the storage path)
            exported_by: Caller uid
            file_name: Source document display name; sanitized for the output name
                and used with file_url to locate the FileRecord
            file_url: Source document reference; history is recorded only when given
            pdf_id: Optional source pdf id stored on the history entry

        Raises:
            StorageError: The object could not be stored (FileRecord untouched)
            PublishError: History could not be recorded (object removed again)
        """
        safe_name = sanitize_file_name(file_name)
        storage_path = self.build_storage_path(project_id, safe_name)

        blob = self.storage.put(
            storage_path,
            data,
            content_type=PDF_CONTENT_TYPE,
            metadata={
                "projectId": project_id,
                "exportedBy": exported_by,
                "pdfId": pdf_id,
                "recordsHistory": bool(file_url),
            },
        )

        file_id = None
        if file_url:
            try:
                file_id = self._record_history(
                    file_url, file_name or "", project_id, blob.url, storage_path, exported_by, pdf_id,
                )
            except SQLAlchemyError as e:
                logger.error(f"Recording export history failed for {storage_path}: {e}")
                try:
                    self.storage.delete(storage_path)
                except StorageError as cleanup_error:
                    logger.error(f"Cleanup of {storage_path} failed, left for orphan sweep: {cleanup_error}")
                raise PublishError(
                    "Failed to record export history",
                    details={"storage_path": storage_path},
                ) from e

        logger.info(f"Published export {storage_path} ({len(data)} bytes) for project {project_id}")
        return PublishedExport(
            file_name=safe_name,
            url=blob.url,
            storage_path=storage_path,
            data=data,
            file_id=file_id,
        )

    def sweep_orphaned_exports(self, older_than: Optional[timedelta] = None, dry_run: bool = False) -> List[str]:
        """
        Delete export objects older than the cutoff that no history entry references.

        Only objects published with a source file reference are expected to have
        history; exports published without one are left alone.

        Returns:
            Paths that were (or, with dry_run, would be) deleted
        """
        age = older_than if older_than is not None else timedelta(minutes=settings.orphan_sweep_minutes)
        cutoff = datetime.utcnow() - age
        candidates = [
            path
            for path, metadata in self.storage.list_objects(f"{self.prefix}/", created_before=cutoff)
            if metadata.get("recordsHistory", True)
        ]
        if not candidates:
            return []

        session = self.session_factory()
        try:
            referenced = set(session.execute(
                select(ExportHistoryEntry.storage_path).where(ExportHistoryEntry.storage_path.in_(candidates))
            ).scalars())
        finally:
            session.close()

        orphans = [path for path in candidates if path not in referenced]
        for path in orphans:
            if dry_run:
                logger.info(f"Would delete orphaned export {path}")
            elif self.storage.delete(path):
                logger.info(f"Deleted orphaned export {path}")
        return orphans
