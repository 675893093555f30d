"""
Durable object storage for export artifacts and pin photos.

Objects live in the ``stored_objects`` table, addressed by bucket path. Each
object carries an opaque download token; the storage router serves the bytes
only when the token in the URL matches. Download URLs use the REST download
dialect so they resolve back through the Identity Resolver.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from sitemark.config import settings
from sitemark.db import StoredObject, get_session_factory
from sitemark.errors import RecordNotFoundError, StorageError

logger = logging.getLogger(__name__)


@dataclass
class StoredBlob:
    """Result of a successful put()."""

    bucket: str
    path: str
    size: int
    content_type: str
    download_token: str
    url: str


def build_download_url(bucket: str, path: str, token: str, base_url: Optional[str] = None) -> str:
    """Token-bearing download URL for an object."""
    base = (base_url or settings.storage_public_url).rstrip("/")
    return f"{base}/v0/b/{bucket}/o/{quote(path, safe='')}?alt=media&token={token}"


class DatabaseBlobStorage:
    """Object store backed by the application database."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        bucket: Optional[str] = None,
        public_url: Optional[str] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.bucket = bucket or settings.storage_bucket
        self.public_url = public_url or settings.storage_public_url

    def download_url(self, path: str, token: str) -> str:
        return build_download_url(self.bucket, path, token, self.public_url)

    def put(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredBlob:
        """
        Store bytes under ``path`` (replacing any previous object) with a fresh token.

        Raises:
            StorageError: The write did not commit
        """
        token = str(uuid.uuid4())
        session = self.session_factory()
        try:
            obj = session.get(StoredObject, path)
            if obj is None:
                obj = StoredObject(path=path)
                session.add(obj)
            obj.bucket = self.bucket
            obj.data = data
            obj.content_type = content_type
            obj.size = len(data)
            obj.download_token = token
            obj.object_metadata = metadata or {}
            obj.created_at = datetime.utcnow()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Storage write failed for {path}: {e}")
            raise StorageError(f"Failed to store object {path}", details={"path": path}) from e
        finally:
            session.close()

        logger.debug(f"Stored {len(data)} bytes at {self.bucket}/{path}")
        return StoredBlob(
            bucket=self.bucket,
            path=path,
            size=len(data),
            content_type=content_type,
            download_token=token,
            url=self.download_url(path, token),
        )

    def get(self, path: str) -> StoredObject:
        """Fetch a stored object or raise RecordNotFoundError."""
        session = self.session_factory()
        try:
            obj = session.get(StoredObject, path)
        finally:
            session.close()
        if obj is None:
            raise RecordNotFoundError(f"Object not found: {path}", details={"path": path})
        return obj

    def read_bytes(self, path: str) -> bytes:
        return self.get(path).data

    def open_with_token(self, bucket: str, path: str, token: Optional[str]) -> StoredObject:
        """Object for a download URL; unknown path, bucket or token all look like not-found."""
        obj = self.get(path)
        if obj.bucket != bucket or not token or obj.download_token != token:
            raise RecordNotFoundError(f"Object not found: {path}", details={"path": path})
        return obj

    def delete(self, path: str) -> bool:
        """Delete an object; returns False if it did not exist."""
        session = self.session_factory()
        try:
            obj = session.get(StoredObject, path)
            if obj is None:
                return False
            session.delete(obj)
            session.commit()
            logger.debug(f"Deleted {self.bucket}/{path}")
            return True
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to delete object {path}", details={"path": path}) from e
        finally:
            session.close()

    def list_objects(
        self, prefix: str, created_before: Optional[datetime] = None
    ) -> List[Tuple[str, Dict[str, Any]]]:
        """(path, metadata) pairs under a prefix, optionally only those created before a cutoff."""
        session = self.session_factory()
        try:
            stmt = select(StoredObject.path, StoredObject.object_metadata).where(
                StoredObject.path.startswith(prefix, autoescape=True)
            )
            if created_before is not None:
                stmt = stmt.where(StoredObject.created_at < created_before)
            rows = session.execute(stmt.order_by(StoredObject.path)).all()
            return [(path, metadata or {}) for path, metadata in rows]
        finally:
            session.close()
