"""
Storage download router.

Serves objects behind the token-bearing URLs minted by the blob storage:

    GET /v0/b/{bucket}/o/{path}?alt=media&token=...

Unknown objects and token mismatches both return 404.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy.orm import sessionmaker

from sitemark.db import get_session_factory
from sitemark.services.blob_storage import DatabaseBlobStorage

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/v0/b/{bucket}/o/{path:path}")
def download_object(
    bucket: str,
    path: str,
    token: Optional[str] = None,
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Return the object bytes when the download token matches."""
    obj = DatabaseBlobStorage(session_factory, bucket=bucket).open_with_token(bucket, path, token)
    return Response(
        content=obj.data,
        media_type=obj.content_type or "application/octet-stream",
        headers={"Cache-Control": "private, max-age=3600"},
    )
