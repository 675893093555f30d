"""
Caller identity for sitemark routers.

Requests carry an HS256 JWT in one of (first match wins):
- ``Authorization: Bearer <token>``
- ``x-id-token: <token>``
- ``token`` or ``__session`` cookie

``DEV_AUTH_BYPASS`` accepts unauthenticated requests as a fixed dev user.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException, Request, status

from sitemark.config import settings

logger = logging.getLogger(__name__)

JWT_EXPIRATION_HOURS = 24

DEV_USER = {"uid": "dev-user", "name": "Dev User", "email": None}


def create_jwt_token(user_id: str, email: Optional[str] = None, name: Optional[str] = None,
                     expires_in: timedelta = timedelta(hours=JWT_EXPIRATION_HOURS)) -> str:
    """Create a signed token for a caller."""
    payload = {
        "sub": user_id,
        "email": email,
        "name": name,
        "exp": datetime.utcnow() + expires_in,
        "iat": datetime.utcnow(),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_jwt_token(token: str) -> Optional[dict]:
    """Verify and decode a token; None if expired or invalid."""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.debug("Rejected expired token")
        return None
    except jwt.InvalidTokenError:
        return None


def extract_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
        if token:
            return token
    id_token = (request.headers.get("x-id-token") or "").strip()
    if id_token:
        return id_token
    for cookie in ("token", "__session"):
        value = (request.cookies.get(cookie) or "").strip()
        if value:
            return value
    return None


def get_current_user(request: Request) -> Dict[str, Any]:
    """
    FastAPI dependency returning the caller as ``{uid, name, email}``.

    Raises:
        HTTPException: 401 when the token is missing or invalid
    """
    token = extract_token(request)
    if not token:
        if settings.dev_auth_bypass:
            return dict(DEV_USER)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing auth token")

    payload = verify_jwt_token(token)
    if not payload or not (payload.get("sub") or payload.get("uid")):
        if settings.dev_auth_bypass:
            return dict(DEV_USER)
        logger.warning("Rejected request with invalid auth token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid auth token")

    return {
        "uid": str(payload.get("sub") or payload.get("uid")),
        "name": payload.get("name"),
        "email": payload.get("email"),
    }
