"""
Identity Resolver

Derives a stable FileRecord id for a remote document reference. Three remote
storage reference dialects are recognised and reduced to ``bucket/objectPath``:

- ``gs://<bucket>/<path>``                                   (bucket scheme)
- ``https://firebasestorage.googleapis.com/v0/b/<bucket>/o/<encoded path>?alt=media&token=...``
- ``https://storage.googleapis.com/<bucket>/<path>``          (public object URL)

Download URLs minted by the storage router share the REST layout and resolve
the same way.

Access tokens live in the query string and never reach the digest. Anything
else falls back to the lowercased, query-stripped reference.
"""

import hashlib
import logging
from typing import Callable, List, Optional, Set, Tuple
from urllib.parse import unquote, urlsplit, SplitResult

from sitemark.config import settings

logger = logging.getLogger(__name__)

REST_DOWNLOAD_HOST = "firebasestorage.googleapis.com"
PUBLIC_OBJECT_HOST = "storage.googleapis.com"

ObjectRef = Tuple[str, str]
DialectMatcher = Callable[[SplitResult], Optional[ObjectRef]]


def _digest(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


def strip_query(url: str) -> str:
    """Drop the query string and fragment from a reference."""
    return url.split("?", 1)[0].split("#", 1)[0]


def _segments(path: str) -> List[str]:
    return [seg for seg in path.split("/") if seg]


def match_bucket_scheme(parts: SplitResult) -> Optional[ObjectRef]:
    """gs://bucket/path/to/object"""
    if parts.scheme != "gs" or not parts.netloc:
        return None
    return parts.netloc, parts.path.lstrip("/")


def _rest_hosts() -> Set[str]:
    # Download URLs minted by this service use the same REST layout
    own = urlsplit(settings.storage_public_url).netloc
    return {REST_DOWNLOAD_HOST, own} if own else {REST_DOWNLOAD_HOST}


def match_rest_download(parts: SplitResult) -> Optional[ObjectRef]:
    """REST download URL: .../v0/b/<bucket>/o/<percent-encoded object path>"""
    if parts.netloc not in _rest_hosts():
        return None
    seg = _segments(parts.path)
    for i in range(len(seg) - 4):
        if seg[i] == "v0" and seg[i + 1] == "b" and seg[i + 3] == "o":
            return seg[i + 2], unquote("/".join(seg[i + 4:]))
    return None


def match_public_object(parts: SplitResult) -> Optional[ObjectRef]:
    """Public object URL: /<bucket>/<object path...>"""
    if parts.netloc != PUBLIC_OBJECT_HOST:
        return None
    seg = _segments(parts.path)
    if len(seg) < 2:
        return None
    return seg[0], unquote("/".join(seg[1:]))


# Order matters: first match wins
DIALECT_MATCHERS: List[DialectMatcher] = [
    match_bucket_scheme,
    match_rest_download,
    match_public_object,
]


def canonical_object_ref(url: str) -> Optional[ObjectRef]:
    """
    Return ``(bucket, object_path)`` if the reference uses a known dialect.

    Case is preserved; callers that need the identity form should use
    canonicalize_reference().
    """
    try:
        parts = urlsplit(str(url).strip())
    except ValueError:
        return None
    for matcher in DIALECT_MATCHERS:
        try:
            ref = matcher(parts)
        except (ValueError, IndexError) as e:
            logger.debug(f"Dialect matcher {matcher.__name__} failed for {url!r}: {e}")
            continue
        if ref and ref[0] and ref[1]:
            return ref
    return None


def canonicalize_reference(url: str) -> str:
    """Lowercased canonical base used for identity digests."""
    raw = "" if url is None else str(url)
    ref = canonical_object_ref(raw)
    if ref:
        return f"{ref[0]}/{ref[1]}".lower()
    return strip_query(raw).lower()


def resolve_file_id(url: str, name: str, override_key: Optional[str] = None) -> str:
    """
    Stable FileRecord id for a (reference, display name) pair.

    Args:
        url: Raw remote document reference (any dialect, tokens allowed)
        name: Display name of the document
        override_key: Explicit key; when non-empty it is digested directly

    Returns:
        40-character hex SHA-1 digest. Never raises.
    """
    if override_key:
        return _digest(str(override_key))

    display = "" if name is None else str(name)
    try:
        base = canonicalize_reference(url)
    except Exception as e:
        # Best effort: unusual inputs still get an id
        logger.warning(f"Falling back to raw reference for identity of {url!r}: {e}")
        base = strip_query(str(url)).lower()
    return _digest(f"{base}|{display.lower()}")
