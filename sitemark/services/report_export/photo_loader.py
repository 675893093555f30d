"""
Photo Loader

Resolves a photo marker image reference to embeddable bytes:

- ``data:`` URLs are decoded in process
- references that resolve to this service's bucket are read from blob storage
- any other http(s) URL is fetched with a timeout and a size cap

Images are normalised with Pillow (EXIF orientation applied, downscaled,
re-encoded as JPEG) so the composer only ever embeds a known format.
"""

import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote_to_bytes

import requests
from PIL import Image, ImageOps, UnidentifiedImageError

from sitemark.config import settings
from sitemark.errors import RecordNotFoundError, StorageError
from sitemark.services.blob_storage import DatabaseBlobStorage
from sitemark.services.identity import canonical_object_ref

logger = logging.getLogger(__name__)

DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]*)(?P<params>(;[^;,]*)*?),(?P<payload>.*)$", re.DOTALL)

JPEG_QUALITY = 85
FETCH_CHUNK = 64 * 1024


class PhotoLoadError(Exception):
    """An image reference could not be turned into embeddable bytes."""


@dataclass
class LoadedPhoto:
    """Normalised JPEG ready to embed."""

    data: bytes
    width: int
    height: int


@dataclass
class DecodedDataUrl:
    mime: str
    data: bytes


def decode_data_url(data_url: str) -> DecodedDataUrl:
    """
    Decode a ``data:<mime>[;base64],<payload>`` URL.

    Raises:
        ValueError: Not a data URL, or an empty / undecodable payload
    """
    match = DATA_URL_RE.match((data_url or "").strip())
    if not match:
        raise ValueError("not a data URL")
    mime = match.group("mime") or "application/octet-stream"
    payload = match.group("payload")
    if ";base64" in match.group("params").lower():
        try:
            data = base64.b64decode(re.sub(r"\s+", "", payload), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"invalid base64 payload: {e}") from e
    else:
        data = unquote_to_bytes(payload)
    if not data:
        raise ValueError("empty data URL payload")
    return DecodedDataUrl(mime=mime.lower(), data=data)


class PhotoLoader:
    """Loads and normalises photo marker images."""

    def __init__(
        self,
        storage: Optional[DatabaseBlobStorage] = None,
        timeout: Optional[float] = None,
        max_bytes: Optional[int] = None,
        max_dimension: Optional[int] = None,
        http: Optional[requests.Session] = None,
    ):
        self.storage = storage
        self.timeout = timeout or settings.photo_fetch_timeout
        self.max_bytes = max_bytes or settings.photo_max_bytes
        self.max_dimension = max_dimension or settings.photo_max_dimension
        self.http = http or requests.Session()

    def _fetch_own_object(self, url: str) -> Optional[bytes]:
        if self.storage is None:
            return None
        ref = canonical_object_ref(url)
        if not ref or ref[0] != self.storage.bucket:
            return None
        try:
            return self.storage.read_bytes(ref[1])
        except (RecordNotFoundError, StorageError) as e:
            raise PhotoLoadError(f"stored object unavailable: {ref[1]}") from e

    def _fetch_remote(self, url: str) -> bytes:
        try:
            response = self.http.get(url, timeout=self.timeout, stream=True)
            try:
                response.raise_for_status()
                declared = response.headers.get("Content-Length")
                if declared and declared.isdigit() and int(declared) > self.max_bytes:
                    raise PhotoLoadError(f"image too large ({declared} bytes)")
                buffer = bytearray()
                for chunk in response.iter_content(chunk_size=FETCH_CHUNK):
                    buffer.extend(chunk)
                    if len(buffer) > self.max_bytes:
                        raise PhotoLoadError(f"image exceeds {self.max_bytes} bytes")
                return bytes(buffer)
            finally:
                response.close()
        except requests.RequestException as e:
            raise PhotoLoadError(f"fetch failed: {e}") from e

    def fetch(self, url: str) -> bytes:
        """Raw bytes for an image reference."""
        ref = (url or "").strip()
        if not ref:
            raise PhotoLoadError("empty image reference")
        if ref.startswith("data:"):
            try:
                return decode_data_url(ref).data
            except ValueError as e:
                raise PhotoLoadError(str(e)) from e

        own = self._fetch_own_object(ref)
        if own is not None:
            return own

        if not ref.lower().startswith(("http://", "https://")):
            raise PhotoLoadError(f"unsupported image reference: {ref[:60]}")
        logger.debug(f"Fetching photo from {ref[:80]}")
        return self._fetch_remote(ref)

    def normalize(self, data: bytes) -> LoadedPhoto:
        """Orient, downscale and re-encode as JPEG."""
        try:
            with Image.open(io.BytesIO(data)) as img:
                img = ImageOps.exif_transpose(img)
                if img.mode not in ("RGB", "L"):
                    img = img.convert("RGB")
                img.thumbnail((self.max_dimension, self.max_dimension))
                out = io.BytesIO()
                img.save(out, format="JPEG", quality=JPEG_QUALITY)
                return LoadedPhoto(data=out.getvalue(), width=img.width, height=img.height)
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise PhotoLoadError(f"not a readable image: {e}") from e

    def load(self, url: str) -> LoadedPhoto:
        """
        Embeddable JPEG for an image reference.

        Raises:
            PhotoLoadError: Any fetch or decode failure
        """
        return self.normalize(self.fetch(url))
