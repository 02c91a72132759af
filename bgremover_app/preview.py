"""
Local preview references for uploaded photos.

A preview is a downscaled PNG kept in process memory and addressed by an
opaque key, so the UI can show the photo before storage has accepted it.
A preview is released by the first revoke; later revokes find nothing and
return False.
"""

from __future__ import annotations

from io import BytesIO
import logging
from threading import Lock
from typing import Dict, Optional
import uuid

from PIL import Image

from .models import PreviewRef

logger = logging.getLogger(__name__)


def render_preview(image_bytes: bytes, max_edge: int) -> bytes:
    """
    Decode an image and return a PNG thumbnail bounded by `max_edge`.

    Raises:
        ValueError: when the bytes are not a decodable image.
    """
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
    except Exception as exc:  # noqa: BLE001
        raise ValueError("Invalid image data") from exc

    if image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA")
    image.thumbnail((max_edge, max_edge))
    buf = BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


class PreviewRegistry:
    def __init__(self, max_edge: int = 475):
        self.max_edge = max_edge
        self._previews: Dict[str, bytes] = {}
        self._lock = Lock()

    def create(self, image_bytes: bytes) -> PreviewRef:
        png = render_preview(image_bytes, self.max_edge)
        ref = PreviewRef(key=uuid.uuid4().hex)
        with self._lock:
            self._previews[ref.key] = png
        return ref

    def get(self, ref: PreviewRef) -> Optional[bytes]:
        with self._lock:
            return self._previews.get(ref.key)

    def revoke(self, ref: PreviewRef) -> bool:
        """Release a preview. Returns True only for the call that actually released it."""
        with self._lock:
            if self._previews.pop(ref.key, None) is None:
                return False
        logger.debug("Revoked preview %s", ref.key)
        return True

    def is_revoked(self, ref: PreviewRef) -> bool:
        with self._lock:
            return ref.key not in self._previews

    def __len__(self) -> int:
        with self._lock:
            return len(self._previews)
