"""Screenshot capture normalization: picker, drag-and-drop and clipboard payloads."""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from typing import Iterable, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from rtl_auditor.config import JPEG_QUALITY, MAX_IMAGE_EDGE

logger = logging.getLogger(__name__)

DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?;base64,(?P<data>.*)$", re.DOTALL)


def fit_within(width: int, height: int, max_edge: int = MAX_IMAGE_EDGE) -> Tuple[int, int]:
    """Shrink (never enlarge) so the longer edge is at most ``max_edge``."""
    if width > height:
        if width > max_edge:
            height = height * max_edge / width
            width = max_edge
    else:
        if height > max_edge:
            width = width * max_edge / height
            height = max_edge
    return max(1, int(round(width))), max(1, int(round(height)))


def split_data_url(data_url: str) -> Tuple[str, str]:
    """Return ``(mime_type, base64_payload)`` of a data URL."""
    match = DATA_URL_PATTERN.match((data_url or "").strip())
    if not match:
        raise ValueError("Not a base64 data URL")
    return match.group("mime") or "application/octet-stream", match.group("data")


def decode_data_url(data_url: str) -> Optional[bytes]:
    try:
        _, payload = split_data_url(data_url)
        return base64.b64decode(payload, validate=False)
    except (ValueError, binascii.Error):
        return None


def image_from_data_url(data_url: str) -> Image.Image:
    raw = decode_data_url(data_url)
    if raw is None:
        raise ValueError("Invalid image data URL")
    img = Image.open(io.BytesIO(raw))
    img.load()
    return img


def _flatten(img: Image.Image) -> Image.Image:
    # JPEG has no alpha channel
    if img.mode in {"RGBA", "LA"} or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def normalize_image(
    raw: bytes,
    *,
    max_edge: int = MAX_IMAGE_EDGE,
    quality: int = JPEG_QUALITY,
) -> Optional[str]:
    """
    Decode raw bytes and return a resized JPEG data URL.

    Returns None when the bytes are not a readable image; callers ignore
    such payloads without reporting an error.
    """
    if not raw:
        return None
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        logger.debug("Ignoring non-image payload: %s", exc)
        return None

    target = fit_within(img.width, img.height, max_edge)
    if target != img.size:
        img = img.resize(target, Image.Resampling.LANCZOS)
    img = _flatten(img)

    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"


def is_image_type(content_type: Optional[str]) -> bool:
    return bool(content_type) and content_type.lower().startswith("image/")


def select_upload(
    candidates: Iterable[Tuple[Optional[str], bytes]],
    source: str = "picker",
) -> Optional[bytes]:
    """
    Pick the payload to ingest from a batch of ``(content_type, bytes)``.

    Picker and drop take the first file only; paste scans for the first
    image-typed clipboard item.
    """
    candidates = list(candidates)
    if not candidates:
        return None
    if source == "paste":
        for content_type, data in candidates:
            if is_image_type(content_type):
                return data
        return None
    content_type, data = candidates[0]
    if not is_image_type(content_type):
        return None
    return data
