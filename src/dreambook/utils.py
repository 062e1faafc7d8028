"""Utility functions for the dream sequence pipeline."""

import base64
import io
import json
import logging
import re
from pathlib import Path
from typing import Any, List

from PIL import Image, UnidentifiedImageError


logger = logging.getLogger(__name__)

# Pillow format name -> MIME type
_FORMAT_CONTENT_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


def coerce_scene_texts(raw: Any) -> List[str]:
    """Normalise any accepted scene payload shape into an ordered list of strings.

    Accepted shapes:
        - a list (or tuple) of items, each stringified
        - a string holding a JSON array
        - a bare string, which becomes a single scene
        - None, which becomes an empty list

    A list containing a single JSON-array string (a multipart form with one
    ``scenes`` field) is unwrapped. Malformed JSON is never rejected: the raw
    string is kept as one scene. Emptiness and sanitisation are left to the
    orchestrator.
    """
    if raw is None:
        return []

    if isinstance(raw, (list, tuple)):
        items = list(raw)
        if len(items) == 1 and isinstance(items[0], str) and items[0].lstrip().startswith("["):
            return coerce_scene_texts(items[0])
        return [_scene_item_text(item) for item in items]

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped.startswith("["):
            try:
                parsed = json.loads(extract_json_from_text(stripped))
            except (json.JSONDecodeError, TypeError):
                logger.warning("Scene payload is not valid JSON; using it as a single scene")
                return [raw]
            if isinstance(parsed, list):
                return [_scene_item_text(item) for item in parsed]
            return [_scene_item_text(parsed)]
        return [raw]

    return [_scene_item_text(raw)]


def _scene_item_text(item: Any) -> str:
    if item is None:
        return ""
    if isinstance(item, dict):
        # {"text": ...} objects from JSON clients
        value = item.get("text") or item.get("description") or ""
        return str(value)
    return str(item)


def extract_json_from_text(s: str | None) -> str | None:
    """Extract JSON string from text, handling common LLM output formats."""
    if s is None:
        return None

    s = s.strip()
    # Strip code fences if present
    if s.startswith("```"):
        s = re.sub(r"^```[a-zA-Z]*\n?", "", s)
        s = re.sub(r"\n?```$", "", s)
        s = s.strip()

    return s


def sniff_image_type(data: bytes) -> str | None:
    """Return the MIME type of raster image bytes, or None if not an image."""
    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
            image.verify()
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    return _FORMAT_CONTENT_TYPES.get(image_format or "")


def image_extension(content_type: str | None) -> str:
    """File extension for a stored image of the given content type."""
    return {
        "image/jpeg": "jpg",
        "image/png": "png",
        "image/webp": "webp",
        "image/gif": "gif",
    }.get(content_type or "", "png")


def to_data_uri(data: bytes, content_type: str | None = None) -> str:
    """Encode raw image bytes as a data URI."""
    content_type = content_type or sniff_image_type(data) or "image/png"
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


def format_file_size(bytes_size: float) -> str:
    """Format file size in human readable format."""
    for unit in ["B", "KB", "MB", "GB"]:
        if bytes_size < 1024.0:
            return f"{bytes_size:.1f} {unit}"
        bytes_size /= 1024.0
    return f"{bytes_size:.1f} TB"


def read_image_file(path: Path) -> bytes:
    """Read an image file from disk, raising ValueError if it is not an image."""
    data = Path(path).read_bytes()
    if sniff_image_type(data) is None:
        raise ValueError(f"{path} is not a supported image")
    return data
