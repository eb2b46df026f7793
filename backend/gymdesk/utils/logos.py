"""Storage helpers for gym logo uploads."""

from __future__ import annotations

import hashlib
import io
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from ..config import settings

ALLOWED_FORMATS = {"PNG": "png", "JPEG": "jpg", "WEBP": "webp", "GIF": "gif"}
MAX_LOGO_SIDE = 4096


def get_logo_root() -> Path:
    """Return the directory logos are written to, creating it if needed."""
    root = settings.DATA_DIR / "logos"
    root.mkdir(parents=True, exist_ok=True)
    return root


def sniff_logo(payload: bytes) -> str:
    """Return the file extension for a valid logo image or raise ValueError."""
    if not payload:
        raise ValueError("empty upload")
    try:
        with Image.open(io.BytesIO(payload)) as img:
            fmt = img.format
            width, height = img.size
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        raise ValueError("logo must be a PNG, JPEG, WEBP or GIF image") from None
    if fmt not in ALLOWED_FORMATS:
        raise ValueError("logo must be a PNG, JPEG, WEBP or GIF image")
    if width > MAX_LOGO_SIDE or height > MAX_LOGO_SIDE:
        raise ValueError(f"logo dimensions exceed {MAX_LOGO_SIDE}px")
    return ALLOWED_FORMATS[fmt]


def save_logo(gym_id: int, payload: bytes) -> Path:
    """Validate and persist a logo; identical uploads reuse the same file."""
    ext = sniff_logo(payload)
    digest = hashlib.sha256(payload).hexdigest()[:16]
    path = get_logo_root() / f"gym-{gym_id}-{digest}.{ext}"
    if not path.exists():
        path.write_bytes(payload)
    return path
