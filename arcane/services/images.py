from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass

from PIL import Image, ImageOps


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImagePreset:
    width: int
    height: int
    quality: int = 80
    format: str = "png"


IMAGE_PRESETS: dict[str, ImagePreset] = {
    "WIZARD_ILLUSTRATION": ImagePreset(512, 512, 85, "png"),
    "DUEL_ROUND": ImagePreset(768, 768, 80, "png"),
    "THUMBNAIL": ImagePreset(256, 256, 75, "webp"),
    "LARGE_DISPLAY": ImagePreset(1024, 1024, 85, "png"),
}

_CONTENT_TYPES = {"png": "image/png", "jpeg": "image/jpeg", "webp": "image/webp"}


def content_type_for(fmt: str) -> str:
    return _CONTENT_TYPES.get(_normalize_format(fmt), "application/octet-stream")


def sniff_content_type(data: bytes) -> str:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


def _normalize_format(fmt: str) -> str:
    fmt = fmt.lower()
    return "jpeg" if fmt == "jpg" else fmt


def _encode(im: Image.Image, fmt: str, quality: int) -> bytes:
    fmt = _normalize_format(fmt)
    if fmt not in _CONTENT_TYPES:
        raise ValueError(f"Unsupported image format: {fmt}")
    buf = io.BytesIO()
    if fmt == "jpeg":
        im.convert("RGB").save(buf, format="JPEG", quality=quality, optimize=True)
    elif fmt == "webp":
        im.save(buf, format="WEBP", quality=quality)
    else:
        # PNG is lossless; quality maps onto zlib effort
        im.save(buf, format="PNG", optimize=True, compress_level=9 if quality < 90 else 6)
    return buf.getvalue()


def compress_image(data: bytes, quality: int = 80, fmt: str = "webp") -> bytes:
    with Image.open(io.BytesIO(data)) as im:
        im.load()
        return _encode(im, fmt, quality)


def resize_image(data: bytes, width: int = 512, height: int = 512, quality: int = 80, fmt: str = "png") -> bytes:
    """Cover-crop ``data`` to ``width`` x ``height`` and re-encode it."""
    with Image.open(io.BytesIO(data)) as im:
        im.load()
        fitted = ImageOps.fit(im, (width, height), method=Image.LANCZOS, centering=(0.5, 0.5))
        return _encode(fitted, fmt, quality)


class ImageProcessor:
    """Async wrapper running Pillow work off the event loop."""

    def __init__(self, preset: ImagePreset = IMAGE_PRESETS["DUEL_ROUND"]) -> None:
        self.preset = preset

    @property
    def content_type(self) -> str:
        return content_type_for(self.preset.format)

    async def compress(self, data: bytes, quality: int | None = None, fmt: str | None = None) -> bytes:
        out = await asyncio.to_thread(
            compress_image, data, quality or self.preset.quality, fmt or self.preset.format
        )
        log.debug("Compressed image %d -> %d bytes", len(data), len(out))
        return out

    async def resize(self, data: bytes, preset: ImagePreset | None = None) -> bytes:
        p = preset or self.preset
        out = await asyncio.to_thread(resize_image, data, p.width, p.height, p.quality, p.format)
        log.debug("Resized image to %dx%d (%d bytes)", p.width, p.height, len(out))
        return out
