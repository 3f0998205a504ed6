from __future__ import annotations

import asyncio
import logging
import os
import re
import uuid


log = logging.getLogger(__name__)


_REF_RE = re.compile(r"^[0-9a-f]{32}$")


class ImageStore:
    """Filesystem object storage for finished images, addressed by opaque refs."""

    def __init__(self, root: str, base_url: str | None = None) -> None:
        self.root = root
        self.base_url = base_url.rstrip("/") if base_url else None
        os.makedirs(self.root, exist_ok=True)

    def _path(self, ref: str) -> str:
        if not _REF_RE.match(ref):
            raise ValueError(f"Invalid image ref: {ref!r}")
        return os.path.join(self.root, ref[:2], ref)

    async def store(self, data: bytes, content_type: str = "image/png") -> str:
        if not data:
            raise ValueError("Refusing to store an empty image")
        ref = uuid.uuid4().hex
        path = self._path(ref)
        await asyncio.to_thread(self._write, path, data)
        log.debug("Stored %s image %s (%d bytes)", content_type, ref, len(data))
        return ref

    @staticmethod
    def _write(path: str, data: bytes) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = f"{path}.tmp"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    async def get(self, ref: str) -> bytes | None:
        path = self._path(ref)
        if not os.path.isfile(path):
            return None
        return await asyncio.to_thread(self._read, path)

    @staticmethod
    def _read(path: str) -> bytes:
        with open(path, "rb") as f:
            return f.read()

    def url_for(self, ref: str) -> str:
        if self.base_url:
            return f"{self.base_url}/{ref}"
        return "file://" + os.path.abspath(self._path(ref))
