from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential_jitter, retry_if_exception_type


log = logging.getLogger(__name__)


FAL_BASE_URL = "https://fal.run"


@dataclass
class FalConfig:
    api_key: str
    model: str = "fal-ai/flux/schnell"
    image_size: str = "square_hd"
    num_inference_steps: int = 4
    timeout_seconds: float = 120.0


class FalError(Exception):
    pass


class FalClient:
    """Prompt-only image synthesis through fal.ai's synchronous endpoint."""

    def __init__(self, cfg: FalConfig) -> None:
        if not cfg.api_key:
            raise FalError("FAL_KEY is not configured")
        self.cfg = cfg
        self._client = httpx.AsyncClient(
            base_url=FAL_BASE_URL,
            headers={"Authorization": f"Key {cfg.api_key}", "Content-Type": "application/json"},
            timeout=cfg.timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @retry(
        reraise=True,
        wait=wait_exponential_jitter(initial=1, max=8),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    )
    async def generate_image(self, prompt: str) -> bytes:
        payload: dict[str, Any] = {
            "prompt": prompt,
            "image_size": self.cfg.image_size,
            "num_inference_steps": self.cfg.num_inference_steps,
            "num_images": 1,
            "enable_safety_checker": True,
        }
        resp = await self._client.post(f"/{self.cfg.model}", json=payload)
        if resp.status_code >= 400:
            raise FalError(f"fal.ai error {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise FalError("Invalid JSON from fal.ai") from e

        images = data.get("images") if isinstance(data, dict) else None
        url = images[0].get("url") if images and isinstance(images[0], dict) else None
        if not url:
            raise FalError("No image generated from fal.ai")

        img = await self._client.get(url)
        if img.status_code >= 400:
            raise FalError(f"Failed to fetch generated image: {img.status_code}")
        log.debug("fal.ai produced %d bytes for prompt of %d chars", len(img.content), len(prompt))
        return img.content
