from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Sequence

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential_jitter, retry_if_exception_type


log = logging.getLogger(__name__)


OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

_DATA_URL_RE = re.compile(r"^data:(image/[\w.+-]+);base64,(.+)$", re.DOTALL)

_RETRYABLE = (httpx.TimeoutException, httpx.TransportError)
_FALLBACK_ON = (httpx.HTTPError,)


@dataclass
class OpenRouterConfig:
    api_key: str
    default_model: str
    fallback_model: str
    image_model: str = "google/gemini-2.5-flash-image-preview"
    site_url: str | None = None
    app_name: str | None = None
    timeout_seconds: float = 60.0


class OpenRouterError(Exception):
    pass


def to_data_url(data: bytes, content_type: str = "image/png") -> str:
    return f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(url: str) -> bytes:
    m = _DATA_URL_RE.match(url.strip())
    if not m:
        raise OpenRouterError("Image payload is not a base64 data URL")
    try:
        return base64.b64decode(m.group(2), validate=False)
    except (binascii.Error, ValueError) as e:
        raise OpenRouterError(f"Could not decode image payload: {e}") from e


class OpenRouterClient:
    def __init__(self, cfg: OpenRouterConfig) -> None:
        self.cfg = cfg
        headers = {
            "Authorization": f"Bearer {cfg.api_key}",
            "Content-Type": "application/json",
        }
        if cfg.site_url:
            headers["HTTP-Referer"] = cfg.site_url
        if cfg.app_name:
            headers["X-Title"] = cfg.app_name

        self._client = httpx.AsyncClient(
            base_url=OPENROUTER_BASE_URL,
            headers=headers,
            timeout=cfg.timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @retry(
        reraise=True,
        wait=wait_exponential_jitter(initial=1, max=8),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(_RETRYABLE),
    )
    async def chat_completion(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> tuple[str, dict[str, Any]]:
        """Call the Chat Completions API and return ``(text, meta)``.

        If the chosen model fails, the configured fallback model is tried once.
        """
        chosen_model = model or self.cfg.default_model
        extra = {"response_format": response_format} if response_format else {}
        try:
            data, meta = await self._post(messages, chosen_model, temperature, max_tokens, **extra)
        except (OpenRouterError, *_FALLBACK_ON) as e:
            if chosen_model == self.cfg.fallback_model:
                raise
            log.warning("OpenRouter model %s failed: %s; trying fallback %s", chosen_model, e, self.cfg.fallback_model)
            try:
                data, meta = await self._post(messages, self.cfg.fallback_model, temperature, max_tokens, **extra)
            except (OpenRouterError, *_FALLBACK_ON) as fallback_error:
                log.error("OpenRouter fallback model also failed (%s): %s", self.cfg.fallback_model, fallback_error)
                raise OpenRouterError(
                    f"Both primary ({chosen_model}) and fallback ({self.cfg.fallback_model}) models failed. "
                    f"Last error: {fallback_error}"
                ) from fallback_error
        return self._message_text(data), meta

    @retry(
        reraise=True,
        wait=wait_exponential_jitter(initial=1, max=8),
        stop=stop_after_attempt(2),
        retry=retry_if_exception_type(_RETRYABLE),
    )
    async def generate_image(
        self,
        prompt: str,
        reference_images: Sequence[tuple[bytes, str]] = (),
        model: str | None = None,
    ) -> bytes:
        """Ask an image-capable model for one picture.

        ``reference_images`` are ``(bytes, content_type)`` pairs sent alongside
        the prompt as data URLs. Returns the raw bytes of the first image.
        """
        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        for data, content_type in reference_images:
            content.append({"type": "image_url", "image_url": {"url": to_data_url(data, content_type)}})
        messages = [{"role": "user", "content": content}]

        data, meta = await self._post(messages, model or self.cfg.image_model, None, None, modalities=["image", "text"])
        message = self._message(data)
        for image in message.get("images") or []:
            url = (image.get("image_url") or {}).get("url") if isinstance(image, dict) else None
            if url:
                log.debug("Image generated by %s (request %s)", meta.get("model"), meta.get("request_id"))
                return decode_data_url(url)

        # Some providers inline the data URL in the text content
        text = message.get("content")
        if isinstance(text, str):
            m = re.search(r"data:image/[\w.+-]+;base64,[A-Za-z0-9+/=]+", text)
            if m:
                return decode_data_url(m.group(0))
        raise OpenRouterError(f"No image in response from {meta.get('model')}")

    async def _post(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None,
        max_tokens: int | None,
        **extra: Any,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        payload: dict[str, Any] = {"model": model, "messages": messages, **extra}
        if temperature is not None:
            payload["temperature"] = float(temperature)
        if max_tokens is not None:
            payload["max_tokens"] = int(max_tokens)

        resp = await self._client.post("/chat/completions", content=json.dumps(payload))
        request_id = resp.headers.get("x-request-id")
        try:
            data = resp.json()
        except json.JSONDecodeError:
            log.error(
                "OpenRouter returned non-JSON response, status=%s id=%s body=%s",
                resp.status_code,
                request_id,
                resp.text[:500],
            )
            raise OpenRouterError(f"Invalid JSON from OpenRouter (status={resp.status_code})")

        if resp.status_code >= 400:
            if not isinstance(data, dict):
                raise OpenRouterError(f"OpenRouter error {resp.status_code}: No response data")
            error_obj = data.get("error") if isinstance(data.get("error"), dict) else {}
            message = error_obj.get("message") or data.get("message") or str(data)[:200]
            raise OpenRouterError(f"OpenRouter error {resp.status_code}: {message}")

        if not data or not isinstance(data, dict):
            raise OpenRouterError("Empty response from OpenRouter")

        meta = {
            "request_id": request_id,
            "model": data.get("model", model),
            "usage": data.get("usage"),
        }
        return data, meta

    @staticmethod
    def _message(data: dict[str, Any]) -> dict[str, Any]:
        choices = data.get("choices")
        if not choices or not isinstance(choices, list):
            raise OpenRouterError(f"Malformed response from OpenRouter: missing choices: {data}")
        choice = choices[0]
        if not isinstance(choice, dict):
            raise OpenRouterError(f"Malformed response from OpenRouter: {data}")
        return choice.get("message") or {}

    @classmethod
    def _message_text(cls, data: dict[str, Any]) -> str:
        text = cls._message(data).get("content") or ""
        if not isinstance(text, str):
            text = str(text)
        return text
