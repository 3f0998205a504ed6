"""Tests for OpenRouter client."""
import base64
import json
import pytest
from unittest.mock import AsyncMock, patch, MagicMock
from arcane.services.openrouter_client import (
    OpenRouterClient,
    OpenRouterConfig,
    OpenRouterError,
    decode_data_url,
    to_data_url,
)


PNG_BYTES = b"\x89PNG\r\n\x1a\nimage-bytes"


@pytest.fixture
def mock_config():
    """Create a mock configuration."""
    return OpenRouterConfig(
        api_key="test-key",
        default_model="test/model",
        fallback_model="test/fallback",
        image_model="test/image",
        timeout_seconds=10.0,
    )


@pytest.fixture
async def client(mock_config):
    """Create a client instance."""
    c = OpenRouterClient(mock_config)
    yield c
    await c.aclose()


def _response(body, status=200, headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.json.return_value = body
    return resp


@pytest.mark.asyncio
async def test_client_initialization(mock_config):
    """Test client initializes with correct config."""
    client = OpenRouterClient(mock_config)

    assert client.cfg.api_key == "test-key"
    assert client.cfg.image_model == "test/image"
    assert client._client.headers["Authorization"] == "Bearer test-key"

    await client.aclose()


@pytest.mark.asyncio
async def test_chat_completion_success(client):
    """Test successful chat completion."""
    body = {
        "choices": [{"message": {"content": '{"narration": "Sparks"}'}}],
        "model": "test/model",
        "usage": {"prompt_tokens": 10, "completion_tokens": 7},
    }

    with patch.object(client._client, "post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = _response(body, headers={"x-request-id": "test-123"})

        text, meta = await client.chat_completion([{"role": "user", "content": "Narrate"}])

        assert text == '{"narration": "Sparks"}'
        assert meta["request_id"] == "test-123"
        assert meta["model"] == "test/model"
        assert meta["usage"]["prompt_tokens"] == 10


@pytest.mark.asyncio
async def test_chat_completion_fallback_on_error(client):
    """Test fallback model is used when primary fails."""
    error = _response({"error": {"message": "Server error"}}, status=500)
    success = _response(
        {"choices": [{"message": {"content": "Fallback response"}}], "model": "test/fallback"},
        headers={"x-request-id": "fallback-123"},
    )

    with patch.object(client._client, "post", new_callable=AsyncMock) as mock_post:
        mock_post.side_effect = [error, success]

        text, meta = await client.chat_completion([{"role": "user", "content": "Test"}], model="test/model")

        assert text == "Fallback response"
        assert meta["model"] == "test/fallback"
        assert mock_post.call_count == 2
        assert json.loads(mock_post.call_args[1]["content"])["model"] == "test/fallback"


@pytest.mark.asyncio
async def test_chat_completion_raises_when_both_fail(client):
    """Test error is raised when both primary and fallback fail."""
    with patch.object(client._client, "post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = _response({"error": {"message": "Server error"}}, status=500)

        with pytest.raises(OpenRouterError) as exc_info:
            await client.chat_completion([{"role": "user", "content": "Test"}])

        assert "both primary" in str(exc_info.value).lower()
        assert mock_post.call_count == 2


@pytest.mark.asyncio
async def test_chat_completion_fallback_model_is_not_retried(client):
    with patch.object(client._client, "post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = _response({"error": {"message": "nope"}}, status=429)

        with pytest.raises(OpenRouterError):
            await client.chat_completion([{"role": "user", "content": "Test"}], model="test/fallback")

        assert mock_post.call_count == 1


@pytest.mark.asyncio
async def test_chat_completion_with_parameters(client):
    """Test that temperature, max_tokens and response_format are passed correctly."""
    with patch.object(client._client, "post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = _response({"choices": [{"message": {"content": "Test"}}]})

        await client.chat_completion(
            [{"role": "user", "content": "Test"}],
            model="custom/model",
            temperature=1.2,
            max_tokens=5000,
            response_format={"type": "json_object"},
        )

        payload = json.loads(mock_post.call_args[1]["content"])
        assert payload["model"] == "custom/model"
        assert payload["temperature"] == 1.2
        assert payload["max_tokens"] == 5000
        assert payload["response_format"] == {"type": "json_object"}


class TestGenerateImage:
    @pytest.mark.asyncio
    async def test_image_from_images_field(self, client):
        body = {
            "choices": [{"message": {"content": "", "images": [{"image_url": {"url": to_data_url(PNG_BYTES)}}]}}],
            "model": "test/image",
        }

        with patch.object(client._client, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(body)

            data = await client.generate_image("a low poly arena", reference_images=[(b"ref", "image/jpeg")])

        assert data == PNG_BYTES
        payload = json.loads(mock_post.call_args[1]["content"])
        assert payload["model"] == "test/image"
        assert payload["modalities"] == ["image", "text"]
        content = payload["messages"][0]["content"]
        assert content[0] == {"type": "text", "text": "a low poly arena"}
        assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")

    @pytest.mark.asyncio
    async def test_image_inlined_in_text(self, client):
        text = f"Here you go: {to_data_url(PNG_BYTES)} enjoy"
        body = {"choices": [{"message": {"content": text}}]}

        with patch.object(client._client, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(body)

            assert await client.generate_image("prompt") == PNG_BYTES

    @pytest.mark.asyncio
    async def test_no_image_raises(self, client):
        body = {"choices": [{"message": {"content": "I can only describe it."}}]}

        with patch.object(client._client, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(body)

            with pytest.raises(OpenRouterError):
                await client.generate_image("prompt")


def test_data_url_round_trip():
    url = to_data_url(PNG_BYTES, "image/png")

    assert url == "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")
    assert decode_data_url(url) == PNG_BYTES


def test_decode_rejects_plain_urls():
    with pytest.raises(OpenRouterError):
        decode_data_url("https://example.com/a.png")
