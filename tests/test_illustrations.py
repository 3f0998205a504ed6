"""Tests for the round illustration pipeline."""
import io
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from arcane.models.duel import FixedRounds, RoundOutcome
from arcane.services.credits import INSUFFICIENT_CREDITS
from arcane.services.illustrations import (
    IMAGE_GENERATION_FAILED,
    ImageBackend,
    IllustrationPipeline,
)
from arcane.services.image_store import ImageStore
from arcane.services.images import ImagePreset, ImageProcessor

from conftest import start_duel_now


def _png(color=(30, 60, 200)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (40, 40), color).save(buf, format="PNG")
    return buf.getvalue()


def _backend(result=None, error=None):
    backend = MagicMock()
    backend.generate_image = AsyncMock(return_value=result if result is not None else _png(), side_effect=error)
    return backend


@pytest.fixture
def images(tmp_path):
    return ImageStore(str(tmp_path / "images"))


@pytest.fixture
def make_pipeline(store, duels, coordinator, credits, images, wizards):
    def _make(prompt_backend=None, context_backend=None, processor=None):
        return IllustrationPipeline(
            store,
            duels,
            coordinator,
            credits,
            images,
            wizards,
            prompt_backend=prompt_backend,
            context_backend=context_backend,
            processor=processor,
        )

    return _make


@pytest.mark.asyncio
async def test_skip_returns_text_only_without_calls(make_pipeline, running_duel):
    duel_id, _ = running_duel
    backend = _backend()

    result = await make_pipeline(backend).generate_round_illustration(
        "prompt", duel_id, 1, skip_image_generation=True
    )

    assert result.success and result.text_only_mode
    assert result.reason is None
    backend.generate_image.assert_not_called()


@pytest.mark.asyncio
async def test_insufficient_credits_switches_duel_to_text_only(make_pipeline, duels, running_duel):
    duel_id, _ = running_duel
    backend = _backend()

    result = await make_pipeline(backend).generate_round_illustration("prompt", duel_id, 0, user_id="p-1")

    assert result.to_dict() == {"success": True, "text_only_mode": True, "reason": INSUFFICIENT_CREDITS}
    backend.generate_image.assert_not_called()
    duel = await duels.get_duel(duel_id)
    assert duel.text_only_mode is True
    assert duel.text_only_reason == INSUFFICIENT_CREDITS


@pytest.mark.asyncio
async def test_intro_illustration_becomes_featured(make_pipeline, duels, store, credits, images, running_duel):
    duel_id, _ = running_duel
    await credits.grant_credits("p-1", 1)
    png = _png()

    result = await make_pipeline(_backend(png)).generate_round_illustration("prompt", duel_id, 0, user_id="p-1")

    assert result.success and not result.text_only_mode
    assert result.already_consumed is False
    assert await images.get(result.storage_ref) == png
    intro = await store.get_round_by_number(duel_id, 0)
    assert intro.illustration_ref == result.storage_ref
    assert (await duels.get_duel(duel_id)).featured_illustration == result.storage_ref
    assert await credits.get_credits("p-1") == 0


@pytest.mark.asyncio
async def test_later_images_reuse_the_duel_credit(make_pipeline, finalizer, coordinator, duels, store, credits, running_duel):
    duel_id, round_id = running_duel
    await credits.grant_credits("p-1", 1)
    pipeline = make_pipeline(_backend())
    await pipeline.generate_round_illustration("intro", duel_id, 0, user_id="p-1")

    await coordinator.submit_action(duel_id, "w-a", "Fireball")
    await coordinator.submit_action(duel_id, "w-b", "Shield")
    await finalizer.apply_outcome(round_id, RoundOutcome(narrative="Round one."))

    result = await pipeline.generate_round_illustration("round one", duel_id, 1, user_id="p-1")

    assert result.already_consumed is True
    assert not result.text_only_mode
    assert (await store.get_round_by_number(duel_id, 1)).illustration_ref == result.storage_ref
    featured = (await duels.get_duel(duel_id)).featured_illustration
    assert featured != result.storage_ref


@pytest.mark.asyncio
async def test_generation_failure_is_text_only_result(make_pipeline, duels, running_duel):
    duel_id, _ = running_duel

    result = await make_pipeline(_backend(error=RuntimeError("provider down"))).generate_round_illustration(
        "prompt", duel_id, 0
    )

    assert result.success and result.text_only_mode
    assert result.reason == IMAGE_GENERATION_FAILED
    duel = await duels.get_duel(duel_id)
    assert duel.featured_illustration is None
    assert duel.text_only_mode is False


@pytest.mark.asyncio
async def test_no_backend_configured(make_pipeline, running_duel):
    duel_id, _ = running_duel

    result = await make_pipeline().generate_round_illustration("prompt", duel_id, 0)

    assert result.reason == IMAGE_GENERATION_FAILED


@pytest.mark.asyncio
async def test_missing_round_is_reported_as_failure(make_pipeline, running_duel):
    duel_id, _ = running_duel

    result = await make_pipeline(_backend()).generate_round_illustration("prompt", duel_id, 7)

    assert result.reason == IMAGE_GENERATION_FAILED


@pytest.mark.asyncio
async def test_processor_resizes_before_storing(make_pipeline, images, running_duel):
    duel_id, _ = running_duel
    pipeline = make_pipeline(_backend(), processor=ImageProcessor(ImagePreset(16, 16, 80, "png")))

    result = await pipeline.generate_round_illustration("prompt", duel_id, 0)

    stored = await images.get(result.storage_ref)
    with Image.open(io.BytesIO(stored)) as im:
        assert im.size == (16, 16)


@pytest.mark.asyncio
async def test_processor_failure_keeps_original_bytes(make_pipeline, images, running_duel):
    duel_id, _ = running_duel
    processor = MagicMock()
    processor.resize = AsyncMock(side_effect=OSError("cannot identify image"))
    raw = b"\x89PNG\r\n\x1a\nnot-really"

    result = await make_pipeline(_backend(raw), processor=processor).generate_round_illustration(
        "prompt", duel_id, 0
    )

    assert not result.text_only_mode
    assert await images.get(result.storage_ref) == raw


class TestContextAware:
    @pytest.mark.asyncio
    async def test_intro_sends_wizard_portraits(self, make_pipeline, duels, wizards, images):
        a = await wizards.create_wizard("p-1", "Aldra", "storm caller")
        b = await wizards.create_wizard("p-2", "Bexley", "stone shaper")
        portrait = _png((1, 2, 3))
        await wizards.set_illustration(a.id, await images.store(portrait))
        duel_id = await duels.create_duel(FixedRounds(3), [a.id, b.id], ["p-1", "p-2"])
        await start_duel_now(duels, duel_id)

        context = _backend()
        prompt = _backend()
        await make_pipeline(prompt, context).generate_round_illustration(
            "two wizards", duel_id, 0, backend=ImageBackend.CONTEXT_AWARE
        )

        prompt.generate_image.assert_not_called()
        sent_prompt, refs = context.generate_image.await_args.args
        assert sent_prompt.startswith("two wizards")
        assert refs == [(portrait, "image/png")]

    @pytest.mark.asyncio
    async def test_round_uses_previous_illustration(
        self, make_pipeline, coordinator, finalizer, images, wizards, duels
    ):
        a = await wizards.create_wizard("p-1", "Aldra", "storm caller")
        b = await wizards.create_wizard("p-2", "Bexley", "stone shaper")
        duel_id = await duels.create_duel(FixedRounds(3), [a.id, b.id], ["p-1", "p-2"])
        round_id = await start_duel_now(duels, duel_id)

        intro_png = _png((9, 9, 9))
        pipeline = make_pipeline(_backend(intro_png), _backend(intro_png))
        await pipeline.generate_round_illustration("intro", duel_id, 0)

        await coordinator.submit_action(duel_id, a.id, "Lightning")
        await coordinator.submit_action(duel_id, b.id, "Wall")
        await finalizer.apply_outcome(round_id, RoundOutcome(narrative="Round one."))

        context = _backend()
        pipeline.context_backend = context
        await pipeline.generate_round_illustration("round one", duel_id, 1, backend=ImageBackend.CONTEXT_AWARE)

        sent_prompt, refs = context.generate_image.await_args.args
        assert "Aldra: storm caller" in sent_prompt
        assert refs == [(intro_png, "image/png")]

    @pytest.mark.asyncio
    async def test_context_failure_falls_back_to_prompt_only(self, make_pipeline, running_duel):
        duel_id, _ = running_duel
        context = _backend(error=RuntimeError("model refused"))
        prompt = _backend()

        result = await make_pipeline(prompt, context).generate_round_illustration(
            "prompt", duel_id, 0, backend=ImageBackend.CONTEXT_AWARE
        )

        assert not result.text_only_mode
        prompt.generate_image.assert_awaited_once_with("prompt")

    @pytest.mark.asyncio
    async def test_prompt_only_ignores_context_backend(self, make_pipeline, running_duel):
        duel_id, _ = running_duel
        context = _backend()
        prompt = _backend()

        await make_pipeline(prompt, context).generate_round_illustration("prompt", duel_id, 0)

        context.generate_image.assert_not_called()
        prompt.generate_image.assert_awaited_once_with("prompt")
