from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, Sequence

from ..models.duel import NotFound, RoundStatus
from .credits import INSUFFICIENT_CREDITS, CreditLedger
from .duel_store import DuelStore
from .duels import DuelService
from .image_store import ImageStore
from .images import ImageProcessor, sniff_content_type
from .rounds import RoundCoordinator
from .wizards import WizardService


log = logging.getLogger(__name__)


IMAGE_GENERATION_FAILED = "image_generation_failed"


class ImageBackend(str, Enum):
    PROMPT_ONLY = "PROMPT_ONLY"
    CONTEXT_AWARE = "CONTEXT_AWARE"


class PromptImageBackend(Protocol):
    async def generate_image(self, prompt: str) -> bytes: ...


class ContextImageBackend(Protocol):
    async def generate_image(
        self, prompt: str, reference_images: Sequence[tuple[bytes, str]] = (), model: str | None = None
    ) -> bytes: ...


@dataclass
class IllustrationResult:
    success: bool
    text_only_mode: bool
    storage_ref: str | None = None
    reason: str | None = None
    already_consumed: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success, "text_only_mode": self.text_only_mode}
        for key in ("storage_ref", "reason", "already_consumed"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out


class IllustrationPipeline:
    """Turns an illustration prompt into a stored image attached to a round.

    Visual content is optional: every failure ends in a successful result in
    text-only mode carrying a reason code, never an exception.
    """

    def __init__(
        self,
        store: DuelStore,
        duels: DuelService,
        rounds: RoundCoordinator,
        credits: CreditLedger,
        images: ImageStore,
        wizards: WizardService,
        prompt_backend: PromptImageBackend | None = None,
        context_backend: ContextImageBackend | None = None,
        processor: ImageProcessor | None = None,
    ) -> None:
        self.store = store
        self.duels = duels
        self.rounds = rounds
        self.credits = credits
        self.images = images
        self.wizards = wizards
        self.prompt_backend = prompt_backend
        self.context_backend = context_backend
        # None disables the compress/resize step
        self.processor = processor

    async def generate_round_illustration(
        self,
        prompt: str,
        duel_id: str,
        round_number: int,
        backend: ImageBackend = ImageBackend.PROMPT_ONLY,
        user_id: str | None = None,
        skip_image_generation: bool = False,
    ) -> IllustrationResult:
        if skip_image_generation:
            return IllustrationResult(success=True, text_only_mode=True)

        already_consumed: bool | None = None
        try:
            if user_id:
                consumption = await self.credits.consume_image_credit_for_duel(
                    user_id, duel_id, {"round_number": round_number, "backend": backend.value}
                )
                if not consumption.success:
                    log.info("Duel %s round %d falls back to text only: %s", duel_id, round_number, consumption.reason)
                    await self.duels.set_text_only_mode(duel_id, INSUFFICIENT_CREDITS)
                    return IllustrationResult(success=True, text_only_mode=True, reason=INSUFFICIENT_CREDITS)
                already_consumed = consumption.already_consumed

            raw = await self._generate(prompt, duel_id, round_number, backend)
            data, content_type = await self._process(raw)
            ref = await self.images.store(data, content_type)

            rnd = await self.store.get_round_by_number(duel_id, round_number)
            if rnd is None:
                raise NotFound(f"Round {round_number} of duel {duel_id} not found")
            await self.rounds.update_round_illustration(rnd.id, ref)
            if round_number == 0:
                await self.duels.update_featured_illustration(duel_id, ref)
        except Exception as e:
            log.error(
                "Illustration for duel %s round %d failed: %s", duel_id, round_number, e, exc_info=True
            )
            return IllustrationResult(
                success=True,
                text_only_mode=True,
                reason=IMAGE_GENERATION_FAILED,
                already_consumed=already_consumed,
            )

        log.info("Illustrated duel %s round %d as %s", duel_id, round_number, ref)
        return IllustrationResult(
            success=True, text_only_mode=False, storage_ref=ref, already_consumed=already_consumed
        )

    async def _process(self, raw: bytes) -> tuple[bytes, str]:
        if self.processor is None:
            return raw, sniff_content_type(raw)
        try:
            return await self.processor.resize(raw), self.processor.content_type
        except Exception as e:
            log.warning("Image compression failed, storing original bytes: %s", e)
            return raw, sniff_content_type(raw)

    async def _generate(self, prompt: str, duel_id: str, round_number: int, backend: ImageBackend) -> bytes:
        if backend == ImageBackend.CONTEXT_AWARE and self.context_backend is not None:
            try:
                enhanced, refs = await self._context_for(prompt, duel_id, round_number)
                return await self.context_backend.generate_image(enhanced, refs)
            except Exception as e:
                if self.prompt_backend is None:
                    raise
                log.warning("Context-aware image generation failed (%s); falling back to prompt only", e)
        if self.prompt_backend is None:
            raise RuntimeError("No image backend configured")
        return await self.prompt_backend.generate_image(prompt)

    async def _context_for(
        self, prompt: str, duel_id: str, round_number: int
    ) -> tuple[str, list[tuple[bytes, str]]]:
        """Reference images and an enriched prompt for the context-aware backend."""
        duel = await self.duels.get_duel(duel_id)
        wizards = await self.wizards.get_wizards(duel.wizards)
        refs: list[tuple[bytes, str]] = []

        if round_number == 0:
            for w in wizards:
                if not w.illustration:
                    continue
                data = await self.images.get(w.illustration)
                if data:
                    refs.append((data, sniff_content_type(data)))
            if not refs:
                return prompt, refs
            return (
                f"{prompt}. Use the wizards from the reference images and create an epic magical arena scene "
                "with them positioned as opponents ready to duel. Generate a new image in low poly art style.",
                refs,
            )

        previous = None
        for rnd in await self.store.list_rounds(duel_id):
            if rnd.round_number < round_number and rnd.status == RoundStatus.COMPLETED and rnd.illustration_ref:
                if previous is None or rnd.round_number > previous.round_number:
                    previous = rnd
        if previous is None:
            return prompt, refs
        data = await self.images.get(previous.illustration_ref)
        if not data:
            return prompt, refs
        refs.append((data, sniff_content_type(data)))

        enhanced = (
            f"{prompt}. Continue the scene from the reference image, showing the progression of the magical duel. "
            "Keep the arena setting and wizard positions while showing the new magical effects."
        )
        if wizards:
            cast = ". ".join(f"{w.name}: {w.description}" for w in wizards)
            enhanced += (
                f" The wizards in this scene are: {cast}. Keep their visual characteristics from the previous image."
            )
        enhanced += " Generate a new image that builds on the reference image in low poly art style."
        return enhanced, refs
