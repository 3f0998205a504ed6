"""Slash commands for wizard duels."""

from __future__ import annotations

import logging

import discord
from discord.commands import SlashCommandGroup, option
from discord.utils import basic_autocomplete

from arcane.models.duel import (
    AlreadyTerminal,
    Duel,
    DuelError,
    DuelStatus,
    DuplicatePlayer,
    FixedRounds,
    InvalidState,
    NotFound,
    ToTheDeath,
)

log = logging.getLogger(__name__)

# Discord message character limit
DISCORD_MESSAGE_LIMIT = 2000
MAX_FIXED_ROUNDS = 10

_STATUS_LABELS = {
    DuelStatus.WAITING_FOR_PLAYERS: "Waiting for players",
    DuelStatus.IN_PROGRESS: "In progress",
    DuelStatus.COMPLETED: "Completed",
    DuelStatus.CANCELLED: "Cancelled",
}


def _clip(text: str, max_len: int = DISCORD_MESSAGE_LIMIT) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3].rstrip() + "..."


def describe_error(e: DuelError) -> str:
    """User-facing text for a duel precondition failure."""
    if isinstance(e, NotFound):
        return f"Not found: {e}"
    if isinstance(e, DuplicatePlayer):
        return "You are already part of this duel."
    if isinstance(e, AlreadyTerminal):
        return "This duel is already over."
    if isinstance(e, InvalidState):
        return f"That can't be done right now: {e}"
    return str(e)


def format_duel_status(duel: Duel, names: dict[str, str]) -> str:
    lines = [
        f"**Duel {duel.shortcode}**: {_STATUS_LABELS.get(duel.status, duel.status.value)}",
        f"Format: {duel.round_limit.describe()}",
    ]
    if duel.status == DuelStatus.IN_PROGRESS:
        lines.append(f"Round {duel.current_round}")
    for wid in duel.wizards:
        name = names.get(wid, wid)
        marker = ""
        if duel.status == DuelStatus.IN_PROGRESS and wid in duel.pending_actors:
            marker = " (waiting for spell)"
        lines.append(f"- **{name}**: {duel.hit_points_for(wid)} HP, {duel.points_for(wid)} pts{marker}")
    if duel.status == DuelStatus.COMPLETED:
        winners = ", ".join(names.get(w, w) for w in sorted(duel.winners or ())) or "nobody"
        lines.append(f"Winners: {winners}")
    return "\n".join(lines)


class DuelCog(discord.Cog):
    """Cog exposing duel lifecycle and spell casting."""

    def __init__(self, bot: discord.Bot):
        self.bot = bot

    duel = SlashCommandGroup("duel", "Wizard duel commands")
    wizard = SlashCommandGroup("wizard", "Wizard commands")

    @staticmethod
    async def _own_wizard_autocomplete(ctx: discord.AutocompleteContext):  # type: ignore[override]
        try:
            wizards = await ctx.bot.arcane_wizards.list_user_wizards(str(ctx.interaction.user.id))  # type: ignore[attr-defined]
            query = (ctx.value or "").lower()
            return [
                discord.OptionChoice(name=w.name[:100], value=w.id)
                for w in wizards
                if not query or query in w.name.lower()
            ][:25]
        except Exception:
            log.debug("wizard autocomplete failed", exc_info=True)
            return []

    async def _duel_for(self, ctx: discord.ApplicationContext, shortcode: str) -> Duel | None:
        duel = await self.bot.arcane_duels.get_duel_by_shortcode(shortcode)  # type: ignore[attr-defined]
        if duel is None:
            await ctx.respond(f"No duel with code `{shortcode.upper()}`.", ephemeral=True)
        return duel

    async def _check_owner(self, ctx: discord.ApplicationContext, wizard_id: str) -> bool:
        w = await self.bot.arcane_wizards.get_wizard(wizard_id)  # type: ignore[attr-defined]
        if w is None or w.owner != str(ctx.author.id):
            await ctx.respond("Pick one of your own wizards.", ephemeral=True)
            return False
        return True

    async def _names(self, duel: Duel) -> dict[str, str]:
        wizards = await self.bot.arcane_wizards.get_wizards(duel.wizards)  # type: ignore[attr-defined]
        return {w.id: w.name for w in wizards}

    @duel.command(name="create", description="Create a duel and get a join code")
    @option("wizard", str, description="Your wizard", required=True, autocomplete=basic_autocomplete(_own_wizard_autocomplete))
    @option("mode", str, description="Duel format", required=False, default="rounds", choices=["rounds", "death"])
    @option("rounds", int, description=f"Number of rounds (1-{MAX_FIXED_ROUNDS})", required=False, default=3)
    async def duel_create(
        self,
        ctx: discord.ApplicationContext,  # type: ignore[override]
        wizard: str,
        mode: str = "rounds",
        rounds: int = 3,
    ):
        if not await self._check_owner(ctx, wizard):
            return
        if mode == "death":
            limit = ToTheDeath()
        else:
            if rounds < 1 or rounds > MAX_FIXED_ROUNDS:
                await ctx.respond(f"Rounds must be between 1 and {MAX_FIXED_ROUNDS}.", ephemeral=True)
                return
            limit = FixedRounds(rounds)

        duel_id = await self.bot.arcane_duels.create_duel(limit, [wizard], [str(ctx.author.id)])  # type: ignore[attr-defined]
        duel = await self.bot.arcane_duels.get_duel(duel_id)  # type: ignore[attr-defined]
        log.info("Duel %s created via /duel create by %s", duel.shortcode, ctx.author.id)
        await ctx.respond(
            f"Duel created: {limit.describe()}.\nShare the code **{duel.shortcode}** so an opponent can `/duel join`."
        )

    @duel.command(name="join", description="Join a duel with a code")
    @option("code", str, description="Duel code", required=True)
    @option("wizard", str, description="Your wizard", required=True, autocomplete=basic_autocomplete(_own_wizard_autocomplete))
    async def duel_join(self, ctx: discord.ApplicationContext, code: str, wizard: str):  # type: ignore[override]
        if not await self._check_owner(ctx, wizard):
            return
        duel = await self._duel_for(ctx, code)
        if duel is None:
            return
        try:
            await self.bot.arcane_duels.join_duel(duel.id, str(ctx.author.id), [wizard])  # type: ignore[attr-defined]
        except DuelError as e:
            await ctx.respond(describe_error(e), ephemeral=True)
            return
        await ctx.respond(f"Joined duel **{duel.shortcode}**. The Arcane Arbiter is preparing the arena...")

    @duel.command(name="start", description="Start a duel that is waiting for players")
    @option("code", str, description="Duel code", required=True)
    async def duel_start(self, ctx: discord.ApplicationContext, code: str):  # type: ignore[override]
        duel = await self._duel_for(ctx, code)
        if duel is None:
            return
        if str(ctx.author.id) not in duel.players:
            await ctx.respond("Only players in this duel can start it.", ephemeral=True)
            return
        try:
            await self.bot.arcane_duels.start_duel(duel.id)  # type: ignore[attr-defined]
        except DuelError as e:
            await ctx.respond(describe_error(e), ephemeral=True)
            return
        await ctx.respond(f"Duel **{duel.shortcode}** is starting. Watch for the introduction!")

    @duel.command(name="cast", description="Cast your spell for the current round")
    @option("code", str, description="Duel code", required=True)
    @option("wizard", str, description="Your wizard", required=True, autocomplete=basic_autocomplete(_own_wizard_autocomplete))
    @option("spell", str, description="What your wizard does this round", required=True)
    async def duel_cast(self, ctx: discord.ApplicationContext, code: str, wizard: str, spell: str):  # type: ignore[override]
        if not await self._check_owner(ctx, wizard):
            return
        duel = await self._duel_for(ctx, code)
        if duel is None:
            return
        try:
            await self.bot.arcane_rounds.submit_action(duel.id, wizard, spell)  # type: ignore[attr-defined]
        except DuelError as e:
            await ctx.respond(describe_error(e), ephemeral=True)
            return
        except ValueError as e:
            await ctx.respond(str(e), ephemeral=True)
            return
        await ctx.respond("Your spell is cast. The round resolves once every wizard has acted.", ephemeral=True)

    @duel.command(name="cancel", description="Cancel a duel you are part of")
    @option("code", str, description="Duel code", required=True)
    async def duel_cancel(self, ctx: discord.ApplicationContext, code: str):  # type: ignore[override]
        duel = await self._duel_for(ctx, code)
        if duel is None:
            return
        if str(ctx.author.id) not in duel.players:
            await ctx.respond("Only players in this duel can cancel it.", ephemeral=True)
            return
        try:
            await self.bot.arcane_duels.cancel_duel(duel.id)  # type: ignore[attr-defined]
        except DuelError as e:
            await ctx.respond(describe_error(e), ephemeral=True)
            return
        log.info("Duel %s cancelled via /duel cancel by %s", duel.shortcode, ctx.author.id)
        await ctx.respond(f"Duel **{duel.shortcode}** has been cancelled.")

    @duel.command(name="status", description="Show a duel's scores and latest narration")
    @option("code", str, description="Duel code", required=True)
    async def duel_status(self, ctx: discord.ApplicationContext, code: str):  # type: ignore[override]
        duel = await self._duel_for(ctx, code)
        if duel is None:
            return
        text = format_duel_status(duel, await self._names(duel))
        rounds = await self.bot.arcane_duels.get_rounds(duel.id)  # type: ignore[attr-defined]
        latest = next((r for r in reversed(rounds) if r.outcome is not None), None)
        if latest is not None:
            summary = latest.outcome.result_summary or latest.outcome.narrative
            text += f"\n\n_{summary}_"
        await ctx.respond(_clip(text))

    @wizard.command(name="create", description="Create a new wizard")
    @option("name", str, description="Wizard name", required=True)
    @option("description", str, description="Appearance, style and magic", required=False, default="")
    async def wizard_create(self, ctx: discord.ApplicationContext, name: str, description: str = ""):  # type: ignore[override]
        try:
            w = await self.bot.arcane_wizards.create_wizard(str(ctx.author.id), name, description)  # type: ignore[attr-defined]
        except ValueError as e:
            await ctx.respond(str(e), ephemeral=True)
            return
        await ctx.respond(f"**{w.name}** has entered the realm.", ephemeral=True)


def setup(bot: discord.Bot):
    """Setup the DuelCog and optionally scope commands to specific guilds."""
    gids = getattr(getattr(bot, "arcane_cfg", None), "command_guild_ids", None)
    if gids:
        for group in (DuelCog.duel, DuelCog.wizard):
            group.guild_ids = gids  # type: ignore[attr-defined]
            for sc in getattr(group, "subcommands", []) or []:
                try:
                    setattr(sc, "guild_ids", gids)
                except AttributeError:
                    # Some subcommand types may not support guild_ids
                    pass
        log.info("duel commands scoped to guilds: %s", ",".join(str(g) for g in gids))
    bot.add_cog(DuelCog(bot))
