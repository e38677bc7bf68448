from __future__ import annotations

import asyncio
from typing import FrozenSet, Optional

import discord
import structlog
from discord.ext import commands

from application.context import KasseContext
from application.services import (
    ExternalContext,
    account_summary,
    change_password,
    get_transactions,
    list_cards,
    login_external,
    logout_external,
    register_card_by_swipe,
    register_user,
    remove_card,
    resolve_external,
    top_up,
    update_card,
)
from domain.errors import KasseError, ReaderClosedError
from domain.models import RouteOutcome, User
from infrastructure.reader.queue_reader import QueueReader
from interfaces.messages import (
    HELP_TEXT,
    format_amount,
    format_cards,
    format_card_id,
    format_outcome,
    format_summary,
    format_transactions,
    parse_amount,
    parse_card_id,
)

PROVIDER = "discord"

logger = structlog.get_logger(__name__)


def _build_external_context(user: discord.abc.User) -> ExternalContext:
    """Create an `ExternalContext` from a Discord user."""

    return ExternalContext(
        provider=PROVIDER,
        provider_user_id=str(user.id),
        display_name=user.display_name or user.name,
    )


class DiscordReporter:
    """
    Sends swipe results to the card owner as a direct message.

    `report` is called from the ingestion thread, so sending is scheduled on
    the bot's event loop.
    """

    def __init__(self, bot: commands.Bot, ctx: KasseContext) -> None:
        self._bot = bot
        self._ctx = ctx

    def report(self, outcome: RouteOutcome) -> None:
        result = outcome.result
        if result is None or result.user is None or not self._bot.is_ready():
            return
        text = format_outcome(outcome)
        for discord_id in self._ctx.identities.get_external_ids_for_user(PROVIDER, result.user.id):
            asyncio.run_coroutine_threadsafe(self._send(int(discord_id), text), self._bot.loop)

    async def _send(self, discord_id: int, text: str) -> None:
        try:
            user = await self._bot.fetch_user(discord_id)
            await user.send(text)
        except discord.DiscordException:
            logger.warning("discord_report_failed", discord_id=discord_id, exc_info=True)


def create_discord_bot(
    ctx: KasseContext,
    admin_ids: FrozenSet[str] = frozenset(),
) -> commands.Bot:
    """
    Configure and return a Discord bot with behaviour analogous to
    the Telegram interface. Password commands are only accepted in DMs.
    """

    intents = discord.Intents.default()
    intents.message_content = True

    # Disable the default help command so we can provide our own `!help`.
    bot = commands.Bot(command_prefix="!", intents=intents, help_command=None)

    async def require_user(ctx_: commands.Context) -> Optional[User]:
        user = resolve_external(_build_external_context(ctx_.author), ctx.identities)
        if user is None:
            await ctx_.send("Please log in first: !login <name> <password> (in a DM)")
        return user

    async def require_dm(ctx_: commands.Context) -> bool:
        if ctx_.guild is not None:
            await ctx_.send("Please send your password in a direct message.")
            return False
        return True

    @bot.event
    async def on_ready():
        logger.info("discord_ready", user=str(bot.user), user_id=bot.user.id)

    @bot.event
    async def on_command_error(ctx_: commands.Context, error: commands.CommandError):
        original = getattr(error, "original", error)
        if isinstance(original, KasseError):
            logger.error("discord_command_failed", command=str(ctx_.command), error=str(original))
            await ctx_.send("Internal error, please try again later.")
        elif isinstance(error, (commands.MissingRequiredArgument, commands.BadArgument)):
            await ctx_.send(f"Usage: !{ctx_.command} {ctx_.command.signature}")
        elif not isinstance(error, commands.CommandNotFound):
            logger.error("discord_command_failed", command=str(ctx_.command), error=str(error))

    @bot.command(name="help")
    async def help_cmd(ctx_: commands.Context):
        lines = "\n".join("!" + line for line in HELP_TEXT.splitlines())
        await ctx_.send(f"```\n{lines}\n```")

    @bot.command(name="register")
    async def register_cmd(ctx_: commands.Context, name: str, password: str):
        if not await require_dm(ctx_):
            return
        # bcrypt hashing blocks; keep it off the event loop.
        result = await asyncio.to_thread(register_user, name, password, ctx.users)
        if not result.success:
            await ctx_.send(result.error_message)
            return
        ctx.identities.set_external_identity(PROVIDER, str(ctx_.author.id), result.user.id)
        await ctx_.send(f"Welcome, {result.user.name}! Use !addcard to register a card.")

    @bot.command(name="login")
    async def login_cmd(ctx_: commands.Context, name: str, password: str):
        if not await require_dm(ctx_):
            return
        external_ctx = _build_external_context(ctx_.author)
        result = await asyncio.to_thread(
            login_external, external_ctx, name, password, ctx.identities, ctx.users
        )
        await ctx_.send(result.error_message if not result.success else f"Logged in as {result.user.name}.")

    @bot.command(name="passwd")
    async def passwd_cmd(ctx_: commands.Context, old_password: str, new_password: str):
        if not await require_dm(ctx_):
            return
        user = await require_user(ctx_)
        if user is None:
            return
        result = await asyncio.to_thread(
            change_password, user.id, old_password, new_password, ctx.users
        )
        await ctx_.send(result.error_message if not result.success else "Password changed.")

    @bot.command(name="logout")
    async def logout_cmd(ctx_: commands.Context):
        logout_external(_build_external_context(ctx_.author), ctx.identities)
        await ctx_.send("Logged out.")

    @bot.command(name="balance")
    async def balance_cmd(ctx_: commands.Context):
        user = await require_user(ctx_)
        if user is None:
            return
        summary = account_summary(user, ctx.cards, ctx.transactions)
        await ctx_.send(format_summary(summary))

    @bot.command(name="history")
    async def history_cmd(ctx_: commands.Context, limit: int = 10):
        user = await require_user(ctx_)
        if user is None:
            return
        await ctx_.send(format_transactions(get_transactions(user, ctx.transactions, limit)))

    @bot.command(name="cards")
    async def cards_cmd(ctx_: commands.Context):
        user = await require_user(ctx_)
        if user is None:
            return
        await ctx_.send(format_cards(list_cards(user, ctx.cards)))

    @bot.command(name="addcard")
    async def add_card_cmd(ctx_: commands.Context, *, description: Optional[str] = None):
        user = await require_user(ctx_)
        if user is None:
            return
        await ctx_.send(
            f"Swipe the card you want to add within {int(ctx.registration.timeout)} seconds."
        )
        # The wait blocks for up to the registration timeout; keep it off the event loop.
        result = await asyncio.to_thread(
            register_card_by_swipe, user, ctx.registration, ctx.cards, description
        )
        if not result.success:
            await ctx_.send(result.error_message)
            return
        await ctx_.send(f"Card {format_card_id(result.card.id)} added.")

    @bot.command(name="removecard")
    async def remove_card_cmd(ctx_: commands.Context, uid: str):
        user = await require_user(ctx_)
        if user is None:
            return
        card_id = parse_card_id(uid)
        if card_id is None:
            await ctx_.send("Usage: !removecard <uid in hex>")
            return
        result = remove_card(user, card_id, ctx.cards)
        await ctx_.send(result.error_message if not result.success else f"Card {uid} removed.")

    @bot.command(name="describe")
    async def describe_cmd(ctx_: commands.Context, uid: str, *, description: Optional[str] = None):
        user = await require_user(ctx_)
        if user is None:
            return
        card_id = parse_card_id(uid)
        if card_id is None:
            await ctx_.send("Usage: !describe <uid in hex> <description>")
            return
        result = update_card(user, card_id, description, ctx.cards)
        await ctx_.send(result.error_message if not result.success else "Card updated.")

    @bot.command(name="topup")
    async def top_up_cmd(ctx_: commands.Context, name: str, amount: str):
        if str(ctx_.author.id) not in admin_ids:
            await ctx_.send("Only admins can top up accounts.")
            return
        cents = parse_amount(amount)
        user = ctx.users.get_by_name(name)
        if cents is None or user is None:
            await ctx_.send("Usage: !topup <name> <amount>")
            return
        result = top_up(user, cents, ctx.transactions)
        if not result.success:
            await ctx_.send(result.error_message)
            return
        balance = ctx.transactions.get_balance(user.id)
        await ctx_.send(
            f"Added {format_amount(cents)} for {user.name}, balance is now {format_amount(balance)}."
        )

    if isinstance(ctx.reader, QueueReader):
        reader = ctx.reader

        @bot.command(name="swipe")
        async def swipe_cmd(ctx_: commands.Context, uid: str):
            card_id = parse_card_id(uid)
            if card_id is None:
                await ctx_.send("Usage: !swipe <uid in hex>")
                return
            try:
                reader.swipe(card_id)
            except ReaderClosedError:
                await ctx_.send("The reader is closed.")
                return
            await ctx_.send(f"Swiped {format_card_id(card_id)}.")

    return bot
