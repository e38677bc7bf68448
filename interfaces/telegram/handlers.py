from __future__ import annotations

import functools
from typing import Callable, FrozenSet, Optional

import structlog
import telebot
from telebot.apihelper import ApiException
from telebot.types import InlineKeyboardButton, InlineKeyboardMarkup

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
from interfaces.telegram.callback_data import (
    encode_remove_card_confirmation,
    parse_remove_card_confirmation,
)

PROVIDER = "telegram"

logger = structlog.get_logger(__name__)


def _build_external_context(user) -> ExternalContext:
    """Extract a channel-agnostic context object from a Telegram user."""

    return ExternalContext(
        provider=PROVIDER,
        provider_user_id=str(user.id),
        display_name=user.first_name or "",
    )


class TelegramReporter:
    """Sends the result of each swipe to the card owner's linked Telegram chats."""

    def __init__(self, bot: telebot.TeleBot, ctx: KasseContext) -> None:
        self._bot = bot
        self._ctx = ctx

    def report(self, outcome: RouteOutcome) -> None:
        result = outcome.result
        if result is None or result.user is None:
            return
        text = format_outcome(outcome)
        for chat_id in self._ctx.identities.get_external_ids_for_user(PROVIDER, result.user.id):
            try:
                self._bot.send_message(chat_id, text)
            except ApiException:
                logger.warning("telegram_report_failed", chat_id=chat_id, exc_info=True)


def create_telegram_bot(
    bot_token: str,
    ctx: KasseContext,
    admin_ids: FrozenSet[str] = frozenset(),
) -> telebot.TeleBot:
    """
    Configure and return a TeleBot instance wired to the application layer.

    This module contains only Telegram-specific concerns: parsing Telegram
    messages/callbacks and mapping them to/from application services.
    """

    bot = telebot.TeleBot(bot_token)

    def reports_errors(handler: Callable) -> Callable:
        @functools.wraps(handler)
        def wrapper(message):
            try:
                handler(message)
            except KasseError:
                logger.exception("telegram_command_failed", command=handler.__name__)
                bot.send_message(message.chat.id, "Internal error, please try again later.")

        return wrapper

    def require_user(message) -> Optional[User]:
        user = resolve_external(_build_external_context(message.from_user), ctx.identities)
        if user is None:
            bot.send_message(message.chat.id, "Please log in first: /login <name> <password>")
        return user

    def require_private(message) -> bool:
        if message.chat.type != "private":
            bot.send_message(message.chat.id, "Please send your password in a private chat.")
            return False
        return True

    @bot.message_handler(commands=["start", "help"])
    def handle_help(message):
        lines = "\n".join("/" + line for line in HELP_TEXT.splitlines())
        bot.send_message(message.chat.id, "Welcome to the till!\n\n" + lines)

    @bot.message_handler(commands=["register"])
    @reports_errors
    def handle_register(message):
        if not require_private(message):
            return
        parts = message.text.split()
        if len(parts) != 3:
            bot.send_message(message.chat.id, "Usage: /register <name> <password>")
            return

        result = register_user(parts[1], parts[2], ctx.users)
        if not result.success:
            bot.send_message(message.chat.id, result.error_message)
            return

        ctx.identities.set_external_identity(PROVIDER, str(message.from_user.id), result.user.id)
        bot.send_message(message.chat.id, f"Welcome, {result.user.name}! Use /addcard to register a card.")

    @bot.message_handler(commands=["login"])
    @reports_errors
    def handle_login(message):
        if not require_private(message):
            return
        parts = message.text.split()
        if len(parts) != 3:
            bot.send_message(message.chat.id, "Usage: /login <name> <password>")
            return

        external_ctx = _build_external_context(message.from_user)
        result = login_external(external_ctx, parts[1], parts[2], ctx.identities, ctx.users)
        if not result.success:
            bot.send_message(message.chat.id, result.error_message)
            return
        bot.send_message(message.chat.id, f"Logged in as {result.user.name}.")

    @bot.message_handler(commands=["logout"])
    @reports_errors
    def handle_logout(message):
        logout_external(_build_external_context(message.from_user), ctx.identities)
        bot.send_message(message.chat.id, "Logged out.")

    @bot.message_handler(commands=["passwd"])
    @reports_errors
    def handle_passwd(message):
        if not require_private(message):
            return
        user = require_user(message)
        if user is None:
            return
        parts = message.text.split()
        if len(parts) != 3:
            bot.send_message(message.chat.id, "Usage: /passwd <old password> <new password>")
            return

        result = change_password(user.id, parts[1], parts[2], ctx.users)
        bot.send_message(message.chat.id, result.error_message if not result.success else "Password changed.")

    @bot.message_handler(commands=["balance"])
    @reports_errors
    def handle_balance(message):
        user = require_user(message)
        if user is None:
            return
        summary = account_summary(user, ctx.cards, ctx.transactions)
        bot.send_message(message.chat.id, format_summary(summary))

    @bot.message_handler(commands=["history"])
    @reports_errors
    def handle_history(message):
        user = require_user(message)
        if user is None:
            return
        parts = message.text.split()
        try:
            limit = int(parts[1]) if len(parts) > 1 else 10
        except ValueError:
            bot.send_message(message.chat.id, "Usage: /history [n]")
            return
        transactions = get_transactions(user, ctx.transactions, limit)
        bot.send_message(message.chat.id, format_transactions(transactions))

    @bot.message_handler(commands=["cards"])
    @reports_errors
    def handle_cards(message):
        user = require_user(message)
        if user is None:
            return
        bot.send_message(message.chat.id, format_cards(list_cards(user, ctx.cards)))

    @bot.message_handler(commands=["addcard"])
    @reports_errors
    def handle_add_card(message):
        user = require_user(message)
        if user is None:
            return
        description = message.text.partition(" ")[2].strip() or None

        bot.send_message(
            message.chat.id,
            f"Swipe the card you want to add within {int(ctx.registration.timeout)} seconds.",
        )
        # Runs on one of telebot's worker threads; blocks until swipe or timeout.
        result = register_card_by_swipe(user, ctx.registration, ctx.cards, description)
        if not result.success:
            bot.send_message(message.chat.id, result.error_message)
            return
        bot.send_message(message.chat.id, f"Card {format_card_id(result.card.id)} added.")

    @bot.message_handler(commands=["removecard"])
    @reports_errors
    def handle_remove_card(message):
        user = require_user(message)
        if user is None:
            return
        parts = message.text.split()
        card_id = parse_card_id(parts[1]) if len(parts) == 2 else None
        if card_id is None:
            bot.send_message(message.chat.id, "Usage: /removecard <uid in hex>")
            return

        card_hex = format_card_id(card_id)
        markup = InlineKeyboardMarkup(row_width=2)
        markup.add(
            InlineKeyboardButton(
                "yes",
                callback_data=encode_remove_card_confirmation(card_hex, accepted=True),
            ),
            InlineKeyboardButton(
                "no",
                callback_data=encode_remove_card_confirmation(card_hex, accepted=False),
            ),
        )
        bot.send_message(message.chat.id, f"Really remove card {card_hex}?", reply_markup=markup)

    @bot.callback_query_handler(func=lambda call: call.data.startswith("rm:"))
    def handle_remove_confirmation(call):
        try:
            accepted, card_hex = parse_remove_card_confirmation(call.data)
        except ValueError:
            bot.answer_callback_query(call.id, "Invalid confirmation.")
            return

        try:
            if not accepted:
                bot.answer_callback_query(call.id, "Kept the card.")
                return

            user = resolve_external(_build_external_context(call.from_user), ctx.identities)
            if user is None:
                bot.answer_callback_query(call.id, "Please log in first.")
                return
            result = remove_card(user, bytes.fromhex(card_hex), ctx.cards)
            text = result.error_message if not result.success else f"Card {card_hex} removed."
            bot.send_message(call.message.chat.id, text)
        except KasseError:
            logger.exception("telegram_command_failed", command="remove_card")
            bot.send_message(call.message.chat.id, "Internal error, please try again later.")
        finally:
            bot.delete_message(call.message.chat.id, call.message.id)

    @bot.message_handler(commands=["describe"])
    @reports_errors
    def handle_describe(message):
        user = require_user(message)
        if user is None:
            return
        parts = message.text.split(maxsplit=2)
        card_id = parse_card_id(parts[1]) if len(parts) >= 2 else None
        if card_id is None:
            bot.send_message(message.chat.id, "Usage: /describe <uid in hex> <description>")
            return

        description = parts[2] if len(parts) == 3 else None
        result = update_card(user, card_id, description, ctx.cards)
        bot.send_message(message.chat.id, result.error_message if not result.success else "Card updated.")

    @bot.message_handler(commands=["topup"])
    @reports_errors
    def handle_top_up(message):
        if str(message.from_user.id) not in admin_ids:
            bot.send_message(message.chat.id, "Only admins can top up accounts.")
            return
        parts = message.text.split()
        amount = parse_amount(parts[2]) if len(parts) == 3 else None
        if amount is None:
            bot.send_message(message.chat.id, "Usage: /topup <name> <amount>")
            return

        user = ctx.users.get_by_name(parts[1])
        if user is None:
            bot.send_message(message.chat.id, f"No user named {parts[1]}.")
            return
        result = top_up(user, amount, ctx.transactions)
        if not result.success:
            bot.send_message(message.chat.id, result.error_message)
            return
        balance = ctx.transactions.get_balance(user.id)
        bot.send_message(
            message.chat.id,
            f"Added {format_amount(amount)} for {user.name}, balance is now {format_amount(balance)}.",
        )

    if isinstance(ctx.reader, QueueReader):
        reader = ctx.reader

        @bot.message_handler(commands=["swipe"])
        def handle_swipe_command(message):
            parts = message.text.split()
            card_id = parse_card_id(parts[1]) if len(parts) == 2 else None
            if card_id is None:
                bot.send_message(message.chat.id, "Usage: /swipe <uid in hex>")
                return
            try:
                reader.swipe(card_id)
            except ReaderClosedError:
                bot.send_message(message.chat.id, "The reader is closed.")
                return
            bot.send_message(message.chat.id, f"Swiped {format_card_id(card_id)}.")

    return bot
