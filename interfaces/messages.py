from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from application.services import AccountSummary
from domain.models import Card, ResultCode, RouteOutcome, SwipeResult, Transaction

HELP_TEXT = (
    "register <name> <password>   - create an account (private chat only)\n"
    "login <name> <password>      - link this chat to your account\n"
    "logout                       - unlink this chat\n"
    "passwd <old> <new>           - change your password (private chat only)\n"
    "balance                      - show balance, cards and recent transactions\n"
    "history [n]                  - show the last n transactions\n"
    "cards                        - list your cards\n"
    "addcard [description]        - register the next card swiped at the reader\n"
    "removecard <uid>             - unregister one of your cards\n"
    "describe <uid> <text>        - change a card's description\n"
    "topup <name> <amount>        - add money to an account (admins only)\n"
)


def format_amount(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"


def parse_amount(text: str) -> Optional[int]:
    """Parse "12", "12.5" or "12,50" into cents. Returns None if invalid."""

    try:
        value = Decimal(text.strip().replace(",", "."))
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    cents = value * 100
    if cents != cents.to_integral_value():
        return None
    return int(cents)


def format_card_id(card_id: bytes) -> str:
    return card_id.hex()


def parse_card_id(text: str) -> Optional[bytes]:
    try:
        card_id = bytes.fromhex(text.strip())
    except ValueError:
        return None
    return card_id or None


def format_swipe_result(result: SwipeResult) -> str:
    name = result.user.name if result.user else "?"
    balance = format_amount(result.balance or 0)
    if result.code is ResultCode.PAYMENT_MADE:
        return f"Payment made. {name}, your balance is {balance}."
    if result.code is ResultCode.LOW_BALANCE:
        return f"Payment made. {name}, your balance is low: {balance}. Please top up soon."
    if result.code is ResultCode.ACCOUNT_EMPTY:
        return f"Insufficient funds. {name}, your balance is {balance}. Nothing was charged."
    return f"Card {format_card_id(result.card_id)} is not registered."


def format_outcome(outcome: RouteOutcome) -> str:
    if outcome.registered:
        return f"Card {format_card_id(outcome.card_id)} captured for registration."
    if outcome.error is not None or outcome.result is None:
        return f"Internal error, card {format_card_id(outcome.card_id)} was not charged."
    return format_swipe_result(outcome.result)


def format_transactions(transactions: Iterable[Transaction]) -> str:
    lines = []
    for tx in transactions:
        sign = "+" if tx.amount > 0 else ""
        lines.append(f"{tx.time:%Y-%m-%d %H:%M}  {sign}{format_amount(tx.amount):>8}  {tx.kind}")
    return "\n".join(lines) if lines else "No transactions yet."


def format_cards(cards: Iterable[Card]) -> str:
    lines = [
        f"{format_card_id(card.id)}" + (f"  {card.description}" if card.description else "")
        for card in cards
    ]
    return "\n".join(lines) if lines else "No cards registered."


def format_summary(summary: AccountSummary) -> str:
    return (
        f"{summary.user.name}: balance {format_amount(summary.balance)}\n\n"
        f"Cards:\n{format_cards(summary.cards)}\n\n"
        f"Recent transactions:\n{format_transactions(summary.transactions)}"
    )
