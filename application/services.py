from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

import bcrypt
import structlog

from domain.errors import CardExistsError, RegistrationBusyError, UserExistsError
from domain.models import TOP_UP, Card, Transaction, User
from domain.repositories import (
    CardRepository,
    IdentityRepository,
    TransactionRepository,
    UserRepository,
)

from .registration import RegistrationSlot

logger = structlog.get_logger(__name__)

BCRYPT_ROUNDS = 12
# bcrypt ignores everything after 72 bytes; newer releases refuse it outright.
MAX_PASSWORD_BYTES = 72


@dataclass
class ExternalContext:
    """
    Information about the caller from a particular channel (Telegram, Discord).

    The application layer never depends on concrete SDK types; it only sees
    this small context object.
    """

    provider: str
    provider_user_id: str
    display_name: str = ""


@dataclass
class OperationResult:
    """Generic result type for simple operations."""

    success: bool
    error_message: Optional[str] = None
    user: Optional[User] = None
    card: Optional[Card] = None


@dataclass
class AccountSummary:
    """Everything a user sees on their dashboard."""

    user: User
    balance: int
    cards: List[Card] = field(default_factory=list)
    transactions: List[Transaction] = field(default_factory=list)


def _fail(message: str) -> OperationResult:
    return OperationResult(success=False, error_message=message)


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def _check_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("ascii"))


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password("", BCRYPT_ROUNDS)


def _validate_password(password: str) -> Optional[str]:
    if not password:
        return "Neither username nor password can be empty."
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return f"Password must not be longer than {MAX_PASSWORD_BYTES} bytes."
    return None


def register_user(
    name: str,
    password: str,
    user_repo: UserRepository,
    rounds: int = BCRYPT_ROUNDS,
) -> OperationResult:
    name = name.strip()
    if not name:
        return _fail("Neither username nor password can be empty.")
    error = _validate_password(password)
    if error:
        return _fail(error)

    try:
        user = user_repo.add_user(name, hash_password(password, rounds))
    except UserExistsError:
        return _fail("User already exists.")

    logger.info("user_registered", user=user.name, user_id=user.id)
    return OperationResult(success=True, user=user)


def authenticate(name: str, password: str, user_repo: UserRepository) -> OperationResult:
    """
    Check a username/password pair.

    Unknown users still cost one bcrypt comparison, so response time does not
    reveal which names exist.
    """

    user = user_repo.get_by_name(name.strip())
    if user is None:
        _check_password(password, _dummy_hash())
        return _fail("Wrong username or password.")
    if not _check_password(password, user.password_hash):
        return _fail("Wrong username or password.")
    return OperationResult(success=True, user=user)


def change_password(
    user_id: int,
    old_password: str,
    new_password: str,
    user_repo: UserRepository,
    rounds: int = BCRYPT_ROUNDS,
) -> OperationResult:
    user = user_repo.get_user(user_id)
    if user is None or not _check_password(old_password, user.password_hash):
        return _fail("Wrong username or password.")
    error = _validate_password(new_password)
    if error:
        return _fail(error)

    user_repo.set_password_hash(user.id, hash_password(new_password, rounds))
    return OperationResult(success=True, user=user)


def login_external(
    external_ctx: ExternalContext,
    name: str,
    password: str,
    identity_repo: IdentityRepository,
    user_repo: UserRepository,
) -> OperationResult:
    """Authenticate and remember the chat identity for later commands."""

    result = authenticate(name, password, user_repo)
    if result.success:
        identity_repo.set_external_identity(
            external_ctx.provider,
            external_ctx.provider_user_id,
            result.user.id,
        )
    return result


def logout_external(external_ctx: ExternalContext, identity_repo: IdentityRepository) -> None:
    identity_repo.clear_external_identity(external_ctx.provider, external_ctx.provider_user_id)


def resolve_external(
    external_ctx: ExternalContext,
    identity_repo: IdentityRepository,
) -> Optional[User]:
    return identity_repo.find_user_by_external(
        external_ctx.provider,
        external_ctx.provider_user_id,
    )


def add_card(
    user: User,
    card_id: bytes,
    card_repo: CardRepository,
    description: Optional[str] = None,
) -> OperationResult:
    if not card_id:
        return _fail("Please swipe a card to register.")
    card = Card(id=card_id, user_id=user.id, description=description or None)
    try:
        card_repo.add_card(card)
    except CardExistsError:
        return _fail("Card is already registered.")

    logger.info("card_added", user=user.name, card_id=card_id.hex())
    return OperationResult(success=True, user=user, card=card)


def register_card_by_swipe(
    user: User,
    slot: RegistrationSlot,
    card_repo: CardRepository,
    description: Optional[str] = None,
    timeout: Optional[float] = None,
) -> OperationResult:
    """
    Bind whatever card is swiped next to `user`.

    Blocks for up to the slot's timeout. The swiped card is not charged.
    """

    try:
        card_id = slot.wait_for_card(owner=user.name, timeout=timeout)
    except RegistrationBusyError:
        return _fail("Another card registration is in progress, please try again shortly.")
    if card_id is None:
        return _fail("No card was swiped in time.")
    return add_card(user, card_id, card_repo, description)


def _own_card(user: User, card_id: bytes, card_repo: CardRepository) -> Optional[Card]:
    card = card_repo.get_card(card_id)
    if card is None or card.user_id != user.id:
        return None
    return card


def remove_card(user: User, card_id: bytes, card_repo: CardRepository) -> OperationResult:
    card = _own_card(user, card_id, card_repo)
    if card is None:
        return _fail("Card not found.")
    card_repo.remove_card(card.id)
    logger.info("card_removed", user=user.name, card_id=card_id.hex())
    return OperationResult(success=True, user=user, card=card)


def update_card(
    user: User,
    card_id: bytes,
    description: Optional[str],
    card_repo: CardRepository,
) -> OperationResult:
    card = _own_card(user, card_id, card_repo)
    if card is None:
        return _fail("Card not found.")
    card.description = description or None
    card_repo.update_description(card.id, card.description)
    return OperationResult(success=True, user=user, card=card)


def list_cards(user: User, card_repo: CardRepository) -> List[Card]:
    return card_repo.get_cards_for_user(user.id)


def top_up(
    user: User,
    amount: int,
    transaction_repo: TransactionRepository,
) -> OperationResult:
    """Manually add `amount` cents to a user's balance."""

    if amount <= 0:
        return _fail("Amount must be greater than zero.")
    transaction_repo.add_transaction(user.id, amount, TOP_UP)
    logger.info("top_up", user=user.name, amount=amount)
    return OperationResult(success=True, user=user)


def get_balance(user: User, transaction_repo: TransactionRepository) -> int:
    return transaction_repo.get_balance(user.id)


def get_transactions(
    user: User,
    transaction_repo: TransactionRepository,
    limit: int = 0,
) -> List[Transaction]:
    return transaction_repo.get_transactions(user.id, limit)


def account_summary(
    user: User,
    card_repo: CardRepository,
    transaction_repo: TransactionRepository,
    limit: int = 5,
) -> AccountSummary:
    return AccountSummary(
        user=user,
        balance=get_balance(user, transaction_repo),
        cards=list_cards(user, card_repo),
        transactions=get_transactions(user, transaction_repo, limit),
    )
