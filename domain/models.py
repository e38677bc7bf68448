from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

SWIPE_CHARGE = "swipe-charge"
TOP_UP = "top-up"


@dataclass
class User:
    """
    A person holding a balance at the till.

    The balance is deliberately not part of this model: it is always derived
    from the transactions table, see `TransactionRepository.get_balance`.
    """

    id: int
    name: str
    password_hash: str


@dataclass
class Card:
    """A physical card bound to exactly one user."""

    id: bytes
    user_id: int
    description: Optional[str] = None


@dataclass
class Transaction:
    """
    One append-only ledger row.

    `amount` is in minor currency units (cents); debits are negative.
    `card_id` is None for manual top-ups.
    """

    id: int
    user_id: int
    card_id: Optional[bytes]
    time: datetime
    amount: int
    kind: str


@dataclass(frozen=True)
class ChargePolicy:
    """Fixed price of one swipe and the balance below which users are warned."""

    amount: int = 100
    low_balance: int = 600


class ResultCode(str, Enum):
    PAYMENT_MADE = "payment_made"
    LOW_BALANCE = "low_balance"
    ACCOUNT_EMPTY = "account_empty"
    CARD_NOT_FOUND = "card_not_found"


@dataclass
class SwipeResult:
    """
    Outcome of charging a single swipe.

    `balance` is the balance after the swipe was handled, i.e. unchanged for
    refused swipes. `user` is None only for unknown cards.
    """

    code: ResultCode
    card_id: bytes
    user: Optional[User] = None
    balance: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def charged(self) -> bool:
        return self.code in (ResultCode.PAYMENT_MADE, ResultCode.LOW_BALANCE)


@dataclass
class RouteOutcome:
    """
    What happened to one card event.

    Exactly one of `registered` or `result` describes the swipe, unless the
    ledger failed, in which case `error` is set and no charge may be assumed.
    """

    card_id: bytes
    registered: bool = False
    result: Optional[SwipeResult] = None
    error: Optional[Exception] = None
