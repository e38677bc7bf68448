from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from domain.models import (
    SWIPE_CHARGE,
    ChargePolicy,
    ResultCode,
    SwipeResult,
)
from domain.repositories import TransactionRepository

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def handle_swipe(
    card_id: bytes,
    transaction_repo: TransactionRepository,
    policy: Optional[ChargePolicy] = None,
    clock: Clock = _utcnow,
) -> SwipeResult:
    """
    Charge the owner of `card_id` for one swipe.

    Lookup, balance read and the debit all happen in a single unit of work,
    so the balance that justifies a debit can never be stale. The
    classification always uses the pre-charge balance:

    - unknown card              -> CARD_NOT_FOUND, nothing written
    - balance < amount          -> ACCOUNT_EMPTY, nothing written
    - balance < low_balance     -> LOW_BALANCE, one debit written
    - otherwise                 -> PAYMENT_MADE, one debit written

    Every accepted call writes a new row; replaying a swipe charges again.
    Only `StorageError` escapes, after the unit has been rolled back.
    """

    policy = policy or ChargePolicy()

    with transaction_repo.atomic() as unit:
        card = unit.find_card(card_id)
        if card is None:
            logger.info("card_not_found", card_id=card_id.hex())
            return SwipeResult(
                code=ResultCode.CARD_NOT_FOUND,
                card_id=card_id,
                error_message="Card not found.",
            )

        user = unit.get_user(card.user_id)
        balance = unit.balance(card.user_id)

        if balance < policy.amount:
            logger.info(
                "swipe_refused",
                card_id=card_id.hex(),
                user=user.name if user else None,
                balance=balance,
            )
            return SwipeResult(
                code=ResultCode.ACCOUNT_EMPTY,
                card_id=card_id,
                user=user,
                balance=balance,
                error_message="Insufficient funds.",
            )

        unit.append(card.user_id, card_id, -policy.amount, SWIPE_CHARGE, clock())

    code = ResultCode.LOW_BALANCE if balance < policy.low_balance else ResultCode.PAYMENT_MADE
    new_balance = balance - policy.amount
    logger.info(
        "swipe_charged",
        card_id=card_id.hex(),
        user=user.name if user else None,
        balance=new_balance,
        code=code.value,
    )
    return SwipeResult(code=code, card_id=card_id, user=user, balance=new_balance)
