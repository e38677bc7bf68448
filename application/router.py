from __future__ import annotations

from typing import Callable

import structlog

from domain.errors import StorageError
from domain.models import RouteOutcome, SwipeResult

from .registration import RegistrationSlot

logger = structlog.get_logger(__name__)

ChargeHandler = Callable[[bytes], SwipeResult]


class CardEventRouter:
    """
    Decides who gets a swiped card: an open registration window, or the
    ledger. Never both.
    """

    def __init__(self, slot: RegistrationSlot, charge: ChargeHandler) -> None:
        self._slot = slot
        self._charge = charge

    def route(self, card_id: bytes) -> RouteOutcome:
        if self._slot.offer(card_id):
            return RouteOutcome(card_id=card_id, registered=True)

        try:
            result = self._charge(card_id)
        except StorageError as exc:
            logger.error("storage_error", card_id=card_id.hex(), error=str(exc))
            return RouteOutcome(card_id=card_id, error=exc)
        return RouteOutcome(card_id=card_id, result=result)
