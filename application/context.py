from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial

from domain.models import ChargePolicy
from domain.repositories import (
    CardRepository,
    IdentityRepository,
    Reader,
    TransactionRepository,
    UserRepository,
)

from .ledger import handle_swipe
from .registration import RegistrationSlot
from .router import CardEventRouter


@dataclass
class KasseContext:
    """
    Everything an entry point needs, passed explicitly instead of living in
    module globals.
    """

    users: UserRepository
    cards: CardRepository
    transactions: TransactionRepository
    identities: IdentityRepository
    reader: Reader
    registration: RegistrationSlot = field(default_factory=RegistrationSlot)
    policy: ChargePolicy = field(default_factory=ChargePolicy)

    def build_router(self) -> CardEventRouter:
        charge = partial(handle_swipe, transaction_repo=self.transactions, policy=self.policy)
        return CardEventRouter(self.registration, charge)
