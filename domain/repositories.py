from __future__ import annotations

from datetime import datetime
from typing import ContextManager, List, Optional, Protocol

from .models import Card, Transaction, User


class UserRepository(Protocol):
    """
    Abstraction over user persistence.

    Implementations are responsible for:
    - Mapping between database rows and the `User` domain model.
    - Hiding any SQL / driver details from the application layer.
    - Wrapping driver failures in `StorageError`.
    """

    def get_user(self, user_id: int) -> Optional[User]:
        """Return the user with the given internal ID, or None if not found."""

        ...

    def get_by_name(self, name: str) -> Optional[User]:
        ...

    def add_user(self, name: str, password_hash: str) -> User:
        """
        Persist a new user and return it with its assigned ID.

        Raises `UserExistsError` if the name is taken.
        """

        ...

    def set_password_hash(self, user_id: int, password_hash: str) -> None:
        ...


class CardRepository(Protocol):
    """Persistence of card-to-user bindings."""

    def get_card(self, card_id: bytes) -> Optional[Card]:
        ...

    def get_cards_for_user(self, user_id: int) -> List[Card]:
        ...

    def add_card(self, card: Card) -> Card:
        """
        Bind a new card. Raises `CardExistsError` if the ID is already bound,
        leaving the store untouched.
        """

        ...

    def update_description(self, card_id: bytes, description: Optional[str]) -> None:
        ...

    def remove_card(self, card_id: bytes) -> None:
        ...


class LedgerUnit(Protocol):
    """
    Operations available inside one atomic, serialised store transaction.

    Everything read through a unit stays valid until the unit ends; no other
    writer can append to the ledger in between.
    """

    def find_card(self, card_id: bytes) -> Optional[Card]:
        ...

    def get_user(self, user_id: int) -> Optional[User]:
        ...

    def balance(self, user_id: int) -> int:
        ...

    def append(
        self,
        user_id: int,
        card_id: Optional[bytes],
        amount: int,
        kind: str,
        time: datetime,
    ) -> Transaction:
        ...


class TransactionRepository(Protocol):
    """
    Append-only ledger. Balances are always computed, never stored.
    """

    def atomic(self) -> ContextManager[LedgerUnit]:
        """
        Open a serialised unit of work.

        Commits when the block exits normally and rolls back on any
        exception. Driver errors are re-raised as `StorageError`.
        """

        ...

    def get_balance(self, user_id: int) -> int:
        ...

    def get_transactions(self, user_id: int, limit: int = 0) -> List[Transaction]:
        """Return the newest `limit` transactions (all if `limit <= 0`), newest first."""

        ...

    def add_transaction(
        self,
        user_id: int,
        amount: int,
        kind: str,
        card_id: Optional[bytes] = None,
        time: Optional[datetime] = None,
    ) -> Transaction:
        ...


class IdentityRepository(Protocol):
    """
    Maps external identities (Telegram/Discord chats) to internal user IDs.

    The application layer should work exclusively with internal user IDs
    and leave provider-specific identifiers to this abstraction.
    """

    def find_user_by_external(
        self,
        provider: str,
        provider_user_id: str,
    ) -> Optional[User]:
        """Return the user mapped to the given external identity, if any."""

        ...

    def set_external_identity(
        self,
        provider: str,
        provider_user_id: str,
        user_id: int,
    ) -> None:
        """Associate an external identity with an internal user ID (login)."""

        ...

    def clear_external_identity(
        self,
        provider: str,
        provider_user_id: str,
    ) -> None:
        """Remove any mapping for the given external identity (logout)."""

        ...

    def get_external_ids_for_user(
        self,
        provider: str,
        user_id: int,
    ) -> List[str]:
        """
        Return all external IDs (e.g. Telegram chat IDs) associated with
        a given internal user ID for the specified provider.
        """

        ...


class Reader(Protocol):
    """
    A source of card identifiers.

    `next` blocks until a card is presented and must only be called from a
    single consumer thread. `close` releases the hardware; any pending or
    later `next` call raises `ReaderClosedError`.
    """

    def next(self) -> bytes:
        ...

    def close(self) -> None:
        ...
