from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

from domain.errors import RegistrationBusyError

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 60.0


class RegistrationWindow:
    """
    One open registration window. The object itself is the owner token of
    the slot; only the `RegistrationSlot` delivers cards into it.
    """

    def __init__(self, owner: str = "") -> None:
        self.owner = owner
        self.card_id: Optional[bytes] = None
        self._done = threading.Event()

    @property
    def claimed(self) -> bool:
        return self.card_id is not None

    def wait(self, timeout: Optional[float]) -> Optional[bytes]:
        """Block until a card arrives, the window is cancelled or `timeout` passes."""

        self._done.wait(timeout)
        return self.card_id

    def cancel(self) -> None:
        self._done.set()

    def _deliver(self, card_id: bytes) -> None:
        self.card_id = card_id
        self._done.set()


class RegistrationSlot:
    """
    Single-slot rendezvous between the card router and whoever wants to
    learn the identifier of the next swiped card.

    At most one window is open system wide. The lock guards opening,
    closing and handing off only; waiting happens outside of it.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout
        self._lock = threading.Lock()
        self._window: Optional[RegistrationWindow] = None

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._window is not None

    @contextmanager
    def open(self, owner: str = "") -> Iterator[RegistrationWindow]:
        """
        Claim the slot for the duration of the block.

        Raises `RegistrationBusyError` if another window is open. The slot is
        released on every exit path; a card handed off before release stays
        available on the window.
        """

        window = RegistrationWindow(owner)
        with self._lock:
            if self._window is not None:
                raise RegistrationBusyError(
                    f"registration already in progress for {self._window.owner or 'another user'}"
                )
            self._window = window
        logger.info("registration_opened", owner=owner)
        try:
            yield window
        finally:
            with self._lock:
                if self._window is window:
                    self._window = None

    def offer(self, card_id: bytes) -> bool:
        """
        Hand `card_id` to the open window, if any.

        Returns True when the card was claimed for registration, in which
        case it must not be charged.
        """

        with self._lock:
            window = self._window
            if window is None or window.claimed:
                return False
            window._deliver(card_id)
        logger.info("registration_claimed", owner=window.owner, card_id=card_id.hex())
        return True

    def wait_for_card(self, owner: str = "", timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Open a window and wait for the next swipe.

        Returns the card identifier, or None on timeout. Raises
        `RegistrationBusyError` if the slot is taken.
        """

        with self.open(owner) as window:
            window.wait(self.timeout if timeout is None else timeout)
        # Read after release: a hand-off racing the timeout is kept, not lost.
        if window.card_id is None:
            logger.info("registration_timeout", owner=owner)
        return window.card_id
