from __future__ import annotations

import queue
import threading
from typing import Union

from domain.errors import ReaderClosedError, ReaderError
from domain.repositories import Reader


class QueueReader(Reader):
    """
    A reader fed by software instead of hardware.

    Used to emulate swipes from a chat command and in tests. Swipes are
    delivered in the order they were made.
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._items: "queue.Queue[Union[bytes, ReaderError, object]]" = queue.Queue()
        self._closed = threading.Event()

    def swipe(self, card_id: bytes) -> None:
        if self._closed.is_set():
            raise ReaderClosedError("reader is closed")
        self._items.put(bytes(card_id))

    def fail(self, error: ReaderError) -> None:
        """Make the next `next()` call raise `error`, as a hardware fault would."""

        self._items.put(error)

    def next(self) -> bytes:
        item = self._items.get()
        if item is self._CLOSED:
            # Leave the marker for any other waiter.
            self._items.put(item)
            raise ReaderClosedError("reader is closed")
        if isinstance(item, ReaderError):
            raise item
        return item

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._items.put(self._CLOSED)
