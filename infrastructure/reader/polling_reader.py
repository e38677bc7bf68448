from __future__ import annotations

import queue
import threading
from typing import List, Optional, Protocol, Union

import structlog

from domain.errors import ReaderClosedError, ReaderError
from domain.repositories import Reader

logger = structlog.get_logger(__name__)

# Seconds between two scans of the device.
DEFAULT_POLLING_INTERVAL = 0.1


class TargetDevice(Protocol):
    """Hardware that can be asked which cards are in range right now."""

    def list_targets(self) -> List[bytes]:
        ...

    def close(self) -> None:
        ...


class PollingReader(Reader):
    """
    Turns a scan-on-demand device into a blocking `Reader`.

    A background thread scans the device every `interval` seconds and hands
    identifiers to `next()` through a capacity-one queue. A card is reported
    once when it appears; it has to leave the field (an empty or different
    scan) before it is reported again. When several cards are in range the
    first one wins.

    The first device error ends polling; it is raised from `next()` as a
    `ReaderError`, and so is every later call.
    """

    def __init__(
        self,
        device: TargetDevice,
        interval: float = DEFAULT_POLLING_INTERVAL,
    ) -> None:
        self._device = device
        self._interval = interval
        self._events: "queue.Queue[Union[bytes, ReaderError]]" = queue.Queue(maxsize=1)
        self._closed = threading.Event()
        self._failure: Optional[ReaderError] = None
        self._present: Optional[bytes] = None
        self._thread = threading.Thread(target=self._poll, name="reader-poll", daemon=True)
        self._thread.start()

    def _poll(self) -> None:
        while not self._closed.is_set():
            try:
                targets = self._device.list_targets()
            except Exception as exc:
                if not self._closed.is_set():
                    error = ReaderError(f"polling the card reader failed: {exc}")
                    error.__cause__ = exc
                    self._emit(error)
                return

            card_id = self._select(targets)
            if card_id is not None and card_id != self._present:
                if not self._emit(card_id):
                    return
            self._present = card_id
            self._closed.wait(self._interval)

    @staticmethod
    def _select(targets: List[bytes]) -> Optional[bytes]:
        if not targets:
            return None
        if len(targets) > 1:
            logger.warning(
                "multiple_targets",
                count=len(targets),
                card_ids=[bytes(t).hex() for t in targets],
            )
        return bytes(targets[0])

    def _emit(self, event: Union[bytes, ReaderError]) -> bool:
        while not self._closed.is_set():
            try:
                self._events.put(event, timeout=self._interval)
                return True
            except queue.Full:
                continue
        return False

    def next(self) -> bytes:
        while True:
            if self._failure is not None:
                raise self._failure
            if self._closed.is_set():
                raise ReaderClosedError("reader is closed")
            try:
                event = self._events.get(timeout=self._interval)
            except queue.Empty:
                continue
            if isinstance(event, ReaderError):
                self._failure = event
                raise event
            return event

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=max(1.0, self._interval * 10))
        self._device.close()
