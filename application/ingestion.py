from __future__ import annotations

import queue
import threading
from typing import Callable, Optional, Protocol, Sequence, Union

import structlog

from domain.errors import ReaderClosedError, ReaderError
from domain.models import RouteOutcome
from domain.repositories import Reader

from .router import CardEventRouter

logger = structlog.get_logger(__name__)


class Reporter(Protocol):
    """Receives the outcome of every card event, e.g. to show it to the user."""

    def report(self, outcome: RouteOutcome) -> None:
        ...


class SwipeIngestor:
    """
    Drains a `Reader` into a `CardEventRouter`.

    A dedicated producer thread is the only caller of `reader.next()`. It
    hands each identifier through a capacity-one queue to `run`, which
    routes events strictly one at a time in arrival order. A slow consumer
    blocks the producer rather than dropping swipes.
    """

    def __init__(
        self,
        reader: Reader,
        router: CardEventRouter,
        reporters: Sequence[Reporter] = (),
    ) -> None:
        self._reader = reader
        self._router = router
        self._reporters = list(reporters)
        self._events: "queue.Queue[Union[bytes, ReaderError]]" = queue.Queue(maxsize=1)
        self._stopping = threading.Event()
        self._producer: Optional[threading.Thread] = None

    def add_reporter(self, reporter: Reporter) -> None:
        self._reporters.append(reporter)

    def _produce(self) -> None:
        while True:
            try:
                event: Union[bytes, ReaderError] = self._reader.next()
            except ReaderError as exc:
                event = exc
            self._events.put(event)
            if isinstance(event, ReaderError):
                return

    def run(self) -> None:
        """
        Process swipes until the reader fails or `stop` is called.

        Raises `ReaderError` when the reader fails on its own; returns
        normally after `stop`.
        """

        self._producer = threading.Thread(
            target=self._produce, name="card-reader", daemon=True
        )
        self._producer.start()

        while True:
            event = self._events.get()
            if isinstance(event, ReaderError):
                if self._stopping.is_set() and isinstance(event, ReaderClosedError):
                    logger.info("reader_stopped")
                    return
                logger.error("reader_failed", error=str(event))
                raise event
            self._handle(event)

    def run_in_thread(
        self,
        on_failure: Optional[Callable[[Exception], None]] = None,
    ) -> threading.Thread:
        """
        Run `run` on a daemon thread, for processes whose main thread belongs
        to a chat bot. `on_failure` is called if the reader fails or any other
        error ends processing.
        """

        def target() -> None:
            try:
                self.run()
            except ReaderError as exc:
                if on_failure is not None:
                    on_failure(exc)
            except Exception as exc:
                logger.exception("ingestion_failed")
                if on_failure is not None:
                    on_failure(exc)

        thread = threading.Thread(target=target, name="swipe-ingestor", daemon=True)
        thread.start()
        return thread

    def _handle(self, card_id: bytes) -> None:
        outcome = self._router.route(card_id)
        for reporter in self._reporters:
            try:
                reporter.report(outcome)
            except Exception:
                logger.exception("report_failed", reporter=type(reporter).__name__)

    def stop(self) -> None:
        """Close the reader, which ends `run` once pending swipes are handled."""

        self._stopping.set()
        self._reader.close()
