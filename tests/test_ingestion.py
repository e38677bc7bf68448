import os
import tempfile
import threading
import unittest

from application.context import KasseContext
from application.ingestion import SwipeIngestor
from application.registration import RegistrationSlot
from application.router import CardEventRouter
from domain.errors import ReaderError
from domain.models import TOP_UP, Card, ChargePolicy, ResultCode
from infrastructure.db.card_repository_sqlite import SqliteCardRepository
from infrastructure.db.identity_repository_sqlite import SqliteIdentityRepository
from infrastructure.db.transaction_repository_sqlite import SqliteTransactionRepository
from infrastructure.db.user_repository_sqlite import SqliteUserRepository
from infrastructure.reader.queue_reader import QueueReader
from interfaces.log_reporter import LogReporter

CARD = b"\x04\x10\x20\x30"
UNKNOWN_CARD = b"\x04\xff\xff\xff"


class CollectingReporter:
    def __init__(self):
        self.outcomes = []

    def report(self, outcome):
        self.outcomes.append(outcome)


class BrokenReporter:
    def report(self, outcome):
        raise RuntimeError("display unplugged")


class SwipeIngestorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        db_path = os.path.join(self._tmp.name, "kasse.db")
        users = SqliteUserRepository(db_path)
        self.ctx = KasseContext(
            users=users,
            cards=SqliteCardRepository(db_path),
            transactions=SqliteTransactionRepository(db_path),
            identities=SqliteIdentityRepository(db_path, users),
            reader=QueueReader(),
            registration=RegistrationSlot(timeout=5.0),
            policy=ChargePolicy(),
        )
        self.alice = users.add_user("alice", "x")
        self.ctx.cards.add_card(Card(id=CARD, user_id=self.alice.id))
        self.ctx.transactions.add_transaction(self.alice.id, 250, TOP_UP)

        self.reporter = CollectingReporter()
        self.ingestor = SwipeIngestor(self.ctx.reader, self.ctx.build_router(), [self.reporter])

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_swipes_are_processed_in_order_until_stopped(self):
        for card_id in (CARD, UNKNOWN_CARD, CARD, CARD):
            self.ctx.reader.swipe(card_id)
        self.ingestor.stop()

        self.ingestor.run()

        codes = [outcome.result.code for outcome in self.reporter.outcomes]
        self.assertEqual(
            codes,
            [
                ResultCode.LOW_BALANCE,
                ResultCode.CARD_NOT_FOUND,
                ResultCode.LOW_BALANCE,
                ResultCode.ACCOUNT_EMPTY,
            ],
        )
        self.assertEqual(self.ctx.transactions.get_balance(self.alice.id), 50)

    def test_reader_failure_ends_run(self):
        self.ctx.reader.swipe(CARD)
        self.ctx.reader.fail(ReaderError("antenna unplugged"))

        with self.assertRaisesRegex(ReaderError, "antenna unplugged"):
            self.ingestor.run()
        self.assertEqual(len(self.reporter.outcomes), 1)

    def test_failing_reporter_does_not_stop_processing(self):
        ingestor = SwipeIngestor(
            self.ctx.reader,
            self.ctx.build_router(),
            [BrokenReporter(), LogReporter()],
        )
        ingestor.add_reporter(self.reporter)
        self.ctx.reader.swipe(CARD)
        self.ctx.reader.swipe(CARD)
        ingestor.stop()

        ingestor.run()

        self.assertEqual(len(self.reporter.outcomes), 2)

    def test_run_in_thread_reports_failure(self):
        failed = threading.Event()
        failures = []

        def on_failure(exc):
            failures.append(exc)
            failed.set()

        thread = self.ingestor.run_in_thread(on_failure=on_failure)
        self.ctx.reader.swipe(CARD)
        self.ctx.reader.fail(ReaderError("antenna unplugged"))

        self.assertTrue(failed.wait(timeout=2.0))
        thread.join(timeout=2.0)
        self.assertFalse(thread.is_alive())
        self.assertEqual(len(self.reporter.outcomes), 1)
        self.assertIsInstance(failures[0], ReaderError)

    def test_run_in_thread_reports_unexpected_error(self):
        def charge(card_id):
            raise RuntimeError("unexpected")

        ingestor = SwipeIngestor(
            self.ctx.reader,
            CardEventRouter(self.ctx.registration, charge),
            [self.reporter],
        )
        failed = threading.Event()
        failures = []

        def on_failure(exc):
            failures.append(exc)
            failed.set()

        thread = ingestor.run_in_thread(on_failure=on_failure)
        self.ctx.reader.swipe(CARD)

        self.assertTrue(failed.wait(timeout=2.0))
        thread.join(timeout=2.0)
        self.assertFalse(thread.is_alive())
        self.assertIsInstance(failures[0], RuntimeError)
        self.assertEqual(self.reporter.outcomes, [])
        ingestor.stop()

    def test_registration_captures_swipe_from_reader(self):
        received = []
        waiter = threading.Thread(
            target=lambda: received.append(self.ctx.registration.wait_for_card("alice"))
        )
        waiter.start()
        while not self.ctx.registration.is_open:
            waiter.join(timeout=0.005)

        self.ctx.reader.swipe(UNKNOWN_CARD)
        self.ctx.reader.swipe(CARD)
        self.ingestor.stop()
        self.ingestor.run()
        waiter.join(timeout=2.0)

        self.assertEqual(received, [UNKNOWN_CARD])
        self.assertTrue(self.reporter.outcomes[0].registered)
        self.assertEqual(self.reporter.outcomes[1].result.code, ResultCode.LOW_BALANCE)


if __name__ == "__main__":
    unittest.main()
