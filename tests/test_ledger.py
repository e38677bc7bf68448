import os
import tempfile
import threading
import unittest
from contextlib import contextmanager
from datetime import datetime, timezone

from application.ledger import handle_swipe
from domain.errors import StorageError
from domain.models import SWIPE_CHARGE, TOP_UP, Card, ChargePolicy, ResultCode
from infrastructure.db.card_repository_sqlite import SqliteCardRepository
from infrastructure.db.transaction_repository_sqlite import SqliteTransactionRepository
from infrastructure.db.user_repository_sqlite import SqliteUserRepository

MEROVIUS_CARDS = (b"\xaa\xaa", b"\xaa\xab")
KOEBI_CARDS = (b"\xba\xaa", b"\xba\xab")


class LedgerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "kasse.db")
        self.users = SqliteUserRepository(self.db_path)
        self.cards = SqliteCardRepository(self.db_path)
        self.transactions = SqliteTransactionRepository(self.db_path)

        self.merovius = self.users.add_user("Merovius", "x")
        self.koebi = self.users.add_user("Koebi", "x")
        for card_id in MEROVIUS_CARDS:
            self.cards.add_card(Card(id=card_id, user_id=self.merovius.id))
        for card_id in KOEBI_CARDS:
            self.cards.add_card(Card(id=card_id, user_id=self.koebi.id))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def swipe(self, card_id: bytes, policy=None):
        return handle_swipe(card_id, self.transactions, policy)

    def give(self, user, amount: int) -> None:
        self.transactions.add_transaction(user.id, amount, TOP_UP)


class HandleSwipeTests(LedgerTestCase):
    def test_swipe_sequence_walks_down_the_balance(self):
        self.give(self.merovius, 800)

        sequence = [
            (b"foobar", ResultCode.CARD_NOT_FOUND),
            (KOEBI_CARDS[0], ResultCode.ACCOUNT_EMPTY),
            (KOEBI_CARDS[1], ResultCode.ACCOUNT_EMPTY),
            (MEROVIUS_CARDS[0], ResultCode.PAYMENT_MADE),
            (MEROVIUS_CARDS[1], ResultCode.PAYMENT_MADE),
            (MEROVIUS_CARDS[0], ResultCode.PAYMENT_MADE),
            (MEROVIUS_CARDS[1], ResultCode.LOW_BALANCE),
            (MEROVIUS_CARDS[0], ResultCode.LOW_BALANCE),
            (MEROVIUS_CARDS[1], ResultCode.LOW_BALANCE),
            (MEROVIUS_CARDS[0], ResultCode.LOW_BALANCE),
            (MEROVIUS_CARDS[1], ResultCode.LOW_BALANCE),
            (MEROVIUS_CARDS[0], ResultCode.ACCOUNT_EMPTY),
            (MEROVIUS_CARDS[1], ResultCode.ACCOUNT_EMPTY),
        ]
        for i, (card_id, expected) in enumerate(sequence):
            with self.subTest(step=i, card=card_id.hex()):
                self.assertEqual(self.swipe(card_id).code, expected)

        self.assertEqual(self.transactions.get_balance(self.merovius.id), 0)
        self.assertEqual(self.transactions.get_balance(self.koebi.id), 0)

    def test_swipe_after_top_up_and_two_debits(self):
        self.give(self.merovius, 1000)
        self.transactions.add_transaction(self.merovius.id, -100, SWIPE_CHARGE, MEROVIUS_CARDS[0])
        self.transactions.add_transaction(self.merovius.id, -100, SWIPE_CHARGE, MEROVIUS_CARDS[1])

        result = self.swipe(MEROVIUS_CARDS[0])

        self.assertEqual(result.code, ResultCode.PAYMENT_MADE)
        self.assertEqual(result.balance, 700)
        self.assertEqual(result.user.name, "Merovius")
        self.assertEqual(self.transactions.get_balance(self.merovius.id), 700)
        self.assertEqual(len(self.transactions.get_transactions(self.merovius.id)), 4)

    def test_unknown_card_writes_nothing(self):
        result = self.swipe(b"\x01\x02\x03\x04")

        self.assertEqual(result.code, ResultCode.CARD_NOT_FOUND)
        self.assertIsNone(result.user)
        self.assertFalse(result.charged)
        self.assertEqual(self.transactions.get_transactions(self.merovius.id), [])
        self.assertEqual(self.transactions.get_transactions(self.koebi.id), [])

    def test_refused_swipe_writes_nothing(self):
        self.give(self.koebi, 99)

        result = self.swipe(KOEBI_CARDS[0])

        self.assertEqual(result.code, ResultCode.ACCOUNT_EMPTY)
        self.assertEqual(result.balance, 99)
        self.assertEqual(result.user.name, "Koebi")
        self.assertEqual(len(self.transactions.get_transactions(self.koebi.id)), 1)

    def test_balance_equal_to_charge_is_accepted_as_low(self):
        self.give(self.koebi, 100)

        result = self.swipe(KOEBI_CARDS[0])

        self.assertEqual(result.code, ResultCode.LOW_BALANCE)
        self.assertEqual(result.balance, 0)

    def test_low_balance_threshold_uses_balance_before_charge(self):
        self.give(self.koebi, 600)
        self.assertEqual(self.swipe(KOEBI_CARDS[0]).code, ResultCode.PAYMENT_MADE)
        self.assertEqual(self.swipe(KOEBI_CARDS[0]).code, ResultCode.LOW_BALANCE)

        self.give(self.merovius, 599)
        self.assertEqual(self.swipe(MEROVIUS_CARDS[0]).code, ResultCode.LOW_BALANCE)

    def test_charge_is_recorded_with_card(self):
        self.give(self.merovius, 1000)

        result = self.swipe(MEROVIUS_CARDS[1])

        self.assertEqual(result.code, ResultCode.PAYMENT_MADE)
        self.assertEqual(result.balance, 900)
        latest = self.transactions.get_transactions(self.merovius.id, limit=1)[0]
        self.assertEqual(latest.amount, -100)
        self.assertEqual(latest.kind, SWIPE_CHARGE)
        self.assertEqual(latest.card_id, MEROVIUS_CARDS[1])
        self.assertIsNotNone(latest.time.tzinfo)

    def test_repeated_swipe_charges_again(self):
        self.give(self.merovius, 1000)

        self.swipe(MEROVIUS_CARDS[0])
        self.swipe(MEROVIUS_CARDS[0])

        self.assertEqual(self.transactions.get_balance(self.merovius.id), 800)

    def test_custom_policy(self):
        self.give(self.koebi, 300)
        policy = ChargePolicy(amount=250, low_balance=1000)

        result = self.swipe(KOEBI_CARDS[0], policy)

        self.assertEqual(result.code, ResultCode.LOW_BALANCE)
        self.assertEqual(result.balance, 50)
        self.assertEqual(self.swipe(KOEBI_CARDS[0], policy).code, ResultCode.ACCOUNT_EMPTY)

    def test_balance_is_sum_of_transactions(self):
        self.give(self.merovius, 750)
        for card_id in MEROVIUS_CARDS * 3:
            self.swipe(card_id)

        transactions = self.transactions.get_transactions(self.merovius.id)
        self.assertEqual(
            sum(tx.amount for tx in transactions),
            self.transactions.get_balance(self.merovius.id),
        )
        self.assertEqual(self.transactions.get_balance(self.merovius.id), 150)

    def test_concurrent_swipes_never_overdraw(self):
        self.give(self.merovius, 500)
        results = []
        start = threading.Barrier(10)

        def worker(card_id):
            start.wait()
            results.append(self.swipe(card_id))

        threads = [
            threading.Thread(target=worker, args=(MEROVIUS_CARDS[i % 2],))
            for i in range(10)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        charged = [r for r in results if r.charged]
        self.assertEqual(len(charged), 5)
        self.assertEqual(self.transactions.get_balance(self.merovius.id), 0)


class FailingTransactionRepository:
    """Fails when a unit of work is opened, like a locked or broken store."""

    @contextmanager
    def atomic(self):
        raise StorageError("database is locked")
        yield


class AtomicityTests(LedgerTestCase):
    def test_storage_error_escapes_handle_swipe(self):
        with self.assertRaises(StorageError):
            handle_swipe(MEROVIUS_CARDS[0], FailingTransactionRepository())

    def test_driver_error_rolls_back_the_unit(self):
        self.give(self.merovius, 1000)

        with self.assertRaises(StorageError):
            with self.transactions.atomic() as unit:
                unit.append(self.merovius.id, MEROVIUS_CARDS[0], -100, SWIPE_CHARGE, datetime.now(timezone.utc))
                unit._conn.execute("INSERT INTO no_such_table VALUES (1)")

        self.assertEqual(self.transactions.get_balance(self.merovius.id), 1000)

    def test_other_exceptions_roll_back_and_propagate(self):
        self.give(self.merovius, 1000)

        with self.assertRaises(RuntimeError):
            with self.transactions.atomic() as unit:
                unit.append(self.merovius.id, MEROVIUS_CARDS[0], -100, SWIPE_CHARGE, datetime.now(timezone.utc))
                raise RuntimeError("boom")

        self.assertEqual(self.transactions.get_balance(self.merovius.id), 1000)

    def test_history_survives_card_removal(self):
        self.give(self.merovius, 1000)
        self.swipe(MEROVIUS_CARDS[0])

        self.cards.remove_card(MEROVIUS_CARDS[0])

        self.assertEqual(self.swipe(MEROVIUS_CARDS[0]).code, ResultCode.CARD_NOT_FOUND)
        self.assertEqual(self.transactions.get_balance(self.merovius.id), 900)
        self.assertEqual(len(self.transactions.get_transactions(self.merovius.id)), 2)


if __name__ == "__main__":
    unittest.main()
