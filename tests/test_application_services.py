import os
import tempfile
import threading
import unittest

from application.registration import RegistrationSlot
from application.services import (
    ExternalContext,
    account_summary,
    add_card,
    authenticate,
    change_password,
    get_balance,
    get_transactions,
    list_cards,
    login_external,
    logout_external,
    register_card_by_swipe,
    register_user,
    remove_card,
    resolve_external,
    top_up,
    update_card,
)
from infrastructure.db.card_repository_sqlite import SqliteCardRepository
from infrastructure.db.identity_repository_sqlite import SqliteIdentityRepository
from infrastructure.db.transaction_repository_sqlite import SqliteTransactionRepository
from infrastructure.db.user_repository_sqlite import SqliteUserRepository

# Cheapest cost bcrypt accepts; keeps the suite fast.
ROUNDS = 4

CARD = b"\x04\x01\x02\x03"


class ApplicationServicesTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        db_path = os.path.join(self._tmp.name, "kasse.db")
        self.user_repo = SqliteUserRepository(db_path)
        self.card_repo = SqliteCardRepository(db_path)
        self.transaction_repo = SqliteTransactionRepository(db_path)
        self.identity_repo = SqliteIdentityRepository(db_path, self.user_repo)
        self.ctx = ExternalContext(
            provider="telegram",
            provider_user_id="12345",
            display_name="John",
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def register(self, name="alice", password="hunter2"):
        result = register_user(name, password, self.user_repo, rounds=ROUNDS)
        self.assertTrue(result.success, result.error_message)
        return result.user

    def test_register_user_stores_password_hash(self):
        user = self.register()

        self.assertNotEqual(user.password_hash, "hunter2")
        self.assertEqual(self.user_repo.get_by_name("alice"), user)

    def test_register_user_rejects_duplicates_and_empty_input(self):
        self.register()

        duplicate = register_user("alice", "other", self.user_repo, rounds=ROUNDS)
        self.assertFalse(duplicate.success)
        self.assertEqual(duplicate.error_message, "User already exists.")

        for name, password in (("", "pw"), ("   ", "pw"), ("bob", "")):
            with self.subTest(name=name, password=password):
                result = register_user(name, password, self.user_repo, rounds=ROUNDS)
                self.assertFalse(result.success)

    def test_register_user_rejects_overlong_password(self):
        result = register_user("alice", "x" * 73, self.user_repo, rounds=ROUNDS)
        self.assertFalse(result.success)
        self.assertIsNone(self.user_repo.get_by_name("alice"))

    def test_authenticate(self):
        self.register()

        self.assertTrue(authenticate("alice", "hunter2", self.user_repo).success)
        wrong = authenticate("alice", "nope", self.user_repo)
        unknown = authenticate("mallory", "hunter2", self.user_repo)
        self.assertFalse(wrong.success)
        self.assertFalse(unknown.success)
        self.assertEqual(wrong.error_message, unknown.error_message)

    def test_change_password(self):
        user = self.register()

        self.assertFalse(
            change_password(user.id, "wrong", "new-secret", self.user_repo, rounds=ROUNDS).success
        )
        self.assertTrue(
            change_password(user.id, "hunter2", "new-secret", self.user_repo, rounds=ROUNDS).success
        )
        self.assertTrue(authenticate("alice", "new-secret", self.user_repo).success)
        self.assertFalse(authenticate("alice", "hunter2", self.user_repo).success)

    def test_login_links_chat_identity_until_logout(self):
        user = self.register()
        self.assertIsNone(resolve_external(self.ctx, self.identity_repo))

        failed = login_external(self.ctx, "alice", "nope", self.identity_repo, self.user_repo)
        self.assertFalse(failed.success)
        self.assertIsNone(resolve_external(self.ctx, self.identity_repo))

        result = login_external(self.ctx, "alice", "hunter2", self.identity_repo, self.user_repo)
        self.assertTrue(result.success)
        self.assertEqual(resolve_external(self.ctx, self.identity_repo), user)
        self.assertEqual(
            self.identity_repo.get_external_ids_for_user("telegram", user.id), ["12345"]
        )

        logout_external(self.ctx, self.identity_repo)
        self.assertIsNone(resolve_external(self.ctx, self.identity_repo))

    def test_add_card_rejects_card_bound_to_anyone(self):
        alice = self.register("alice")
        bob = self.register("bob")

        self.assertTrue(add_card(alice, CARD, self.card_repo, "keyring").success)
        again = add_card(bob, CARD, self.card_repo)

        self.assertFalse(again.success)
        self.assertEqual(again.error_message, "Card is already registered.")
        self.assertEqual(self.card_repo.get_card(CARD).user_id, alice.id)
        self.assertEqual(self.card_repo.get_card(CARD).description, "keyring")

    def test_remove_and_update_only_own_cards(self):
        alice = self.register("alice")
        bob = self.register("bob")
        add_card(alice, CARD, self.card_repo)

        self.assertFalse(remove_card(bob, CARD, self.card_repo).success)
        self.assertFalse(update_card(bob, CARD, "mine now", self.card_repo).success)

        self.assertTrue(update_card(alice, CARD, "student id", self.card_repo).success)
        self.assertEqual(list_cards(alice, self.card_repo)[0].description, "student id")

        self.assertTrue(remove_card(alice, CARD, self.card_repo).success)
        self.assertEqual(list_cards(alice, self.card_repo), [])
        self.assertFalse(remove_card(alice, CARD, self.card_repo).success)

    def test_register_card_by_swipe(self):
        alice = self.register()
        slot = RegistrationSlot(timeout=5.0)
        results = []
        waiter = threading.Thread(
            target=lambda: results.append(
                register_card_by_swipe(alice, slot, self.card_repo, "blue tag")
            )
        )
        waiter.start()
        while not slot.is_open:
            waiter.join(timeout=0.005)

        self.assertTrue(slot.offer(CARD))
        waiter.join(timeout=2.0)

        self.assertTrue(results[0].success)
        card = self.card_repo.get_card(CARD)
        self.assertEqual(card.user_id, alice.id)
        self.assertEqual(card.description, "blue tag")

    def test_register_card_by_swipe_timeout_and_busy(self):
        alice = self.register()
        slot = RegistrationSlot(timeout=5.0)

        timed_out = register_card_by_swipe(alice, slot, self.card_repo, timeout=0.01)
        self.assertFalse(timed_out.success)
        self.assertEqual(timed_out.error_message, "No card was swiped in time.")

        with slot.open("bob"):
            busy = register_card_by_swipe(alice, slot, self.card_repo, timeout=0.01)
        self.assertFalse(busy.success)
        self.assertEqual(list_cards(alice, self.card_repo), [])

    def test_top_up_and_summary(self):
        alice = self.register()
        add_card(alice, CARD, self.card_repo)

        self.assertFalse(top_up(alice, 0, self.transaction_repo).success)
        self.assertFalse(top_up(alice, -500, self.transaction_repo).success)
        for amount in (500, 250, 1000):
            self.assertTrue(top_up(alice, amount, self.transaction_repo).success)

        self.assertEqual(get_balance(alice, self.transaction_repo), 1750)
        self.assertEqual(
            [tx.amount for tx in get_transactions(alice, self.transaction_repo)],
            [1000, 250, 500],
        )

        summary = account_summary(alice, self.card_repo, self.transaction_repo, limit=2)
        self.assertEqual(summary.balance, 1750)
        self.assertEqual([card.id for card in summary.cards], [CARD])
        self.assertEqual([tx.amount for tx in summary.transactions], [1000, 250])


if __name__ == "__main__":
    unittest.main()
