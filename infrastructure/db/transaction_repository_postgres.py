from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

import psycopg2

from domain.errors import StorageError
from domain.models import Card, Transaction, User
from domain.repositories import LedgerUnit, TransactionRepository

from .postgres_support import connect, storage_errors, to_bytes

_COLUMNS = "id, user_id, card_id, time, amount, kind"


def _to_domain(row: tuple) -> Transaction:
    return Transaction(
        id=int(row[0]),
        user_id=int(row[1]),
        card_id=to_bytes(row[2]),
        time=row[3],
        amount=int(row[4]),
        kind=row[5],
    )


class _PostgresLedgerUnit(LedgerUnit):
    def __init__(self, cur) -> None:
        self._cur = cur

    def find_card(self, card_id: bytes) -> Optional[Card]:
        self._cur.execute(
            "SELECT id, user_id, description FROM cards WHERE id = %s",
            (psycopg2.Binary(card_id),),
        )
        row = self._cur.fetchone()
        if not row:
            return None
        return Card(id=to_bytes(row[0]), user_id=int(row[1]), description=row[2])

    def get_user(self, user_id: int) -> Optional[User]:
        self._cur.execute(
            "SELECT id, name, password_hash FROM users WHERE id = %s",
            (user_id,),
        )
        row = self._cur.fetchone()
        if not row:
            return None
        return User(id=int(row[0]), name=row[1], password_hash=row[2])

    def balance(self, user_id: int) -> int:
        # The row lock serialises all units touching this user's ledger
        # until commit; the sum below sees every previously committed row.
        self._cur.execute("SELECT id FROM users WHERE id = %s FOR UPDATE", (user_id,))
        self._cur.execute(
            "SELECT COALESCE(SUM(amount), 0) FROM transactions WHERE user_id = %s",
            (user_id,),
        )
        return int(self._cur.fetchone()[0])

    def append(
        self,
        user_id: int,
        card_id: Optional[bytes],
        amount: int,
        kind: str,
        time: datetime,
    ) -> Transaction:
        self._cur.execute(
            """
            INSERT INTO transactions (user_id, card_id, time, amount, kind)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                user_id,
                psycopg2.Binary(card_id) if card_id is not None else None,
                time,
                amount,
                kind,
            ),
        )
        (transaction_id,) = self._cur.fetchone()
        return Transaction(
            id=int(transaction_id),
            user_id=user_id,
            card_id=card_id,
            time=time,
            amount=amount,
            kind=kind,
        )


class PostgresTransactionRepository(TransactionRepository):
    """
    Postgres-backed ledger.

    Each unit runs in one database transaction and locks the owning user's
    row before reading the balance, so concurrent debits for the same user
    queue up instead of reading the same pre-charge balance.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._ensure_table()

    def _get_connection(self):
        return connect(self._dsn)

    def _ensure_table(self) -> None:
        with storage_errors("creating transactions table"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS transactions (
                        id BIGSERIAL PRIMARY KEY,
                        user_id BIGINT NOT NULL REFERENCES users (id),
                        card_id BYTEA,
                        time TIMESTAMPTZ NOT NULL,
                        amount BIGINT NOT NULL,
                        kind TEXT NOT NULL
                    )
                    """
                )
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS transactions_user_id ON transactions (user_id)"
                )

    @contextmanager
    def atomic(self) -> Iterator[LedgerUnit]:
        try:
            conn = self._get_connection()
        except psycopg2.Error as exc:
            raise StorageError(f"connecting to ledger failed: {exc}") from exc
        try:
            with conn:
                with conn.cursor() as cur:
                    yield _PostgresLedgerUnit(cur)
        except psycopg2.Error as exc:
            raise StorageError(f"ledger transaction failed: {exc}") from exc
        finally:
            conn.close()

    def get_balance(self, user_id: int) -> int:
        with self.atomic() as unit:
            return unit.balance(user_id)

    def get_transactions(self, user_id: int, limit: int = 0) -> List[Transaction]:
        query = f"SELECT {_COLUMNS} FROM transactions WHERE user_id = %s ORDER BY id DESC"
        params: tuple = (user_id,)
        if limit > 0:
            query += " LIMIT %s"
            params += (limit,)
        with storage_errors("listing transactions"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return [_to_domain(row) for row in cur.fetchall()]

    def add_transaction(
        self,
        user_id: int,
        amount: int,
        kind: str,
        card_id: Optional[bytes] = None,
        time: Optional[datetime] = None,
    ) -> Transaction:
        with self.atomic() as unit:
            return unit.append(
                user_id,
                card_id,
                amount,
                kind,
                time or datetime.now(timezone.utc),
            )
