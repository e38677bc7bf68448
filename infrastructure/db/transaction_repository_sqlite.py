from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

import structlog

from domain.errors import StorageError
from domain.models import Card, Transaction, User
from domain.repositories import LedgerUnit, TransactionRepository

from .sqlite_support import connect, storage_errors

logger = structlog.get_logger(__name__)

_COLUMNS = "id, user_id, card_id, time, amount, kind"


def _to_domain(row: tuple) -> Transaction:
    return Transaction(
        id=int(row[0]),
        user_id=int(row[1]),
        card_id=bytes(row[2]) if row[2] is not None else None,
        time=datetime.fromisoformat(row[3]),
        amount=int(row[4]),
        kind=row[5],
    )


class _SqliteLedgerUnit(LedgerUnit):
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def find_card(self, card_id: bytes) -> Optional[Card]:
        row = self._conn.execute(
            "SELECT id, user_id, description FROM cards WHERE id = ?",
            (card_id,),
        ).fetchone()
        if not row:
            return None
        return Card(id=bytes(row[0]), user_id=int(row[1]), description=row[2])

    def get_user(self, user_id: int) -> Optional[User]:
        row = self._conn.execute(
            "SELECT id, name, password_hash FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        if not row:
            return None
        return User(id=int(row[0]), name=row[1], password_hash=row[2])

    def balance(self, user_id: int) -> int:
        row = self._conn.execute(
            "SELECT COALESCE(SUM(amount), 0) FROM transactions WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return int(row[0])

    def append(
        self,
        user_id: int,
        card_id: Optional[bytes],
        amount: int,
        kind: str,
        time: datetime,
    ) -> Transaction:
        cur = self._conn.execute(
            """
            INSERT INTO transactions (user_id, card_id, time, amount, kind)
            VALUES (?, ?, ?, ?, ?)
            """,
            (user_id, card_id, time.isoformat(), amount, kind),
        )
        return Transaction(
            id=int(cur.lastrowid),
            user_id=user_id,
            card_id=card_id,
            time=time,
            amount=amount,
            kind=kind,
        )


class SqliteTransactionRepository(TransactionRepository):
    """
    SQLite-backed ledger.

    Units of work start with `BEGIN IMMEDIATE`, which takes the database
    write lock up front. A balance read inside a unit therefore cannot go
    stale before the unit's own append commits, across threads and
    processes alike.

    `card_id` records which card was used and deliberately has no foreign
    key: unbinding a card must not touch the append-only history.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._ensure_table()

    def _get_connection(self) -> sqlite3.Connection:
        return connect(self._db_path)

    def _ensure_table(self) -> None:
        with storage_errors("creating transactions table"), self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users (id),
                    card_id BLOB,
                    time TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    kind TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS transactions_user_id ON transactions (user_id)"
            )

    @contextmanager
    def atomic(self) -> Iterator[LedgerUnit]:
        conn = self._get_connection()
        # Manage the transaction by hand instead of sqlite3's implicit BEGIN.
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield _SqliteLedgerUnit(conn)
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise StorageError(f"ledger transaction failed: {exc}") from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            # The connection is closed right after; sqlite discards the
            # transaction with it.
            logger.warning("rollback_failed", exc_info=True)

    def get_balance(self, user_id: int) -> int:
        with self.atomic() as unit:
            return unit.balance(user_id)

    def get_transactions(self, user_id: int, limit: int = 0) -> List[Transaction]:
        query = f"SELECT {_COLUMNS} FROM transactions WHERE user_id = ? ORDER BY id DESC"
        params: tuple = (user_id,)
        if limit > 0:
            query += " LIMIT ?"
            params += (limit,)
        with storage_errors("listing transactions"), self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [_to_domain(row) for row in rows]

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
