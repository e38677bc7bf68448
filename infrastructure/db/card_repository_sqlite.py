from __future__ import annotations

import sqlite3
from typing import List, Optional

from domain.errors import CardExistsError
from domain.models import Card
from domain.repositories import CardRepository

from .sqlite_support import connect, storage_errors


class SqliteCardRepository(CardRepository):
    """
    SQLite-backed implementation of `CardRepository`.

    Owns the `cards` table. Card IDs are stored as raw BLOBs exactly as the
    reader reported them.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._ensure_table()

    def _get_connection(self) -> sqlite3.Connection:
        return connect(self._db_path)

    def _ensure_table(self) -> None:
        with storage_errors("creating cards table"), self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cards (
                    id BLOB PRIMARY KEY,
                    user_id INTEGER NOT NULL REFERENCES users (id),
                    description TEXT
                )
                """
            )

    @staticmethod
    def _to_domain(row: tuple) -> Card:
        return Card(id=bytes(row[0]), user_id=int(row[1]), description=row[2])

    def get_card(self, card_id: bytes) -> Optional[Card]:
        with storage_errors("loading card"), self._get_connection() as conn:
            row = conn.execute(
                "SELECT id, user_id, description FROM cards WHERE id = ?",
                (card_id,),
            ).fetchone()
            return self._to_domain(row) if row else None

    def get_cards_for_user(self, user_id: int) -> List[Card]:
        with storage_errors("listing cards"), self._get_connection() as conn:
            rows = conn.execute(
                "SELECT id, user_id, description FROM cards WHERE user_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
            return [self._to_domain(row) for row in rows]

    def add_card(self, card: Card) -> Card:
        with storage_errors("adding card"), self._get_connection() as conn:
            try:
                conn.execute(
                    "INSERT INTO cards (id, user_id, description) VALUES (?, ?, ?)",
                    (card.id, card.user_id, card.description),
                )
            except sqlite3.IntegrityError as exc:
                if self._exists(conn, card.id):
                    raise CardExistsError(f"card {card.id.hex()} is already registered") from exc
                raise
            return card

    @staticmethod
    def _exists(conn: sqlite3.Connection, card_id: bytes) -> bool:
        row = conn.execute("SELECT 1 FROM cards WHERE id = ?", (card_id,)).fetchone()
        return row is not None

    def update_description(self, card_id: bytes, description: Optional[str]) -> None:
        with storage_errors("updating card"), self._get_connection() as conn:
            conn.execute(
                "UPDATE cards SET description = ? WHERE id = ?",
                (description, card_id),
            )

    def remove_card(self, card_id: bytes) -> None:
        with storage_errors("removing card"), self._get_connection() as conn:
            conn.execute("DELETE FROM cards WHERE id = ?", (card_id,))
