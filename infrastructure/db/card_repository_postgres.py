from __future__ import annotations

from typing import List, Optional

import psycopg2
import psycopg2.errors

from domain.errors import CardExistsError
from domain.models import Card
from domain.repositories import CardRepository

from .postgres_support import connect, storage_errors, to_bytes


class PostgresCardRepository(CardRepository):
    """Postgres-backed implementation of `CardRepository` (`cards` table)."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._ensure_table()

    def _get_connection(self):
        return connect(self._dsn)

    def _ensure_table(self) -> None:
        with storage_errors("creating cards table"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS cards (
                        id BYTEA PRIMARY KEY,
                        user_id BIGINT NOT NULL REFERENCES users (id),
                        description TEXT
                    )
                    """
                )

    @staticmethod
    def _to_domain(row: tuple) -> Card:
        return Card(id=to_bytes(row[0]), user_id=int(row[1]), description=row[2])

    def get_card(self, card_id: bytes) -> Optional[Card]:
        with storage_errors("loading card"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, user_id, description FROM cards WHERE id = %s",
                    (psycopg2.Binary(card_id),),
                )
                row = cur.fetchone()
                return self._to_domain(row) if row else None

    def get_cards_for_user(self, user_id: int) -> List[Card]:
        with storage_errors("listing cards"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, user_id, description FROM cards WHERE user_id = %s ORDER BY id",
                    (user_id,),
                )
                return [self._to_domain(row) for row in cur.fetchall()]

    def add_card(self, card: Card) -> Card:
        with storage_errors("adding card"), self._get_connection() as conn:
            with conn.cursor() as cur:
                try:
                    cur.execute(
                        "INSERT INTO cards (id, user_id, description) VALUES (%s, %s, %s)",
                        (psycopg2.Binary(card.id), card.user_id, card.description),
                    )
                except psycopg2.errors.UniqueViolation as exc:
                    raise CardExistsError(f"card {card.id.hex()} is already registered") from exc
                return card

    def update_description(self, card_id: bytes, description: Optional[str]) -> None:
        with storage_errors("updating card"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE cards SET description = %s WHERE id = %s",
                    (description, psycopg2.Binary(card_id)),
                )

    def remove_card(self, card_id: bytes) -> None:
        with storage_errors("removing card"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM cards WHERE id = %s", (psycopg2.Binary(card_id),))
