from __future__ import annotations

from typing import Optional

import psycopg2.errors

from domain.errors import UserExistsError
from domain.models import User
from domain.repositories import UserRepository

from .postgres_support import connect, storage_errors


class PostgresUserRepository(UserRepository):
    """
    Postgres-backed implementation of `UserRepository`.

    Owns the `users` table; IDs are assigned by a BIGSERIAL sequence and
    returned by the insert itself.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._ensure_table()

    def _get_connection(self):
        return connect(self._dsn)

    def _ensure_table(self) -> None:
        with storage_errors("creating users table"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id BIGSERIAL PRIMARY KEY,
                        name TEXT NOT NULL UNIQUE,
                        password_hash TEXT NOT NULL
                    )
                    """
                )

    @staticmethod
    def _to_domain(row: tuple) -> User:
        return User(id=int(row[0]), name=row[1], password_hash=row[2])

    def get_user(self, user_id: int) -> Optional[User]:
        with storage_errors("loading user"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, name, password_hash FROM users WHERE id = %s",
                    (user_id,),
                )
                row = cur.fetchone()
                return self._to_domain(row) if row else None

    def get_by_name(self, name: str) -> Optional[User]:
        with storage_errors("loading user"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, name, password_hash FROM users WHERE name = %s",
                    (name,),
                )
                row = cur.fetchone()
                return self._to_domain(row) if row else None

    def add_user(self, name: str, password_hash: str) -> User:
        with storage_errors("adding user"), self._get_connection() as conn:
            with conn.cursor() as cur:
                try:
                    cur.execute(
                        """
                        INSERT INTO users (name, password_hash)
                        VALUES (%s, %s)
                        RETURNING id
                        """,
                        (name, password_hash),
                    )
                except psycopg2.errors.UniqueViolation as exc:
                    raise UserExistsError(f"user {name!r} already exists") from exc
                (user_id,) = cur.fetchone()
                return User(id=int(user_id), name=name, password_hash=password_hash)

    def set_password_hash(self, user_id: int, password_hash: str) -> None:
        with storage_errors("updating password"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE users SET password_hash = %s WHERE id = %s",
                    (password_hash, user_id),
                )
