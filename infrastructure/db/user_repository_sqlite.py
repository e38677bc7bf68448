from __future__ import annotations

import sqlite3
from typing import Optional

from domain.errors import UserExistsError
from domain.models import User
from domain.repositories import UserRepository

from .sqlite_support import connect, storage_errors


class SqliteUserRepository(UserRepository):
    """
    SQLite-backed implementation of `UserRepository`.

    This repository owns the `users` table and maps rows to the `User`
    domain model. It is self-initialising: the table is created if needed.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._ensure_table()

    def _get_connection(self) -> sqlite3.Connection:
        return connect(self._db_path)

    def _ensure_table(self) -> None:
        with storage_errors("creating users table"), self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
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
            row = conn.execute(
                "SELECT id, name, password_hash FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
            return self._to_domain(row) if row else None

    def get_by_name(self, name: str) -> Optional[User]:
        with storage_errors("loading user"), self._get_connection() as conn:
            row = conn.execute(
                "SELECT id, name, password_hash FROM users WHERE name = ?",
                (name,),
            ).fetchone()
            return self._to_domain(row) if row else None

    def add_user(self, name: str, password_hash: str) -> User:
        with storage_errors("adding user"), self._get_connection() as conn:
            try:
                cur = conn.execute(
                    "INSERT INTO users (name, password_hash) VALUES (?, ?)",
                    (name, password_hash),
                )
            except sqlite3.IntegrityError as exc:
                raise UserExistsError(f"user {name!r} already exists") from exc
            return User(id=int(cur.lastrowid), name=name, password_hash=password_hash)

    def set_password_hash(self, user_id: int, password_hash: str) -> None:
        with storage_errors("updating password"), self._get_connection() as conn:
            conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?",
                (password_hash, user_id),
            )
