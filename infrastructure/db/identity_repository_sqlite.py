from __future__ import annotations

import sqlite3
from typing import List, Optional

from domain.models import User
from domain.repositories import IdentityRepository, UserRepository

from .sqlite_support import connect, storage_errors


class SqliteIdentityRepository(IdentityRepository):
    """
    SQLite-backed implementation of `IdentityRepository`.

    Stores mappings from (provider, provider_user_id) to internal user IDs
    in a `user_identities` table.
    """

    def __init__(self, db_path: str, user_repo: UserRepository) -> None:
        self._db_path = db_path
        self._user_repo = user_repo
        self._ensure_table()

    def _get_connection(self) -> sqlite3.Connection:
        return connect(self._db_path)

    def _ensure_table(self) -> None:
        with storage_errors("creating user_identities table"), self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_identities (
                    provider TEXT NOT NULL,
                    provider_user_id TEXT NOT NULL,
                    user_id INTEGER NOT NULL REFERENCES users (id),
                    PRIMARY KEY (provider, provider_user_id)
                )
                """
            )

    def _get_internal_user_id(
        self,
        provider: str,
        provider_user_id: str,
    ) -> Optional[int]:
        with storage_errors("loading identity"), self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT user_id
                FROM user_identities
                WHERE provider = ? AND provider_user_id = ?
                """,
                (provider, provider_user_id),
            ).fetchone()
            if not row:
                return None
            return int(row[0])

    def set_external_identity(
        self,
        provider: str,
        provider_user_id: str,
        user_id: int,
    ) -> None:
        """
        Upsert a mapping from external identity to internal user ID.
        """

        with storage_errors("saving identity"), self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO user_identities (provider, provider_user_id, user_id)
                VALUES (?, ?, ?)
                ON CONFLICT (provider, provider_user_id)
                DO UPDATE SET user_id = excluded.user_id
                """,
                (provider, provider_user_id, user_id),
            )

    def clear_external_identity(
        self,
        provider: str,
        provider_user_id: str,
    ) -> None:
        with storage_errors("clearing identity"), self._get_connection() as conn:
            conn.execute(
                """
                DELETE FROM user_identities
                WHERE provider = ? AND provider_user_id = ?
                """,
                (provider, provider_user_id),
            )

    def find_user_by_external(
        self,
        provider: str,
        provider_user_id: str,
    ) -> Optional[User]:
        user_id = self._get_internal_user_id(provider, provider_user_id)
        if user_id is None:
            return None
        return self._user_repo.get_user(user_id)

    def get_external_ids_for_user(
        self,
        provider: str,
        user_id: int,
    ) -> List[str]:
        with storage_errors("listing identities"), self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT provider_user_id
                FROM user_identities
                WHERE provider = ? AND user_id = ?
                """,
                (provider, user_id),
            ).fetchall()
            return [str(row[0]) for row in rows]
