from __future__ import annotations

from typing import List, Optional

from domain.models import User
from domain.repositories import IdentityRepository, UserRepository

from .postgres_support import connect, storage_errors


class PostgresIdentityRepository(IdentityRepository):
    """
    Postgres-backed implementation of `IdentityRepository`.

    It uses a dedicated `user_identities` table to map external identities
    (provider + provider_user_id) to internal user IDs stored in the `users`
    table managed by `PostgresUserRepository`.
    """

    def __init__(self, dsn: str, user_repo: UserRepository) -> None:
        self._dsn = dsn
        self._user_repo = user_repo
        self._ensure_table()

    def _get_connection(self):
        return connect(self._dsn)

    def _ensure_table(self) -> None:
        with storage_errors("creating user_identities table"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS user_identities (
                        provider TEXT NOT NULL,
                        provider_user_id TEXT NOT NULL,
                        user_id BIGINT NOT NULL REFERENCES users (id),
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
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT user_id
                    FROM user_identities
                    WHERE provider = %s AND provider_user_id = %s
                    """,
                    (provider, provider_user_id),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return int(row[0])

    def set_external_identity(
        self,
        provider: str,
        provider_user_id: str,
        user_id: int,
    ) -> None:
        with storage_errors("saving identity"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO user_identities (provider, provider_user_id, user_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (provider, provider_user_id)
                    DO UPDATE SET user_id = EXCLUDED.user_id
                    """,
                    (provider, provider_user_id, user_id),
                )

    def clear_external_identity(
        self,
        provider: str,
        provider_user_id: str,
    ) -> None:
        with storage_errors("clearing identity"), self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM user_identities
                    WHERE provider = %s AND provider_user_id = %s
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
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT provider_user_id
                    FROM user_identities
                    WHERE provider = %s AND user_id = %s
                    """,
                    (provider, user_id),
                )
                return [str(row[0]) for row in cur.fetchall()]
