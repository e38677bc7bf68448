from __future__ import annotations

from typing import Optional

from application.context import KasseContext
from application.registration import RegistrationSlot
from domain.repositories import Reader

from .config import Settings
from .db.card_repository_postgres import PostgresCardRepository
from .db.card_repository_sqlite import SqliteCardRepository
from .db.identity_repository_postgres import PostgresIdentityRepository
from .db.identity_repository_sqlite import SqliteIdentityRepository
from .db.transaction_repository_postgres import PostgresTransactionRepository
from .db.transaction_repository_sqlite import SqliteTransactionRepository
from .db.user_repository_postgres import PostgresUserRepository
from .db.user_repository_sqlite import SqliteUserRepository
from .reader.polling_reader import PollingReader
from .reader.queue_reader import QueueReader
from .reader.serial_device import SerialCardDevice


def _sqlite_path(url: str) -> str:
    prefix = "sqlite:///"
    return url[len(prefix):] if url.startswith(prefix) else url


def build_reader(settings: Settings) -> Reader:
    if settings.reader == "simulated":
        return QueueReader()
    device = SerialCardDevice(settings.serial_port, settings.serial_baud)
    return PollingReader(device, interval=settings.polling_interval)


def build_context(settings: Settings, reader: Optional[Reader] = None) -> KasseContext:
    """
    Wire repositories, reader and registration slot from `settings`.

    Tables are created in dependency order (users before cards and
    transactions).
    """

    if settings.uses_postgres:
        dsn = settings.database_url
        users = PostgresUserRepository(dsn)
        cards = PostgresCardRepository(dsn)
        transactions = PostgresTransactionRepository(dsn)
        identities = PostgresIdentityRepository(dsn, users)
    else:
        path = _sqlite_path(settings.database_url)
        users = SqliteUserRepository(path)
        cards = SqliteCardRepository(path)
        transactions = SqliteTransactionRepository(path)
        identities = SqliteIdentityRepository(path, users)

    return KasseContext(
        users=users,
        cards=cards,
        transactions=transactions,
        identities=identities,
        reader=reader if reader is not None else build_reader(settings),
        registration=RegistrationSlot(timeout=settings.registration_timeout),
        policy=settings.policy,
    )
