from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2

from domain.errors import StorageError


def connect(dsn: str):
    return psycopg2.connect(dsn)


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    """Re-raise driver errors as `StorageError`."""

    try:
        yield
    except psycopg2.Error as exc:
        raise StorageError(f"{action} failed: {exc}") from exc


def to_bytes(value) -> Optional[bytes]:
    # BYTEA columns come back as memoryview.
    return bytes(value) if value is not None else None
