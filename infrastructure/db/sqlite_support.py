from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Iterator

from domain.errors import StorageError

# Seconds a connection waits for another writer's lock before failing.
BUSY_TIMEOUT = 10.0


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    """Re-raise driver errors as `StorageError`."""

    try:
        yield
    except sqlite3.Error as exc:
        raise StorageError(f"{action} failed: {exc}") from exc
