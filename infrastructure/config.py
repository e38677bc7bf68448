from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional

from dotenv import load_dotenv

from domain.errors import ConfigError
from domain.models import ChargePolicy

READERS = ("serial", "simulated")


@dataclass(frozen=True)
class Settings:
    database_url: str = "kasse.db"
    reader: str = "serial"
    serial_port: str = "/dev/ttyUSB0"
    serial_baud: int = 9600
    polling_interval: float = 0.1
    swipe_amount: int = 100
    low_balance: int = 600
    registration_timeout: float = 60.0
    admin_ids: FrozenSet[str] = field(default_factory=frozenset)
    log_level: str = "INFO"
    log_json: bool = False
    telegram_token: Optional[str] = None
    discord_token: Optional[str] = None

    @property
    def policy(self) -> ChargePolicy:
        return ChargePolicy(amount=self.swipe_amount, low_balance=self.low_balance)

    @property
    def uses_postgres(self) -> bool:
        return self.database_url.startswith(("postgres://", "postgresql://"))


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = _int(env, name, default)
    if value <= 0:
        raise ConfigError(f"{name} must be greater than zero, got {value}")
    return value


def _bool(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Read settings from the environment (and a `.env` file, if present).

    Pass `env` to read from a plain mapping instead, e.g. in tests.
    """

    if env is None:
        load_dotenv()
        env = os.environ

    reader = env.get("KASSE_READER", "serial").strip().lower()
    if reader not in READERS:
        raise ConfigError(f"KASSE_READER must be one of {', '.join(READERS)}, got {reader!r}")

    swipe_amount = _positive_int(env, "KASSE_SWIPE_AMOUNT", 100)
    polling_ms = _positive_int(env, "KASSE_POLLING_INTERVAL_MS", 100)
    low_balance = _positive_int(env, "KASSE_LOW_BALANCE", 600)
    registration_timeout = _positive_int(env, "KASSE_REGISTRATION_TIMEOUT", 60)

    admin_ids = frozenset(
        part.strip() for part in env.get("KASSE_ADMIN_IDS", "").split(",") if part.strip()
    )

    return Settings(
        database_url=env.get("KASSE_DATABASE_URL", "kasse.db"),
        reader=reader,
        serial_port=env.get("KASSE_SERIAL_PORT", "/dev/ttyUSB0"),
        serial_baud=_int(env, "KASSE_SERIAL_BAUD", 9600),
        polling_interval=polling_ms / 1000,
        swipe_amount=swipe_amount,
        low_balance=low_balance,
        registration_timeout=float(registration_timeout),
        admin_ids=admin_ids,
        log_level=env.get("KASSE_LOG_LEVEL", "INFO").upper(),
        log_json=_bool(env, "KASSE_LOG_JSON"),
        telegram_token=env.get("TELEGRAM_TOKEN") or None,
        discord_token=env.get("DISCORD_TOKEN") or None,
    )
