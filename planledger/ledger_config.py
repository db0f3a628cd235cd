"""Environment driven configuration for the subscription ledger."""

from __future__ import annotations

import math
import os
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict

from dotenv import load_dotenv

load_dotenv()

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


LEDGER_TABLE_PREFIX = os.getenv("LEDGER_TABLE_PREFIX", "")
LEDGER_LOG_LEVEL = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
LEDGER_EVENTS_LOG_ENABLED = _env_bool(os.getenv("LEDGER_EVENTS_LOG_ENABLED", "true"))

DB_CONFIG: Dict[str, Any] = {
    "host": os.getenv("DB_HOST", "127.0.0.1"),
    "port": int(os.getenv("DB_PORT", "5432")),
    "dbname": os.getenv("DB_NAME", "planledger"),
    "user": os.getenv("DB_USER", "planledger"),
    "password": os.getenv("DB_PASSWORD", "planledger"),
    "connect_timeout": _parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
}


@dataclass(frozen=True)
class TableNames:
    """Physical table names used by the Postgres repositories."""

    features: str = "features"
    plans: str = "plans"
    feature_plan: str = "feature_plan"
    subscriptions: str = "subscriptions"
    feature_subscription: str = "feature_subscription"

    def __post_init__(self) -> None:
        for name, value in asdict(self).items():
            if not _IDENTIFIER.match(value):
                raise ValueError(f"Invalid table name for {name}: {value!r}")

    @classmethod
    def with_prefix(cls, prefix: str) -> "TableNames":
        defaults = cls()
        return cls(**{name: f"{prefix}{value}" for name, value in asdict(defaults).items()})

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)


def table_names() -> TableNames:
    return TableNames.with_prefix(LEDGER_TABLE_PREFIX)


__all__ = [
    "DB_CONFIG",
    "LEDGER_EVENTS_LOG_ENABLED",
    "LEDGER_LOG_LEVEL",
    "LEDGER_TABLE_PREFIX",
    "TableNames",
    "table_names",
]
