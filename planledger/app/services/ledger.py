"""Application wiring for the catalog, subscription and usage services."""
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

import psycopg2
from psycopg2.extensions import connection as PgConnection

from ... import app_context, ledger_config
from ..catalog.repository import PostgresCatalogRepository
from ..catalog.service import CatalogService
from ..events import EventDispatcher, EventSink, LoggingEventSink
from ..persistence import managed_connection
from ..subscriptions.repository import PostgresSubscriptionRepository
from ..subscriptions.service import SubscriptionService
from ..usage.repository import PostgresUsageRepository
from ..usage.service import UsageService

logger = logging.getLogger("planledger")

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "schema.sql"


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a stream handler to the ``planledger`` logger at ``LEDGER_LOG_LEVEL``."""

    resolved = (level or ledger_config.LEDGER_LOG_LEVEL).upper()
    logger.setLevel(resolved)
    if not any(isinstance(handler, logging.StreamHandler) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)


def connect() -> PgConnection:
    return psycopg2.connect(**ledger_config.DB_CONFIG)


def configure_database() -> None:
    """Point repositories without an explicit connection at ``DB_CONFIG``."""

    app_context.configure(get_conn=connect)


def schema_sql(tables: Optional[ledger_config.TableNames] = None) -> str:
    names = tables or ledger_config.table_names()
    return SCHEMA_PATH.read_text(encoding="utf-8").format(**names.as_dict())


def ensure_schema(conn: Optional[PgConnection] = None, tables: Optional[ledger_config.TableNames] = None) -> None:
    """Create the ledger tables and indexes when they do not exist yet."""

    with managed_connection(conn) as (connection, _managed):
        with connection.cursor() as cursor:
            cursor.execute(schema_sql(tables))
    logger.info("Ledger schema ensured")


@lru_cache(maxsize=1)
def get_event_sink() -> EventSink:
    dispatcher = EventDispatcher()
    if ledger_config.LEDGER_EVENTS_LOG_ENABLED:
        dispatcher.add_sink(LoggingEventSink())
    return dispatcher


@lru_cache(maxsize=1)
def get_catalog_service() -> CatalogService:
    return CatalogService(repository=PostgresCatalogRepository())


@lru_cache(maxsize=1)
def get_subscription_service() -> SubscriptionService:
    return SubscriptionService(
        repository=PostgresSubscriptionRepository(),
        catalog=PostgresCatalogRepository(),
        events=get_event_sink(),
    )


@lru_cache(maxsize=1)
def get_usage_service() -> UsageService:
    return UsageService(
        repository=PostgresUsageRepository(),
        catalog=PostgresCatalogRepository(),
        events=get_event_sink(),
    )


__all__ = [
    "configure_database",
    "configure_logging",
    "connect",
    "ensure_schema",
    "get_catalog_service",
    "get_event_sink",
    "get_subscription_service",
    "get_usage_service",
    "schema_sql",
]
