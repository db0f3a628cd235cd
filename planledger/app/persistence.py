"""Connection and cursor helpers shared by the Postgres repositories."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..app_context import get_conn
from ..ledger_config import TableNames, table_names


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None) -> Iterator[Tuple[PgConnection, bool]]:
    """Context manager that manages transaction boundaries for optional connections.

    A caller supplied connection is yielded untouched: the caller owns its
    transaction. Otherwise a fresh connection is opened, committed on success,
    rolled back on error and closed.
    """

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


class PostgresRepository:
    """Base class wiring a connection and table names into a repository."""

    def __init__(self, *, conn: Optional[PgConnection] = None, tables: Optional[TableNames] = None) -> None:
        self._conn = conn
        self._tables = tables or table_names()

    @property
    def tables(self) -> TableNames:
        return self._tables

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        """Yield a dict cursor; everything executed on it shares one transaction."""

        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()


__all__ = ["PostgresRepository", "managed_connection"]
