"""Connection pool and transaction helpers for the billing store."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Protocol

import psycopg2
import psycopg2.extras
import psycopg2.pool
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..errors import RepositoryError

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


class ConnectionPool(Protocol):
    """Subset of :class:`psycopg2.pool.AbstractConnectionPool` used by the store."""

    def getconn(self, key: Any = None) -> PgConnection:
        ...

    def putconn(self, conn: PgConnection, key: Any = None, close: bool = False) -> None:
        ...


def create_connection_pool(
    db_config: Dict[str, Any],
    *,
    min_connections: int = 1,
    max_connections: int = 10,
) -> psycopg2.pool.ThreadedConnectionPool:
    """Create the bounded pool shared by the repository and the event store."""

    if min_connections < 0 or max_connections < max(min_connections, 1):
        raise ValueError("DB pool bounds must satisfy 0 <= min <= max and max >= 1")
    pool = psycopg2.pool.ThreadedConnectionPool(min_connections, max_connections, **db_config)
    logger.info(
        "Database connection pool established host=%s database=%s size=%s..%s",
        db_config.get("host"),
        db_config.get("dbname"),
        min_connections,
        max_connections,
    )
    return pool


@contextmanager
def transaction(pool: ConnectionPool) -> Iterator[PgConnection]:
    """Borrow one pooled connection for a single all-or-nothing transaction.

    The connection is handed back to the pool before the context exits, so
    nothing that runs after the ``with`` block holds a database connection.
    """

    connection = pool.getconn()
    try:
        yield connection
        connection.commit()
    except psycopg2.Error as exc:
        connection.rollback()
        raise RepositoryError(f"Database transaction failed: {exc}") from exc
    except Exception:
        connection.rollback()
        raise
    finally:
        pool.putconn(connection)


@contextmanager
def dict_cursor(pool: ConnectionPool) -> Iterator[PgCursor]:
    with transaction(pool) as connection:
        cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        try:
            yield cursor
        finally:
            cursor.close()


def apply_schema(pool: ConnectionPool, *, path: Path = SCHEMA_PATH) -> None:
    """Execute the bundled DDL; every statement is idempotent."""

    ddl = path.read_text(encoding="utf-8")
    with dict_cursor(pool) as cursor:
        cursor.execute(ddl)
    logger.info("Applied billing schema from %s", path.name)


__all__ = ["ConnectionPool", "SCHEMA_PATH", "apply_schema", "create_connection_pool", "dict_cursor", "transaction"]
