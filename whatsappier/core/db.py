"""Database helpers for short-lived psycopg connections."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager

import psycopg

from .config import EngineSettings

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], psycopg.Connection]


def connection_factory(settings: EngineSettings) -> ConnectionFactory:
    """Return a callable opening connections with the configured timeouts.

    ``statement_timeout`` is applied through the libpq ``options`` parameter
    so every statement on the connection is bounded.
    """

    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not configured")
    dsn = settings.database_url
    connect_timeout = settings.db_connect_timeout_seconds
    options = f"-c statement_timeout={settings.db_statement_timeout_ms}"

    def _connect() -> psycopg.Connection:
        return psycopg.connect(dsn, connect_timeout=connect_timeout, options=options)

    return _connect


@contextmanager
def read_connection(factory: ConnectionFactory) -> Iterator[psycopg.Connection]:
    """Yield a connection and always close it, rolling back on errors."""

    conn = factory()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        logger.exception("Database operation failed")
        raise
    finally:
        conn.close()
