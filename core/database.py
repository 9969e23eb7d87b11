"""
Database handle: one SQLAlchemy engine per process.
Created at startup, validated once with authenticate(), disposed at shutdown.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError


class DatabaseUnavailableError(RuntimeError):
    """Raised when the database cannot be reached."""


def normalize_database_url(url: str) -> str:
    """Accept Heroku-style postgres:// URLs, which SQLAlchemy no longer does."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


class Database:
    """
    Wraps the engine and its pool. Pool concurrency is owned by SQLAlchemy;
    this class only adds lifecycle and logging.
    """

    def __init__(self, url: str, logger: logging.Logger, **engine_kwargs):
        self.url = normalize_database_url(url)
        self.logger = logger
        engine_kwargs.setdefault("pool_pre_ping", True)
        self.engine: Engine = create_engine(self.url, **engine_kwargs)
        event.listen(self.engine, "before_cursor_execute", self._log_statement)

    @property
    def safe_url(self) -> str:
        """URL with the password masked, for logs."""
        return make_url(self.url).render_as_string(hide_password=True)

    def authenticate(self) -> None:
        """Open a connection and run a trivial query. Raises DatabaseUnavailableError."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise DatabaseUnavailableError(
                f"Unable to connect to the database at {self.safe_url}: {exc}"
            ) from exc
        self.logger.info("database_connected", extra={"database": self.safe_url})

    def ping(self) -> bool:
        """Readiness check; never raises."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            self.logger.warning("database_ping_failed", extra={"database": self.safe_url})
            return False

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        with self.engine.connect() as conn:
            yield conn

    def dispose(self) -> None:
        self.engine.dispose()

    def _log_statement(self, conn, cursor, statement, parameters, context, executemany) -> None:
        self.logger.debug("sql", extra={"statement": statement})
