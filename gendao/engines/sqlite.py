"""
SQLite relational engine.

Owns connection handling for the relational backend: one short-lived
connection per standalone operation, or a long-lived connection held by a
native transaction. Blocking sqlite3 calls run in worker threads so the
event loop is never blocked.

Invariants:
    - Connections run in autocommit mode; transactions are explicit
      (BEGIN IMMEDIATE / COMMIT / ROLLBACK)
    - Only one call at a time is made on any connection
    - Table and column names are validated identifiers before they are
      interpolated into SQL

How to change safely:
    - The database must be a file path; ``:memory:`` gives every
      connection its own empty database
    - Schema changes to base columns affect every table and the mappers
"""

from __future__ import annotations

import asyncio
import re
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar
import logging

from .base import EngineConnectionError

if TYPE_CHECKING:
    from ..config import SqliteConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

BASE_COLUMNS: dict[str, str] = {
    "_id": "TEXT PRIMARY KEY",
    "version": "INTEGER NOT NULL",
    "appVersion": "TEXT",
    "createdDate": "TEXT NOT NULL",
    "updatedDate": "TEXT",
}

COUNTERS_TABLE = "counters"


@dataclass(frozen=True)
class RelationalTable:
    """A table holding one logical entity type.

    Attributes:
        name: Table name (also the entity type)
        columns: Domain column name to SQL column declaration,
            e.g. ``{"name": "TEXT NOT NULL", "quantity": "INTEGER"}``
    """
    name: str
    columns: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not _IDENTIFIER.match(self.name):
            raise ValueError(f"Invalid table name: {self.name!r}")
        if self.name == COUNTERS_TABLE:
            raise ValueError(f"Table name {COUNTERS_TABLE!r} is reserved")
        for column in self.columns:
            if not _IDENTIFIER.match(column):
                raise ValueError(f"Invalid column name: {column!r}")
            if column in BASE_COLUMNS:
                raise ValueError(f"Column {column!r} is managed automatically")

    @property
    def all_columns(self) -> list[str]:
        """Base columns followed by domain columns."""
        return [*BASE_COLUMNS, *self.columns]

    def create_sql(self) -> str:
        definitions = {**BASE_COLUMNS, **self.columns}
        body = ", ".join(f"{name} {decl}" for name, decl in definitions.items())
        return f"CREATE TABLE IF NOT EXISTS {self.name} ({body})"


class SqliteEngine:
    """Runs sqlite3 work off the event loop.

    Attributes:
        path: Database file path
        busy_timeout_ms: SQLite busy timeout
        wal_mode: Whether WAL journal mode is enabled

    Example:
        >>> engine = SqliteEngine("orders.db")
        >>> await engine.ensure_table(RelationalTable("orders", {"name": "TEXT"}))
        >>> rows = await engine.run(lambda conn: conn.execute("SELECT 1").fetchall())
    """

    def __init__(
        self,
        path: str,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        self.path = path
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode

    @classmethod
    def from_config(cls, config: "SqliteConfig") -> SqliteEngine:
        """Create an engine from configuration."""
        return cls(
            path=config.path,
            busy_timeout_ms=config.busy_timeout_ms,
            wal_mode=config.wal_mode,
        )

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.path,
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise EngineConnectionError(f"Could not open database {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a short-lived connection for one standalone operation."""
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    async def run(
        self,
        fn: Callable[[sqlite3.Connection], T],
        connection: sqlite3.Connection | None = None,
    ) -> T:
        """Run blocking database work in a worker thread.

        Args:
            fn: Callable receiving the connection to use
            connection: Connection of an open native transaction; when
                omitted a fresh autocommit connection is used

        Returns:
            Whatever ``fn`` returns
        """
        if connection is not None:
            return await asyncio.to_thread(fn, connection)

        def _call() -> T:
            with self._get_connection() as conn:
                return fn(conn)

        return await asyncio.to_thread(_call)

    async def open_transaction(self) -> sqlite3.Connection:
        """Open a connection with a write transaction already begun."""

        def _begin() -> sqlite3.Connection:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error:
                conn.close()
                raise
            return conn

        conn = await asyncio.to_thread(_begin)
        logger.debug("Native transaction begun", extra={"path": self.path})
        return conn

    async def close_connection(self, connection: sqlite3.Connection) -> None:
        """Close a connection previously returned by open_transaction."""
        await asyncio.to_thread(connection.close)

    async def ensure_table(self, table: RelationalTable) -> None:
        """Create the table for an entity type if it does not exist."""
        await self.run(lambda conn: conn.execute(table.create_sql()))
        logger.debug("Table ensured", extra={"table": table.name})

    async def ensure_counters_table(self) -> None:
        """Create the sequence counters table if it does not exist."""
        await self.run(
            lambda conn: conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {COUNTERS_TABLE} (
                    _id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    seq INTEGER NOT NULL,
                    version INTEGER NOT NULL
                )
                """
            )
        )
