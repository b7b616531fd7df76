"""Database connection adapter and SQL dialects.

The query builder talks to exactly one :class:`Connection`. The connection
wraps a DB-API 2 driver connection using the ``qmark`` parameter style,
keeps an ordered history of executed statements, and turns driver failures
into :class:`~quarry.exceptions.ExecutionError`.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from quarry.exceptions import DatabaseConnectionError, ExecutionError, TransactionError
from quarry.raw import Raw

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Dialect:
    """The per-database part of SQL generation.

    Engines differ in the LIMIT/OFFSET clause and in the type names used by
    CAST.

    Example:
        >>> session.table("prices").select(MYSQL.as_integer("amount")).to_sql()
        ('SELECT CAST(amount AS SIGNED INTEGER) FROM prices', [])
    """

    name: str
    integer_type: str = "INTEGER"
    string_type: str = "TEXT"

    def limit_clause(self, count: int, offset: int = 0) -> str:
        """Render the row-limiting suffix of a SELECT.

        A zero count means "no limit"; the offset is only emitted together
        with a positive count.
        """
        if count <= 0:
            return ""
        clause = f" LIMIT {int(count)}"
        if offset > 0:
            clause += f" OFFSET {int(offset)}"
        return clause

    def as_integer(self, expression: str) -> Raw:
        return Raw(f"CAST({expression} AS {self.integer_type})")

    def as_decimal(self, expression: str, precision: int = 10, scale: int = 2) -> Raw:
        return Raw(f"CAST({expression} AS DECIMAL({int(precision)},{int(scale)}))")

    def as_string(self, expression: str) -> Raw:
        return Raw(f"CAST({expression} AS {self.string_type})")


SQLITE = Dialect("sqlite")
MYSQL = Dialect("mysql", integer_type="SIGNED INTEGER", string_type="CHAR")

DIALECTS: dict[str, Dialect] = {d.name: d for d in (SQLITE, MYSQL)}


@dataclass(frozen=True)
class Statement:
    """A prepared statement handle."""

    sql: str


@dataclass
class Result:
    """Rows and counters produced by one statement."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    rowcount: int = -1
    lastrowid: Any = None

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def all(self) -> list[dict[str, Any]]:
        """Get all rows as dictionaries."""
        return list(self.rows)

    def first(self) -> dict[str, Any] | None:
        """Get the first row, or None."""
        return self.rows[0] if self.rows else None


class Connection:
    """Single shared connection handle used by builders.

    Example:
        >>> conn = Connection(sqlite3.connect(":memory:", isolation_level=None))
        >>> stmt = conn.prepare("SELECT 1 AS one")
        >>> conn.execute(stmt, []).first()
        {'one': 1}
    """

    def __init__(self, raw: Any, dialect: Dialect = SQLITE) -> None:
        self._raw = raw
        self._dialect = dialect
        # DB-API 2 exposes the driver's exception root on the connection.
        self.Error: type[Exception] = getattr(raw, "Error", Exception)
        self._in_transaction = False
        self._last_insert_id: Any = None
        self.statements: list[tuple[str, list[Any]]] = []

    def __enter__(self) -> Connection:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        self.close()

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    def prepare(self, sql: str) -> Statement:
        """Prepare a statement for execution."""
        return Statement(sql)

    def execute(self, statement: Statement, params: list[Any] | None = None) -> Result:
        """Execute a prepared statement with positional bind values."""
        params = list(params or [])
        self.statements.append((statement.sql, params))
        logger.debug("%s %r", statement.sql, params)

        cursor = self._raw.cursor()
        try:
            cursor.execute(statement.sql, params)
            rows: list[dict[str, Any]] = []
            if cursor.description:
                names = [col[0] for col in cursor.description]
                rows = [dict(zip(names, row, strict=True)) for row in cursor.fetchall()]
            result = Result(rows=rows, rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)
            if not self._in_transaction:
                self._raw.commit()
        except self.Error as exc:
            raise ExecutionError(str(exc), sql=statement.sql, params=params) from exc
        finally:
            cursor.close()

        if result.lastrowid:
            self._last_insert_id = result.lastrowid
        return result

    def last_insert_id(self) -> Any:
        """Return the id generated by the most recent INSERT."""
        return self._last_insert_id

    def limit_clause(self, count: int, offset: int = 0) -> str:
        return self._dialect.limit_clause(count, offset)

    # ========== Transactions ==========

    def begin_transaction(self) -> None:
        if self._in_transaction:
            raise TransactionError("A transaction is already in progress")
        # Flag first so execute() does not commit the BEGIN itself.
        self._in_transaction = True
        try:
            self.execute(self.prepare("BEGIN"))
        except ExecutionError:
            self._in_transaction = False
            raise

    def commit(self) -> None:
        if not self._in_transaction:
            raise TransactionError("Cannot commit: no active transaction", context={"operation": "commit"})
        try:
            self._raw.commit()
        except self.Error as exc:
            # The transaction stays open; the caller is expected to roll back
            raise TransactionError(f"Commit failed: {exc}", context={"operation": "commit"}) from exc
        self._in_transaction = False

    def rollback(self) -> None:
        if not self._in_transaction:
            raise TransactionError("Cannot roll back: no active transaction", context={"operation": "rollback"})
        try:
            self._raw.rollback()
        except self.Error as exc:
            raise TransactionError(f"Rollback failed: {exc}") from exc
        finally:
            self._in_transaction = False

    def close(self) -> None:
        self._raw.close()


def connect(url: str, *, dialect: Dialect | None = None) -> Connection:
    """Open a connection from a database URL.

    Args:
        url: Database URL.
            - SQLite in memory: ``sqlite::memory:`` or ``sqlite://``
            - SQLite file: ``sqlite:///path/to/db.sqlite`` or a bare path

    Returns:
        A Connection in autocommit mode outside explicit transactions.

    Example:
        >>> conn = connect("sqlite::memory:")
        >>> conn = connect("sqlite:///app.db")
    """
    if url in ("sqlite::memory:", "sqlite://", ":memory:"):
        path = ":memory:"
    elif url.startswith("sqlite:///"):
        path = url[len("sqlite:///"):]
    elif "://" not in url and not url.startswith("sqlite:"):
        path = url
    else:
        raise DatabaseConnectionError(f"Unsupported database URL: {url}", context={"url": url})

    try:
        raw = sqlite3.connect(path, isolation_level=None)
    except sqlite3.Error as exc:
        raise DatabaseConnectionError(f"Cannot open SQLite database: {exc}", context={"url": url}) from exc
    return Connection(raw, dialect or SQLITE)
