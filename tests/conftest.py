"""Pytest configuration and fixtures."""

import pytest

from quarry import Session, connect


def run_sql(connection, sql, params=None):
    """Execute raw SQL against a quarry connection."""
    return connection.execute(connection.prepare(sql), params or [])


@pytest.fixture
def connection():
    """Create an in-memory SQLite connection."""
    conn = connect("sqlite::memory:")
    yield conn
    conn.close()


@pytest.fixture
def users_table(connection):
    """A users(id, name) table with no rows."""
    run_sql(connection, """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL
        )
    """)
    return connection


@pytest.fixture
def session(connection):
    """A session with default settings."""
    return Session(connection)


@pytest.fixture
def count_queries(connection):
    """Return a callable that reports statements executed since the last call."""
    seen = {"n": len(connection.statements)}

    def counter():
        executed = len(connection.statements) - seen["n"]
        seen["n"] = len(connection.statements)
        return executed

    return counter


@pytest.fixture
def execute(connection):
    """Run raw SQL on the test connection: ``execute(sql, params)``."""

    def run(sql, params=None):
        return run_sql(connection, sql, params)

    return run
