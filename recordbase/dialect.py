"""SQL dialects for the supported storage engines.

Each dialect owns how a connection is opened, how identifiers are quoted and
which statements introspect and extend a table. Everything above this module
works with plain column names and bound parameters.
"""

from __future__ import annotations

import re
import sqlite3
import threading
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool

from recordbase.errors import InvalidIdentifierError

IDENTITY_COLUMN = "id"
MAX_IDENTIFIER_LEN = 63
_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")
_COLUMN_TYPE_RE = re.compile(r"^[A-Za-z][A-Za-z ]*(\(\d+(,\s*\d+)?\))?$")


def quote_identifier(name: str) -> str:
    if not isinstance(name, str) or len(name) > MAX_IDENTIFIER_LEN or not _IDENTIFIER_RE.match(name):
        raise InvalidIdentifierError(name)
    return f'"{name}"'


def check_column_type(type_name: str) -> str:
    if not isinstance(type_name, str) or not _COLUMN_TYPE_RE.match(type_name.strip()):
        raise InvalidIdentifierError(type_name, kind="column type")
    return type_name.strip()


class SqliteDialect:
    name = "sqlite"
    placeholder = "?"
    errors: tuple[type[BaseException], ...] = (sqlite3.Error,)

    # Column names compare case-insensitively, quoted or not.
    fold_identifier = staticmethod(str.lower)

    def __init__(self, url: str, timeout: float = 5.0) -> None:
        path = url[len("sqlite:///") :] if url.startswith("sqlite:///") else url[len("sqlite://") :]
        if not path or path == ":memory:":
            raise ValueError("sqlite database must be a file path")
        self.path = path
        self.timeout = timeout

    def connect(self):
        parent = Path(self.path).parent
        if str(parent) not in ("", "."):
            parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def release(self, conn) -> None:
        conn.close()

    def close(self) -> None:
        return None

    @contextmanager
    def cursor(self, conn) -> Iterator[Any]:
        with closing(conn.cursor()) as cur:
            yield cur

    def columns_query(self, table: str) -> tuple[str, list]:
        return f"PRAGMA table_info({quote_identifier(table)})", []

    def list_tables_query(self) -> str:
        return "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"

    def create_table_sql(self, table: str, columns: Sequence[tuple[str, str]]) -> str:
        parts = [f"{quote_identifier(IDENTITY_COLUMN)} INTEGER PRIMARY KEY AUTOINCREMENT"]
        parts.extend(f"{quote_identifier(col)} {check_column_type(kind)}" for col, kind in columns)
        return f"CREATE TABLE IF NOT EXISTS {quote_identifier(table)} ({', '.join(parts)})"

    def add_column_sql(self, table: str, column: str) -> str:
        return f"ALTER TABLE {quote_identifier(table)} ADD COLUMN {quote_identifier(column)} TEXT"

    def insert_sql(self, table: str, columns: Sequence[str]) -> str:
        if not columns:
            return f"INSERT INTO {quote_identifier(table)} DEFAULT VALUES"
        cols = ", ".join(quote_identifier(c) for c in columns)
        marks = ", ".join(self.placeholder for _ in columns)
        return f"INSERT INTO {quote_identifier(table)} ({cols}) VALUES ({marks})"

    def inserted_id(self, cur) -> int:
        return int(cur.lastrowid)

    def is_duplicate_column(self, exc: BaseException) -> bool:
        return isinstance(exc, sqlite3.OperationalError) and "duplicate column" in str(exc).lower()

    def is_duplicate_table(self, exc: BaseException) -> bool:
        return isinstance(exc, sqlite3.OperationalError) and "already exists" in str(exc).lower()

    def is_unique_violation(self, exc: BaseException) -> bool:
        return isinstance(exc, sqlite3.IntegrityError) and "unique" in str(exc).lower()


class PostgresDialect:
    name = "postgresql"
    placeholder = "%s"
    errors: tuple[type[BaseException], ...] = (psycopg2.Error,)

    # Quoted identifiers keep their case.
    fold_identifier = staticmethod(str)

    def __init__(self, url: str, minconn: int = 1, maxconn: int = 10) -> None:
        self.url = url
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool: ThreadedConnectionPool | None = None
        self._lock = threading.Lock()

    def _get_pool(self) -> ThreadedConnectionPool:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadedConnectionPool(self.minconn, self.maxconn, dsn=self.url)
            return self._pool

    def connect(self):
        return self._get_pool().getconn()

    def release(self, conn) -> None:
        self._get_pool().putconn(conn)

    def close(self) -> None:
        with self._lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None

    @contextmanager
    def cursor(self, conn) -> Iterator[Any]:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            yield cur

    def columns_query(self, table: str) -> tuple[str, list]:
        quote_identifier(table)
        return (
            """
            select column_name as name
            from information_schema.columns
            where table_schema = current_schema() and table_name = %s
            order by ordinal_position
            """,
            [table],
        )

    def list_tables_query(self) -> str:
        return """
            select table_name as name
            from information_schema.tables
            where table_schema = current_schema() and table_type = 'BASE TABLE'
            order by table_name
        """

    def create_table_sql(self, table: str, columns: Sequence[tuple[str, str]]) -> str:
        parts = [f"{quote_identifier(IDENTITY_COLUMN)} bigserial primary key"]
        parts.extend(f"{quote_identifier(col)} {check_column_type(kind)}" for col, kind in columns)
        return f"create table if not exists {quote_identifier(table)} ({', '.join(parts)})"

    def add_column_sql(self, table: str, column: str) -> str:
        return f"alter table {quote_identifier(table)} add column if not exists {quote_identifier(column)} text"

    def insert_sql(self, table: str, columns: Sequence[str]) -> str:
        returning = f"returning {quote_identifier(IDENTITY_COLUMN)}"
        if not columns:
            return f"insert into {quote_identifier(table)} default values {returning}"
        cols = ", ".join(quote_identifier(c) for c in columns)
        marks = ", ".join(self.placeholder for _ in columns)
        return f"insert into {quote_identifier(table)} ({cols}) values ({marks}) {returning}"

    def inserted_id(self, cur) -> int:
        row = cur.fetchone()
        return int(row[IDENTITY_COLUMN])

    def is_duplicate_column(self, exc: BaseException) -> bool:
        return isinstance(exc, psycopg2.errors.DuplicateColumn)

    def is_duplicate_table(self, exc: BaseException) -> bool:
        # Concurrent "create table if not exists" can collide on the row type.
        return isinstance(exc, (psycopg2.errors.DuplicateTable, psycopg2.errors.UniqueViolation))

    def is_unique_violation(self, exc: BaseException) -> bool:
        return isinstance(exc, psycopg2.errors.UniqueViolation)


def dialect_for_url(url: str):
    if url.startswith("sqlite:"):
        return SqliteDialect(url)
    if url.startswith("postgres://") or url.startswith("postgresql://"):
        return PostgresDialect(url)
    raise ValueError(f"unsupported database url scheme: {url.split(':', 1)[0]}")
