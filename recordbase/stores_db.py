"""Database-backed stores: generic collections and the users table."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from recordbase.db import Database
from recordbase.dialect import IDENTITY_COLUMN, quote_identifier
from recordbase.errors import InsertFailure, ReadFailure, StorageError, UsernameTakenError
from recordbase.records_validation import USERS_TABLE, Scalar

logger = logging.getLogger("recordbase.records")


class DbGenericRecordStore:
    """Create/read/update/delete against any collection, named per call.

    Queries are built from the caller's collection and column names, which are
    quoted after validation; values are always bound parameters.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def bind(self, collection: str | None) -> "BoundRecordStore":
        return BoundRecordStore(self, collection)

    def insert(self, collection: str, fields: Mapping[str, Scalar]) -> dict:
        columns = [c for c in fields if c != IDENTITY_COLUMN]
        sql = self._db.dialect.insert_sql(collection, columns)
        try:
            with self._db.connection() as conn:
                record_id = self._db.insert(conn, sql, [fields[c] for c in columns], query_name="records.insert")
        except self._db.errors as exc:
            logger.error("records_insert_failed collection=%s columns=%s error=%s", collection, columns, exc)
            raise InsertFailure(collection) from exc
        record = {IDENTITY_COLUMN: record_id}
        record.update({c: fields[c] for c in columns})
        return record

    def get(self, collection: str, record_id: int) -> dict | None:
        ph = self._db.dialect.placeholder
        sql = f"SELECT * FROM {quote_identifier(collection)} WHERE {quote_identifier(IDENTITY_COLUMN)} = {ph}"
        try:
            with self._db.connection() as conn:
                return self._db.fetch_one(conn, sql, [record_id], query_name="records.get")
        except self._db.errors as exc:
            raise ReadFailure(collection) from exc

    def list(self, collection: str) -> list[dict]:
        sql = f"SELECT * FROM {quote_identifier(collection)} ORDER BY {quote_identifier(IDENTITY_COLUMN)} DESC"
        try:
            with self._db.connection() as conn:
                return self._db.fetch_all(conn, sql, query_name="records.list")
        except self._db.errors as exc:
            raise ReadFailure(collection) from exc

    def find(self, collection: str, criteria: Mapping[str, Any] | None = None) -> list[dict]:
        criteria = dict(criteria or {})
        ph = self._db.dialect.placeholder
        where = ""
        if criteria:
            where = " WHERE " + " AND ".join(f"{quote_identifier(k)} = {ph}" for k in criteria)
        sql = f"SELECT * FROM {quote_identifier(collection)}{where} ORDER BY {quote_identifier(IDENTITY_COLUMN)} DESC"
        try:
            with self._db.connection() as conn:
                return self._db.fetch_all(conn, sql, list(criteria.values()), query_name="records.find")
        except self._db.errors as exc:
            raise ReadFailure(collection) from exc

    def update(self, collection: str, record_id: int, fields: Mapping[str, Scalar]) -> dict | None:
        columns = [c for c in fields if c != IDENTITY_COLUMN]
        if not columns:
            return self.get(collection, record_id)
        ph = self._db.dialect.placeholder
        table = quote_identifier(collection)
        assignments = ", ".join(f"{quote_identifier(c)} = {ph}" for c in columns)
        params = [fields[c] for c in columns] + [record_id]
        try:
            with self._db.connection() as conn:
                rowcount = self._db.execute(
                    conn,
                    f"UPDATE {table} SET {assignments} WHERE {quote_identifier(IDENTITY_COLUMN)} = {ph}",
                    params,
                    query_name="records.update",
                )
                if not rowcount:
                    return None
                return self._db.fetch_one(
                    conn,
                    f"SELECT * FROM {table} WHERE {quote_identifier(IDENTITY_COLUMN)} = {ph}",
                    [record_id],
                    query_name="records.get",
                )
        except self._db.errors as exc:
            raise StorageError(collection, f"update of {collection!r} failed") from exc

    def delete(self, collection: str, record_id: int) -> dict:
        ph = self._db.dialect.placeholder
        sql = f"DELETE FROM {quote_identifier(collection)} WHERE {quote_identifier(IDENTITY_COLUMN)} = {ph}"
        try:
            with self._db.connection() as conn:
                rowcount = self._db.execute(conn, sql, [record_id], query_name="records.delete")
        except self._db.errors as exc:
            raise StorageError(collection, f"delete from {collection!r} failed") from exc
        return {IDENTITY_COLUMN: record_id, "deleted": bool(rowcount)}

    def create_table(self, collection: str, columns: Mapping[str, str]) -> None:
        sql = self._db.dialect.create_table_sql(
            collection, [(name, kind) for name, kind in columns.items() if name != IDENTITY_COLUMN]
        )
        try:
            with self._db.connection() as conn:
                self._db.execute(conn, sql, query_name="records.create_table")
        except self._db.errors as exc:
            raise StorageError(collection, f"create of {collection!r} failed") from exc

    def list_tables(self) -> list[str]:
        try:
            with self._db.connection() as conn:
                rows = self._db.fetch_all(conn, self._db.dialect.list_tables_query(), query_name="records.list_tables")
        except self._db.errors as exc:
            raise ReadFailure("*") from exc
        return [str(r["name"]) for r in rows]


class BoundRecordStore:
    """A record store handle fixed to one collection, handed to extensions."""

    def __init__(self, store: DbGenericRecordStore, collection: str | None) -> None:
        self._store = store
        self.collection = collection

    def _name(self) -> str:
        if not self.collection:
            raise ValueError("this handle is not bound to a collection")
        return self.collection

    def insert(self, fields: Mapping[str, Scalar]) -> dict:
        return self._store.insert(self._name(), fields)

    def get(self, record_id: int) -> dict | None:
        return self._store.get(self._name(), record_id)

    def list(self) -> list[dict]:
        return self._store.list(self._name())

    def find(self, criteria: Mapping[str, Any] | None = None) -> list[dict]:
        return self._store.find(self._name(), criteria)

    def update(self, record_id: int, fields: Mapping[str, Scalar]) -> dict | None:
        return self._store.update(self._name(), record_id, fields)

    def delete(self, record_id: int) -> dict:
        return self._store.delete(self._name(), record_id)

    def create_table(self, columns: Mapping[str, str]) -> None:
        self._store.create_table(self._name(), columns)

    def list_tables(self) -> list[str]:
        return self._store.list_tables()


class DbUserStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    def ensure_table(self) -> None:
        dialect = self._db.dialect
        sql = dialect.create_table_sql(USERS_TABLE, [("username", "TEXT UNIQUE"), ("password", "TEXT")])
        with self._db.connection() as conn:
            self._db.execute(conn, sql, query_name="users.ensure_table")

    def create(self, username: str, password_hash: str) -> int:
        sql = self._db.dialect.insert_sql(USERS_TABLE, ["username", "password"])
        try:
            with self._db.connection() as conn:
                return self._db.insert(conn, sql, [username, password_hash], query_name="users.create")
        except self._db.errors as exc:
            if self._db.dialect.is_unique_violation(exc):
                raise UsernameTakenError(username) from exc
            raise StorageError(USERS_TABLE, "user insert failed") from exc

    def get_by_username(self, username: str) -> dict | None:
        ph = self._db.dialect.placeholder
        sql = f"SELECT * FROM {quote_identifier(USERS_TABLE)} WHERE {quote_identifier('username')} = {ph}"
        try:
            with self._db.connection() as conn:
                return self._db.fetch_one(conn, sql, [username], query_name="users.get_by_username")
        except self._db.errors as exc:
            raise ReadFailure(USERS_TABLE) from exc
