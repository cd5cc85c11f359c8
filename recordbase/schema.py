"""Schema-on-write: column reconciliation and table provisioning.

The reconciler compares the fields of an incoming record against the columns
the storage engine reports *right now*; there is no schema cache. The
provisioner turns that diff into DDL. Table creation and column addition are
both idempotent, so two writers racing to introduce the same field both
succeed without a cross-request lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from recordbase.db import Database
from recordbase.dialect import IDENTITY_COLUMN
from recordbase.errors import SchemaExtensionFailure, SchemaIntrospectionFailure

logger = logging.getLogger("recordbase.schema")

DYNAMIC_COLUMN_TYPE = "TEXT"


@dataclass(frozen=True)
class SchemaSnapshot:
    collection: str
    columns: tuple[str, ...]
    fold: Callable[[str], str] = field(default=str, compare=False, repr=False)

    @property
    def exists(self) -> bool:
        return bool(self.columns)

    @property
    def version(self) -> int:
        # Columns are only ever added, so the count orders snapshots.
        return len(self.columns)

    def has(self, column: str) -> bool:
        key = self.fold(column)
        return any(self.fold(c) == key for c in self.columns)


@dataclass(frozen=True)
class Reconciliation:
    collection: str
    missing: tuple[str, ...]
    collection_absent: bool
    snapshot: SchemaSnapshot

    @property
    def up_to_date(self) -> bool:
        return not self.collection_absent and not self.missing


@dataclass
class ProvisionResult:
    collection: str
    created: bool = False
    added: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.created or bool(self.added)


class ColumnReconciler:
    def __init__(self, db: Database) -> None:
        self._db = db

    def snapshot(self, collection: str) -> SchemaSnapshot:
        sql, params = self._db.dialect.columns_query(collection)
        try:
            with self._db.connection() as conn:
                rows = self._db.fetch_all(conn, sql, params, query_name="schema.columns")
        except self._db.errors as exc:
            logger.error("schema_introspection_failed collection=%s error=%s", collection, exc)
            raise SchemaIntrospectionFailure(collection) from exc
        return SchemaSnapshot(
            collection=collection,
            columns=tuple(str(r["name"]) for r in rows),
            fold=self._db.dialect.fold_identifier,
        )

    def reconcile(self, collection: str, desired_fields: Iterable[str]) -> Reconciliation:
        fold = self._db.dialect.fold_identifier
        desired: list[str] = []
        seen: set[str] = {fold(IDENTITY_COLUMN)}
        for name in desired_fields:
            if fold(name) not in seen:
                seen.add(fold(name))
                desired.append(name)
        snapshot = self.snapshot(collection)
        if not snapshot.exists:
            return Reconciliation(collection, tuple(desired), True, snapshot)
        missing = tuple(name for name in desired if not snapshot.has(name))
        return Reconciliation(collection, missing, False, snapshot)


class SchemaProvisioner:
    def __init__(self, db: Database, reconciler: ColumnReconciler) -> None:
        self._db = db
        self._reconciler = reconciler

    def apply(self, plan: Reconciliation) -> ProvisionResult:
        return self.ensure_schema(plan.collection, plan.missing, plan.collection_absent)

    def ensure_schema(self, collection: str, missing_columns: Sequence[str], collection_absent: bool) -> ProvisionResult:
        result = ProvisionResult(collection=collection)
        pending = [c for c in missing_columns if c != IDENTITY_COLUMN]
        if collection_absent:
            result.created = self._create_table(collection, pending)
            # A concurrent creator may have won with a narrower column set.
            snapshot = self._reconciler.snapshot(collection)
            pending = [c for c in pending if not snapshot.has(c)]
        for column in pending:
            if self._add_column(collection, column):
                result.added.append(column)
            else:
                result.skipped.append(column)
        if result.changed:
            logger.info(
                "schema_provisioned collection=%s created=%s added=%s skipped=%s",
                collection,
                result.created,
                result.added,
                result.skipped,
            )
        return result

    def _create_table(self, collection: str, columns: Sequence[str]) -> bool:
        dialect = self._db.dialect
        sql = dialect.create_table_sql(collection, [(c, DYNAMIC_COLUMN_TYPE) for c in columns])
        try:
            with self._db.connection() as conn:
                self._db.execute(conn, sql, query_name="schema.create_table")
        except self._db.errors as exc:
            if dialect.is_duplicate_table(exc):
                logger.info("schema_create_raced collection=%s", collection)
                return False
            logger.error("schema_create_failed collection=%s error=%s", collection, exc)
            raise SchemaExtensionFailure(collection, IDENTITY_COLUMN) from exc
        return True

    def _add_column(self, collection: str, column: str) -> bool:
        dialect = self._db.dialect
        sql = dialect.add_column_sql(collection, column)
        try:
            with self._db.connection() as conn:
                self._db.execute(conn, sql, query_name="schema.add_column")
        except self._db.errors as exc:
            if dialect.is_duplicate_column(exc):
                logger.info("schema_add_column_raced collection=%s column=%s", collection, column)
                return False
            logger.error("schema_add_column_failed collection=%s column=%s error=%s", collection, column, exc)
            raise SchemaExtensionFailure(collection, column) from exc
        return True
