"""Dynamic resource write and read paths.

Write: Parse -> Reconcile -> Provision -> Insert -> Respond.
Read: allow-list marker -> select, with storage errors softened to an empty
result by :func:`soft_fail_read`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, TypeVar

from recordbase.errors import ReadFailure
from recordbase.records_validation import (
    ATTACHMENT_FIELD,
    CREATED_AT_FIELD,
    SchemaMarkers,
    record_fields,
    require_public_collection,
)
from recordbase.schema import ColumnReconciler, ProvisionResult, SchemaProvisioner
from recordbase.stores_db import DbGenericRecordStore

logger = logging.getLogger("recordbase.resources")

T = TypeVar("T")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class WriteResult:
    collection: str
    record: dict
    provision: ProvisionResult


@dataclass(frozen=True)
class ReadOutcome:
    status_code: int
    body: Any
    soft_failed: bool = False


class ResourceWriter:
    def __init__(
        self,
        store: DbGenericRecordStore,
        reconciler: ColumnReconciler,
        provisioner: SchemaProvisioner,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._provisioner = provisioner
        self._clock = clock

    def write(self, collection: str, body: Mapping[str, Any], attachment_url: str | None = None) -> WriteResult:
        name = require_public_collection(collection)
        submitted = record_fields(dict(body))
        derived = {CREATED_AT_FIELD: self._clock()}
        if attachment_url is not None:
            derived[ATTACHMENT_FIELD] = attachment_url
        # Derived values replace submitted ones under any spelling.
        fields = {k: v for k, v in submitted.items() if k.lower() not in derived}
        fields.update(derived)

        plan = self._reconciler.reconcile(name, fields.keys())
        provision = self._provisioner.apply(plan)
        stored = self._store.insert(name, fields)

        response = {"id": stored["id"], **submitted}
        if attachment_url is not None:
            response[ATTACHMENT_FIELD] = attachment_url
        logger.info(
            "resource_created collection=%s id=%s fields=%s schema_version=%s schema_changed=%s",
            name,
            stored["id"],
            len(fields),
            plan.snapshot.version,
            provision.changed,
        )
        return WriteResult(collection=name, record=response, provision=provision)


def soft_fail_read(collection: str, read: Callable[[], T], fallback: Any) -> tuple[T | Any, bool]:
    """Run a read; a storage failure yields ``fallback`` instead of an error.

    Returns ``(value, soft_failed)`` so callers and logs can tell a downgraded
    failure apart from a collection that is really empty.
    """
    try:
        return read(), False
    except ReadFailure as exc:
        logger.warning("read_soft_fail collection=%s error=%s", collection, exc.__cause__ or exc)
        return fallback, True


class ResourceReader:
    def __init__(self, store: DbGenericRecordStore, markers: SchemaMarkers) -> None:
        self._store = store
        self._markers = markers

    def read(self, collection: str, record_id: str | None = None) -> ReadOutcome:
        name = require_public_collection(collection)
        if not self._markers.exists(name):
            logger.info("read_not_declared collection=%s", name)
            return ReadOutcome(200, [])

        if record_id is None:
            rows, failed = soft_fail_read(name, lambda: self._store.list(name), [])
            return ReadOutcome(200, rows, soft_failed=failed)

        try:
            ident = int(record_id)
        except (TypeError, ValueError):
            return ReadOutcome(404, {"message": "Resource not found"})
        row, failed = soft_fail_read(name, lambda: self._store.get(name, ident), None)
        if failed:
            return ReadOutcome(200, [], soft_failed=True)
        if row is None:
            return ReadOutcome(404, {"message": "Resource not found"})
        return ReadOutcome(200, row)
