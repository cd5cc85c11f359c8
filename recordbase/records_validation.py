"""Collection naming, record field checks and the read allow-list."""

from __future__ import annotations

import math
import re
from pathlib import Path
from typing import Any, Union

from recordbase.dialect import IDENTITY_COLUMN, MAX_IDENTIFIER_LEN
from recordbase.errors import InvalidFieldValueError, InvalidIdentifierError, ReservedCollectionError

Scalar = Union[str, int, float, None]

USERS_TABLE = "users"
CREATED_AT_FIELD = "created_at"
ATTACHMENT_FIELD = "image_url"
MARKER_SUFFIX = ".schema.json"

_UNSAFE_CHARS_RE = re.compile(r"[^a-z0-9_]")
_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
_RESERVED_PREFIXES = ("sqlite_", "pg_")


def normalize_collection_name(raw: str) -> str:
    name = _UNSAFE_CHARS_RE.sub("_", str(raw or "").strip("/").strip().lower())
    if not name or len(name) > MAX_IDENTIFIER_LEN:
        raise InvalidIdentifierError(raw, kind="collection name")
    return name


def is_reserved_collection(name: str) -> bool:
    return name == USERS_TABLE or name.startswith(_RESERVED_PREFIXES)


def require_public_collection(raw: str) -> str:
    name = normalize_collection_name(raw)
    if is_reserved_collection(name):
        raise ReservedCollectionError(name)
    return name


def check_field_name(name: Any) -> str:
    if not isinstance(name, str) or len(name) > MAX_IDENTIFIER_LEN or not _FIELD_RE.match(name):
        raise InvalidIdentifierError(name, kind="field name")
    return name


def coerce_scalar(field: str, value: Any) -> Scalar:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        # bool is an int subclass and is stored as 0/1
        if INT64_MIN <= value <= INT64_MAX:
            return value
    elif isinstance(value, float):
        if math.isfinite(value):
            return value
    raise InvalidFieldValueError(field, value)


def record_fields(body: dict) -> dict[str, Scalar]:
    """Every non-identity field of a submitted body, validated, in body order."""
    fields: dict[str, Scalar] = {}
    folded: set[str] = set()
    for key, value in body.items():
        if isinstance(key, str) and key.lower() == IDENTITY_COLUMN:
            continue
        name = check_field_name(key)
        if name.lower() in folded:
            raise InvalidIdentifierError(name, kind="duplicate field name")
        folded.add(name.lower())
        fields[name] = coerce_scalar(name, value)
    return fields


class SchemaMarkers:
    """Per-collection ``<name>.schema.json`` files that gate the read path."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, collection: str) -> Path:
        return self.root / f"{collection}{MARKER_SUFFIX}"

    def exists(self, collection: str) -> bool:
        return self.path_for(collection).is_file()

    def declared(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name[: -len(MARKER_SUFFIX)] for p in self.root.glob(f"*{MARKER_SUFFIX}"))
