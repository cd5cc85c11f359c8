"""Error kinds raised by the resource engine."""

from __future__ import annotations


class RecordbaseError(Exception):
    pass


class InvalidIdentifierError(RecordbaseError, ValueError):
    def __init__(self, value: object, kind: str = "identifier") -> None:
        super().__init__(f"invalid {kind}: {value!r}")
        self.value = value
        self.kind = kind


class InvalidFieldValueError(RecordbaseError, ValueError):
    def __init__(self, field: str, value: object) -> None:
        super().__init__(f"field {field!r} must be a scalar, got {type(value).__name__}")
        self.field = field


class ReservedCollectionError(RecordbaseError):
    def __init__(self, collection: str) -> None:
        super().__init__(f"collection {collection!r} is reserved")
        self.collection = collection


class StorageError(RecordbaseError):
    """A storage driver error, wrapped with the collection it concerned."""

    def __init__(self, collection: str | None, message: str) -> None:
        super().__init__(message)
        self.collection = collection


class SchemaIntrospectionFailure(StorageError):
    def __init__(self, collection: str) -> None:
        super().__init__(collection, f"cannot read columns of {collection!r}")


class SchemaExtensionFailure(StorageError):
    def __init__(self, collection: str, column: str) -> None:
        super().__init__(collection, f"cannot add column {column!r} to {collection!r}")
        self.column = column


class InsertFailure(StorageError):
    def __init__(self, collection: str) -> None:
        super().__init__(collection, f"insert into {collection!r} failed")


class ReadFailure(StorageError):
    def __init__(self, collection: str) -> None:
        super().__init__(collection, f"read from {collection!r} failed")


class UsernameTakenError(RecordbaseError):
    pass
