"""Error taxonomy for sqla_relations.

Every error carries an :class:`ErrorKind` and, where known, the record type
it was raised for.  There is exactly one class per kind; record types never
get their own error subclasses.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    UNKNOWN_RELATION = "unknown_relation"
    NOT_FOUND = "not_found"
    EMPTY_RESULT = "empty_result"
    NO_ROWS_UPDATED = "no_rows_updated"
    NO_ROWS_DELETED = "no_rows_deleted"
    STORE = "store"


class RelationsError(Exception):
    """Base exception for all sqla_relations errors."""

    kind: ErrorKind

    def __init__(self, message: str, *, record_type: type[Any] | None = None) -> None:
        self.record_type = record_type
        super().__init__(message)

    @property
    def record_type_name(self) -> str | None:
        return self.record_type.__name__ if self.record_type is not None else None


# --- Raised before any I/O ---


class ConfigurationError(RelationsError):
    """Malformed or contradictory relation description or call."""

    kind = ErrorKind.CONFIGURATION


class UnknownRelationError(RelationsError):
    """Raised when a relation name is not declared on a record type."""

    kind = ErrorKind.UNKNOWN_RELATION

    def __init__(self, relation_name: str, *, record_type: type[Any] | None = None) -> None:
        self.relation_name = relation_name
        owner = record_type.__name__ if record_type is not None else "record type"
        super().__init__(
            f"Relation '{relation_name}' is not defined on {owner}", record_type=record_type
        )


# --- Raised after a query, downgradable with ``require=False`` ---


class NotFoundError(RelationsError):
    """A ``require=True`` single-record fetch returned no rows."""

    kind = ErrorKind.NOT_FOUND


class EmptyResultError(RelationsError):
    """A ``require=True`` record-set fetch returned no rows."""

    kind = ErrorKind.EMPTY_RESULT


class NoRowsUpdatedError(RelationsError):
    """An update with ``require=True`` affected no rows."""

    kind = ErrorKind.NO_ROWS_UPDATED


class NoRowsDeletedError(RelationsError):
    """A delete with ``require=True`` affected no rows."""

    kind = ErrorKind.NO_ROWS_DELETED


# --- Store ---


class StoreError(RelationsError):
    """Opaque failure from the underlying store.

    The original driver/SQLAlchemy exception is kept as ``__cause__`` and as
    :attr:`original`.
    """

    kind = ErrorKind.STORE

    def __init__(
        self,
        message: str,
        *,
        original: BaseException | None = None,
        record_type: type[Any] | None = None,
    ) -> None:
        self.original = original
        super().__init__(message, record_type=record_type)
