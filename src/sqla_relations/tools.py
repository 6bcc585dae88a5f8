from __future__ import annotations

from collections.abc import Callable, Iterable
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Final, TypeVar

import inflection
import sqlalchemy as sa

from .errors import ConfigurationError


if TYPE_CHECKING:
    from .model import Model

M = TypeVar("M", bound="Model")

PIVOT_PREFIX: Final[str] = "_pivot_"
DEFAULT_ID_ATTRIBUTE: Final[str] = "id"


@lru_cache(maxsize=1024)
def singularize(name: str) -> str:
    """Return the singular form of a table name (``"people"`` -> ``"person"``)."""
    return inflection.singularize(name)


def default_key(table_name: str, id_attribute: str) -> str:
    """Conventional foreign key name: ``singularize(table) + "_" + id_attribute``."""
    return f"{singularize(table_name)}_{id_attribute}"


def default_join_table(*table_names: str) -> str:
    """Join table name for a many-to-many pair, independent of declaration order."""
    return "_".join(sorted(table_names))


@lru_cache
def _get_table(model: type[M]) -> sa.Table:
    table = getattr(model, "__table__", None)
    if not isinstance(table, sa.Table):
        raise ConfigurationError(f"{model.__name__} does not declare a __table__", record_type=model)

    return table


@lru_cache
def _get_table_name(model: type[M]) -> str:
    """Return the table name for *model*, preferring ``__tablename__`` (cached)."""
    result = getattr(model, "__tablename__", None) or _get_table(model).name
    if not result:
        raise ConfigurationError(f"Cannot determine tablename for {model}", record_type=model)

    return result


@lru_cache
def _get_id_attribute(model: type[M]) -> str:
    """Return the identity attribute: explicit ``__id_attribute__``, else first PK column."""
    explicit = getattr(model, "__id_attribute__", None)
    if explicit:
        return explicit

    pk = _get_table(model).primary_key
    return next((col.name for col in pk), DEFAULT_ID_ATTRIBUTE)


def get_table(model: type[M]) -> sa.Table:
    """Get the ``sa.Table`` backing a record type.

    Raises:
        ConfigurationError: If the type has no ``__table__``.
    """
    return _get_table(model)


def get_table_name(model: type[M]) -> str:
    """Get the table name for a record type."""
    return _get_table_name(model)


def get_id_attribute(model: type[M]) -> str:
    """Get the identity attribute name for a record type."""
    return _get_id_attribute(model)


def get_column(table: sa.TableClause, name: str) -> sa.ColumnClause[Any]:
    """Look up a column by name, raising :class:`ConfigurationError` when absent."""
    try:
        return table.c[name]
    except KeyError:
        raise ConfigurationError(
            f"Column {name!r} not found on table {table.name!r}. "
            f"Available: {[c.key for c in table.c]}"
        ) from None


def join_table_clause(
    name: str,
    metadata: sa.MetaData | None,
    columns: Iterable[str],
) -> sa.TableClause:
    """Resolve a join table by name.

    Uses the ``sa.Table`` registered on *metadata* when there is one, otherwise
    builds a lightweight ``sa.table()`` carrying just *columns*.
    """
    if metadata is not None and name in metadata.tables:
        return metadata.tables[name]

    return sa.table(name, *(sa.column(col) for col in dict.fromkeys(columns)))


def pivot_label(column: str) -> str:
    return f"{PIVOT_PREFIX}{column}"


def has_pivot_prefix(key: str) -> bool:
    return key.startswith(PIVOT_PREFIX)


def strip_pivot_prefix(key: str) -> str:
    return key[len(PIVOT_PREFIX):]


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[sa.Select[Any]], sa.Select[Any]]:
    """Create a function that adds WHERE conditions to a select query.

    Suitable as a per-branch filter in ``with_related``.

    Example:
        >>> reviews = Review.__table__
        >>> await author.load({"books.reviews": add_conditions(reviews.c.stars >= 4)})
    """

    def _add(query: sa.Select[Any]) -> sa.Select[Any]:
        return query.where(*conditions)

    return _add
