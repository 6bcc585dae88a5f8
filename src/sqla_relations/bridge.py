"""Turn relation descriptors into query constraints, and rows back into records.

Every function here is pure apart from :func:`fetch_constrained`, which hands
the statement it builds to the :class:`~sqla_relations.store.Store`.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa

from .errors import ConfigurationError
from .record import Record
from .relations import Condition, RelationDescriptor, RelationKind
from .tools import (
    get_column,
    get_table,
    has_pivot_prefix,
    join_table_clause,
    pivot_label,
    strip_pivot_prefix,
)


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection

    from .store import Lock, Store


def join_table_for(descriptor: RelationDescriptor) -> sa.TableClause:
    """The join (or interim) table of a joined relation."""
    keys = descriptor.keys
    if keys.join_table is None:
        raise ConfigurationError(f"{descriptor!r} has no join table", record_type=descriptor.owner)

    if descriptor.interim_model is not None:
        return get_table(descriptor.interim_model)

    columns = [*keys.pivot_columns, keys.join_column or ""]
    return join_table_clause(keys.join_table, descriptor.owner_model.metadata, columns)


def owner_keys(
    descriptor: RelationDescriptor,
    owners: Iterable[Record] = (),
    rows: Iterable[Mapping[str, Any]] | None = None,
) -> list[Any]:
    """Distinct, non-null owner key values, read from *rows* when given."""
    key = descriptor.keys.owner_key
    source: Iterable[Mapping[str, Any]] = (
        rows if rows is not None else (owner.attributes for owner in owners)
    )

    return list(dict.fromkeys(value for row in source if (value := row.get(key)) is not None))


def owner_key(descriptor: RelationDescriptor, owner: Record) -> Any:
    return owner.get(descriptor.keys.owner_key)


def child_key(descriptor: RelationDescriptor, child: Record) -> Any:
    """The value a fetched child is grouped by when pairing it with owners."""
    keys = descriptor.keys
    if keys.child_key_on_pivot:
        return child.pivot.get(keys.child_key) if child.pivot is not None else None

    return child.get(keys.child_key)


def constrain_for_fetch(
    owner: Record | Sequence[Record],
    descriptor: RelationDescriptor,
    *,
    columns: Sequence[str] | None = None,
    rows: Iterable[Mapping[str, Any]] | None = None,
) -> sa.Select[Any]:
    """Build the SELECT for the records related to *owner*.

    A single owner is matched with ``=`` (and single-valued kinds are limited
    to one row); a sequence of owners is matched with one ``IN`` over all of
    their keys.  Joined relations pull the join table columns in, labelled with
    the pivot prefix.

    Raises:
        ConfigurationError: For a ``morph_to`` descriptor that was not narrowed
            to a concrete target first.
    """
    if descriptor.kind is RelationKind.MORPH_TO and not descriptor.is_narrowed:
        raise ConfigurationError(
            f"{descriptor!r} must be narrowed with morph_target() before it can be fetched",
            record_type=descriptor.owner,
        )

    keys = descriptor.keys
    table = get_table(descriptor.target_model)
    selected = [get_column(table, col) for col in columns] if columns else [table]
    query = sa.select(*selected)

    if descriptor.is_joined:
        join = join_table_for(descriptor)
        assert keys.join_column is not None
        assert keys.target_join_column is not None
        query = query.join(
            join,
            get_column(join, keys.join_column) == get_column(table, keys.target_join_column),
        ).add_columns(*(get_column(join, col).label(pivot_label(col)) for col in keys.pivot_columns))
        filter_column = get_column(join, keys.filter_column)
    else:
        filter_column = get_column(table, keys.filter_column)

    if descriptor.kind in (RelationKind.MORPH_ONE, RelationKind.MORPH_MANY):
        query = query.where(
            get_column(table, descriptor.morph_type_column) == descriptor.resolved_morph_value
        )

    if isinstance(owner, Record):
        value = owner_key(descriptor, owner) if rows is None else next(iter(owner_keys(descriptor, rows=rows)), None)
        query = query.where(filter_column == value) if value is not None else query.where(sa.false())
        if descriptor.is_single:
            query = query.limit(1)
        return query

    return query.where(filter_column.in_(owner_keys(descriptor, owner, rows)))


def constrain_for_write(
    record: Record,
    descriptor: RelationDescriptor,
    owner: Record,
) -> Record:
    """Set the foreign key (and morph type) of *record* from its *owner*.

    Only relations whose foreign key lives on the related record are
    affected; ``belongs_to``, ``belongs_to_many``, ``morph_to`` and through
    relations are left untouched.

    Raises:
        ConfigurationError: If the owner has no key value yet.
    """
    if descriptor.is_through or descriptor.kind in (
        RelationKind.BELONGS_TO,
        RelationKind.BELONGS_TO_MANY,
        RelationKind.MORPH_TO,
    ):
        return record

    keys = descriptor.keys
    value = owner.get(keys.owner_key)
    if value is None:
        raise ConfigurationError(
            f"Cannot save through {descriptor!r}: the owning record has no "
            f"{keys.owner_key!r} yet",
            record_type=descriptor.owner,
        )

    record.set(keys.child_key, value)
    if descriptor.kind in (RelationKind.MORPH_ONE, RelationKind.MORPH_MANY):
        record.set(descriptor.morph_type_column, descriptor.resolved_morph_value)

    return record


def parse_pivot(records: Iterable[Record], descriptor: RelationDescriptor) -> list[Record]:
    """Move prefixed join-table attributes of each record into its pivot.

    Records that carry no prefixed attributes are left alone, so parsing
    the same records twice changes nothing.
    """
    parsed = []
    for record in records:
        attributes: dict[str, Any] = {}
        pivot: dict[str, Any] = {}
        for key, value in record.attributes.items():
            if has_pivot_prefix(key):
                pivot[strip_pivot_prefix(key)] = value
            else:
                attributes[key] = value

        if pivot:
            record.attributes = attributes
            record.pivot = _make_pivot(descriptor, pivot)

        parsed.append(record)

    return parsed


def _make_pivot(descriptor: RelationDescriptor, attributes: dict[str, Any]) -> Record:
    if descriptor.interim_model is not None:
        return descriptor.interim_model(attributes)

    return Record(attributes, table_name=descriptor.join_table)


async def fetch_constrained(
    owner: Record | Sequence[Record],
    descriptor: RelationDescriptor,
    store: Store,
    *,
    transacting: AsyncConnection | None = None,
    lock: Lock | None = None,
    columns: Sequence[str] | None = None,
    condition: Condition | None = None,
    rows: Iterable[Mapping[str, Any]] | None = None,
) -> list[dict[str, Any]]:
    """Fetch the raw rows related to *owner* through *descriptor*."""
    query = constrain_for_fetch(owner, descriptor, columns=columns, rows=rows)
    if condition is not None:
        query = condition(query)

    return await store.fetch_all(query, transacting=transacting, lock=lock)
