"""Join-table writes for ``belongs_to_many`` relations.

These functions touch only the join table; the related records themselves
are never inserted, updated or deleted here.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Union

import sqlalchemy as sa

from .bridge import join_table_for
from .errors import ConfigurationError, NoRowsUpdatedError
from .record import Record
from .relations import RelationDescriptor, RelationKind, ResolvedKeys
from .tools import get_column, join_table_clause


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection

    from .store import Store


logger = logging.getLogger(__name__)

PivotTarget = Union[Record, Mapping[str, Any], Any]


def _writable_keys(owner: Record, descriptor: RelationDescriptor) -> tuple[ResolvedKeys, Any]:
    if descriptor.kind is not RelationKind.BELONGS_TO_MANY or descriptor.is_through:
        raise ConfigurationError(
            f"Join rows can only be written for belongs_to_many relations without "
            f"`through`, not {descriptor!r}",
            record_type=descriptor.owner,
        )

    keys = descriptor.keys
    owner_value = owner.get(keys.owner_key)
    if owner_value is None:
        raise ConfigurationError(
            f"Cannot write join rows for {descriptor!r}: the owning record has no "
            f"{keys.owner_key!r} yet (save it first)",
            record_type=descriptor.owner,
        )

    return keys, owner_value


def as_targets(targets: PivotTarget | Sequence[PivotTarget]) -> list[PivotTarget]:
    if isinstance(targets, (Record, Mapping, str, bytes)) or not isinstance(targets, Iterable):
        return [targets]

    return list(targets)


def target_value(keys: ResolvedKeys, target: PivotTarget) -> Any:
    if isinstance(target, Record):
        assert keys.target_join_column is not None
        value = target.get(keys.target_join_column)
        if value is None:
            raise ConfigurationError(
                f"Cannot reference {target!r} in a join row: it has no "
                f"{keys.target_join_column!r} yet (save it first)",
                record_type=type(target),
            )
        return value

    return target


def _join_table(
    descriptor: RelationDescriptor, extra_columns: Iterable[str] = ()
) -> sa.TableClause:
    keys = descriptor.keys
    assert keys.join_table is not None
    return join_table_clause(
        keys.join_table,
        descriptor.owner_model.metadata,
        [*keys.pivot_columns, *extra_columns],
    )


async def attach(
    owner: Record,
    targets: PivotTarget | Sequence[PivotTarget],
    descriptor: RelationDescriptor,
    store: Store,
    *,
    pivot_attributes: Mapping[str, Any] | None = None,
    transacting: AsyncConnection | None = None,
) -> list[dict[str, Any]]:
    """Insert one join row per target.

    A target is a record, a bare key value, or a mapping holding the other
    key plus extra join columns.  *pivot_attributes* are added to every row.

    Returns:
        The inserted join rows.

    Raises:
        ConfigurationError: For a non-``belongs_to_many`` or through relation,
            or when the owner has not been saved.
        StoreError: When the store rejects a row (e.g. a duplicate pair).
    """
    keys, owner_value = _writable_keys(owner, descriptor)
    assert keys.join_column is not None

    rows: list[dict[str, Any]] = []
    for target in as_targets(targets):
        row: dict[str, Any] = {keys.filter_column: owner_value, **(pivot_attributes or {})}
        if isinstance(target, Mapping):
            row.update(target)
        else:
            row[keys.join_column] = target_value(keys, target)
        rows.append(row)

    if not rows:
        return []

    columns = dict.fromkeys(col for row in rows for col in row)
    logger.debug("attach %r: %d join rows", descriptor, len(rows))
    await store.insert(_join_table(descriptor, columns), rows, transacting=transacting)

    return rows


async def detach(
    owner: Record,
    targets: PivotTarget | Sequence[PivotTarget] | None,
    descriptor: RelationDescriptor,
    store: Store,
    *,
    transacting: AsyncConnection | None = None,
) -> int:
    """Delete the owner's join rows, only those for *targets* when given.

    Returns the number of deleted join rows; zero is not an error.
    """
    keys, owner_value = _writable_keys(owner, descriptor)
    assert keys.join_column is not None

    table = join_table_for(descriptor)
    statement = sa.delete(table).where(get_column(table, keys.filter_column) == owner_value)
    if targets is not None:
        values = [target_value(keys, target) for target in as_targets(targets)]
        if not values:
            return 0
        statement = statement.where(get_column(table, keys.join_column).in_(values))

    count = await store.delete(statement, transacting=transacting)
    logger.debug("detach %r: %d join rows removed", descriptor, count)

    return count


async def update_pivot(
    owner: Record,
    attributes: Mapping[str, Any],
    descriptor: RelationDescriptor,
    store: Store,
    *,
    targets: PivotTarget | Sequence[PivotTarget] | None = None,
    where: Mapping[str, Any] | None = None,
    require: bool = False,
    transacting: AsyncConnection | None = None,
) -> int:
    """Set *attributes* on the owner's existing join rows.

    Args:
        owner: The saved owning record.
        attributes: Join-table columns to set.
        descriptor: A ``belongs_to_many`` relation of the owner.
        store: Where the statement runs.
        targets: Restrict to the join rows of these related records/keys.
        where: Extra ``column == value`` filters on the join table.
        require: Raise :class:`NoRowsUpdatedError` when nothing matched.
        transacting: Connection to run on.

    Returns:
        The number of updated join rows.
    """
    keys, owner_value = _writable_keys(owner, descriptor)
    assert keys.join_column is not None
    if not attributes:
        return 0

    table = _join_table(descriptor, [*attributes, *(where or {})])
    statement = (
        sa.update(table)
        .where(
            get_column(table, keys.filter_column) == owner_value,
            *(get_column(table, col) == value for col, value in (where or {}).items()),
        )
        .values(dict(attributes))
    )
    if targets is not None:
        values = [target_value(keys, target) for target in as_targets(targets)]
        statement = statement.where(get_column(table, keys.join_column).in_(values))

    count = await store.update(statement, transacting=transacting)
    logger.debug("update_pivot %r: %d join rows updated", descriptor, count)
    if not count and require:
        raise NoRowsUpdatedError(
            f"No join rows of {descriptor!r} were updated", record_type=descriptor.owner
        )

    return count
