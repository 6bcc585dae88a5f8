"""Relation descriptors.

A :class:`RelationDescriptor` is an immutable description of one relation
between two record types: its kind, its target, and the key names used to
join them.  Descriptors are declared as class attributes on a model::

    class Author(Base):
        __table__ = authors
        books = has_many("Book")
        avatar = morph_one("Photo", "imageable")

and are bound to the declaring class (and attribute name) when the class is
created.  Keys that are not given explicitly are derived from table names and
identity attributes the first time they are needed, then memoized on the
descriptor instance.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cached_property
from typing import TYPE_CHECKING, Any, Final, overload

import sqlalchemy as sa

from .errors import ConfigurationError
from .registry import ModelRef
from .tools import default_join_table, default_key, get_id_attribute, get_table_name


if TYPE_CHECKING:
    from .model import Model, Record, RecordSet

Condition = Callable[[sa.Select[Any]], sa.Select[Any]]


class RelationKind(str, Enum):
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    BELONGS_TO = "belongs_to"
    BELONGS_TO_MANY = "belongs_to_many"
    MORPH_ONE = "morph_one"
    MORPH_MANY = "morph_many"
    MORPH_TO = "morph_to"


SINGLE_KINDS: Final[frozenset[RelationKind]] = frozenset({
    RelationKind.HAS_ONE,
    RelationKind.BELONGS_TO,
    RelationKind.MORPH_ONE,
    RelationKind.MORPH_TO,
})
MORPH_KINDS: Final[frozenset[RelationKind]] = frozenset({
    RelationKind.MORPH_ONE,
    RelationKind.MORPH_MANY,
    RelationKind.MORPH_TO,
})
INVERSE_KINDS: Final[frozenset[RelationKind]] = frozenset({
    RelationKind.BELONGS_TO,
    RelationKind.MORPH_TO,
})

_DIRECT_FIELDS: Final[tuple[str, ...]] = (
    "foreign_key",
    "other_key",
    "foreign_key_target",
    "other_key_target",
    "join_table_name",
    "through_interim",
)
_MORPH_FIELDS: Final[tuple[str, ...]] = ("morph_name", "morph_column_names", "morph_value")


@dataclass(frozen=True)
class MorphCandidate:
    """One possible target of a ``morph_to`` relation."""

    target: ModelRef
    morph_value: str | None = None


@dataclass(frozen=True, slots=True)
class ResolvedKeys:
    """Fully resolved join description, as consumed by the constraint bridge.

    ``owner_key`` is read from the owning records; its values are matched
    against ``filter_column`` (on the join table when ``filter_on_join``,
    otherwise on the target table).  Fetched children are grouped by
    ``child_key`` (read from the pivot when ``child_key_on_pivot``).
    """

    owner_key: str
    filter_column: str
    filter_on_join: bool
    child_key: str
    child_key_on_pivot: bool
    join_table: str | None = None
    join_column: str | None = None
    target_join_column: str | None = None
    pivot_columns: tuple[str, ...] = ()


@dataclass(frozen=True)
class RelationDescriptor:
    """Immutable description of a relation between two record types."""

    kind: RelationKind
    target: ModelRef | None = None
    name: str | None = None
    owner: type[Model] | None = field(default=None, compare=False)
    foreign_key: str | None = None
    other_key: str | None = None
    foreign_key_target: str | None = None
    other_key_target: str | None = None
    join_table_name: str | None = None
    morph_name: str | None = None
    morph_column_names: tuple[str, str] | None = None
    morph_value: str | None = None
    morph_candidates: tuple[MorphCandidate, ...] = ()
    through_interim: ModelRef | None = None
    through_foreign_key: str | None = None
    through_foreign_key_target: str | None = None
    pivot_columns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.kind in MORPH_KINDS:
            if not self.morph_name:
                raise ConfigurationError(f"`{self.kind.value}` requires a polymorphic name")
            if stray := [f for f in _DIRECT_FIELDS if getattr(self, f) is not None]:
                raise ConfigurationError(f"`{self.kind.value}` does not accept {stray}")
            if self.morph_column_names is not None and len(self.morph_column_names) != 2:  # noqa: PLR2004
                raise ConfigurationError(
                    "morph column names must be a (type_column, id_column) pair"
                )
        elif stray := [f for f in _MORPH_FIELDS if getattr(self, f) is not None]:
            raise ConfigurationError(f"`{self.kind.value}` does not accept {stray}")

        if self.kind is RelationKind.MORPH_TO:
            if self.target is None and not self.morph_candidates:
                raise ConfigurationError("`morph_to` requires at least one candidate target")
        elif self.target is None:
            raise ConfigurationError(f"`{self.kind.value}` requires a target record type")

        if self.kind is not RelationKind.BELONGS_TO_MANY and self.join_table_name is not None:
            raise ConfigurationError("Only `belongs_to_many` relations take a join table name")

    # -- descriptor protocol ------------------------------------------------

    @overload
    def __get__(self, instance: None, owner: type[Any]) -> RelationDescriptor: ...
    @overload
    def __get__(self, instance: Model, owner: type[Any]) -> Record | RecordSet[Any]: ...
    def __get__(
        self, instance: Model | None, owner: type[Any]
    ) -> RelationDescriptor | Record | RecordSet[Any]:
        if instance is None:
            return self

        assert self.name is not None
        return instance.related(self.name)

    # -- derived variants ---------------------------------------------------

    def bind(self, owner: type[Model], name: str) -> RelationDescriptor:
        """Return a copy attached to the declaring record type under *name*."""
        return replace(self, owner=owner, name=name)

    def through(
        self,
        interim: ModelRef,
        through_foreign_key: str | None = None,
        other_key: str | None = None,
        through_foreign_key_target: str | None = None,
        other_key_target: str | None = None,
    ) -> RelationDescriptor:
        """Route this relation through an interim record type.

        Raises:
            ConfigurationError: For polymorphic kinds.
        """
        if self.is_morph:
            raise ConfigurationError(
                f"`through` is only usable with has_one, has_many, belongs_to and "
                f"belongs_to_many, not {self.kind.value}",
                record_type=self.owner,
            )

        return replace(
            self,
            through_interim=interim,
            through_foreign_key=through_foreign_key or self.through_foreign_key,
            other_key=other_key or self.other_key,
            through_foreign_key_target=through_foreign_key_target
            or self.through_foreign_key_target,
            other_key_target=other_key_target or self.other_key_target,
        )

    def with_pivot(self, *columns: str) -> RelationDescriptor:
        """Also select *columns* from the join table into each record's pivot."""
        if not self.is_joined:
            raise ConfigurationError(
                f"`with_pivot` requires a belongs_to_many or through relation, not {self.kind.value}",
                record_type=self.owner,
            )

        return replace(self, pivot_columns=tuple(dict.fromkeys((*self.pivot_columns, *columns))))

    def morph_target(self, morph_value: Any) -> RelationDescriptor | None:
        """Narrow a ``morph_to`` relation to the candidate stored as *morph_value*.

        Returns ``None`` when no candidate matches.
        """
        if self.kind is not RelationKind.MORPH_TO:
            raise ConfigurationError(f"`morph_target` applies to morph_to, not {self.kind.value}")

        for candidate in self.morph_candidates:
            target = self.registry.resolve(candidate.target)
            if (candidate.morph_value or get_table_name(target)) == morph_value:
                return replace(self, target=target, morph_value=morph_value)

        return None

    # -- classification -----------------------------------------------------

    @property
    def is_single(self) -> bool:
        return self.kind in SINGLE_KINDS

    @property
    def is_morph(self) -> bool:
        return self.kind in MORPH_KINDS

    @property
    def is_inverse(self) -> bool:
        return self.kind in INVERSE_KINDS

    @property
    def is_through(self) -> bool:
        return self.through_interim is not None

    @property
    def is_joined(self) -> bool:
        """True when fetched rows carry join-table columns needing pivot extraction."""
        return self.kind is RelationKind.BELONGS_TO_MANY or self.is_through

    @property
    def is_narrowed(self) -> bool:
        """False only for a ``morph_to`` whose concrete target is not known yet."""
        return self.target is not None

    # -- participating types ------------------------------------------------

    @cached_property
    def owner_model(self) -> type[Model]:
        if self.owner is None:
            raise ConfigurationError(
                f"{self.kind.value} relation is not attached to a record type"
            )

        return self.owner

    @property
    def registry(self) -> Any:
        return self.owner_model.registry

    @cached_property
    def target_model(self) -> type[Model]:
        if self.target is None:
            raise ConfigurationError(
                f"morph_to relation {self.name!r} has no concrete target until narrowed "
                "by the stored type value",
                record_type=self.owner,
            )

        return self.registry.resolve(self.target)

    @cached_property
    def interim_model(self) -> type[Model] | None:
        if self.through_interim is None:
            return None

        return self.registry.resolve(self.through_interim)

    @cached_property
    def candidates(self) -> tuple[tuple[type[Model], str], ...]:
        """``morph_to`` candidates as ``(record type, morph value)`` pairs."""
        out = []
        for candidate in self.morph_candidates:
            target = self.registry.resolve(candidate.target)
            out.append((target, candidate.morph_value or get_table_name(target)))

        return tuple(out)

    # -- key names ----------------------------------------------------------

    @cached_property
    def morph_type_column(self) -> str:
        if not self.is_morph:
            raise ConfigurationError(f"{self.kind.value} relations have no morph columns")
        if self.morph_column_names:
            return self.morph_column_names[0]

        return f"{self.morph_name}_type"

    @cached_property
    def morph_id_column(self) -> str:
        if not self.is_morph:
            raise ConfigurationError(f"{self.kind.value} relations have no morph columns")
        if self.morph_column_names:
            return self.morph_column_names[1]

        return f"{self.morph_name}_id"

    @cached_property
    def resolved_morph_value(self) -> str:
        """Value stored in the type column; defaults to the referenced table name."""
        if self.morph_value is not None:
            return self.morph_value
        if self.kind is RelationKind.MORPH_TO:
            return get_table_name(self.target_model)

        return get_table_name(self.owner_model)

    @cached_property
    def resolved_foreign_key(self) -> str:
        """The foreign key column, explicit or derived from the referenced side."""
        if self.is_morph:
            return self.morph_id_column
        if self.kind is RelationKind.BELONGS_TO:
            if self.is_through:
                return self.other_key or self.foreign_key or self._target_default_key
            return self.foreign_key or self._target_default_key
        if self.is_through and self.kind is RelationKind.BELONGS_TO_MANY:
            return self.through_foreign_key or self.foreign_key or self._owner_default_key
        if self.is_through:
            return self.other_key or self.foreign_key or self._owner_default_key

        return self.foreign_key or self._owner_default_key

    @cached_property
    def resolved_other_key(self) -> str:
        """The join-table column referencing the target of a ``belongs_to_many``."""
        if self.kind is not RelationKind.BELONGS_TO_MANY:
            raise ConfigurationError(f"{self.kind.value} relations have no other key")

        return self.other_key or self._target_default_key

    @cached_property
    def resolved_through_foreign_key(self) -> str:
        """Column linking the interim type with the far side of a through relation."""
        interim = self.interim_model
        if interim is None:
            raise ConfigurationError(f"{self.name!r} is not a through relation")

        return self.through_foreign_key or default_key(
            get_table_name(interim), get_id_attribute(interim)
        )

    @cached_property
    def join_table(self) -> str | None:
        """Join table name; the interim table for through relations."""
        if self.interim_model is not None:
            return get_table_name(self.interim_model)
        if self.kind is not RelationKind.BELONGS_TO_MANY:
            return None

        return self.join_table_name or default_join_table(
            get_table_name(self.owner_model), get_table_name(self.target_model)
        )

    @cached_property
    def keys(self) -> ResolvedKeys:  # noqa: PLR0911
        """Resolve every key needed to constrain, join and pair this relation."""
        match self.kind:
            case RelationKind.MORPH_ONE | RelationKind.MORPH_MANY:
                return ResolvedKeys(
                    owner_key=get_id_attribute(self.owner_model),
                    filter_column=self.morph_id_column,
                    filter_on_join=False,
                    child_key=self.morph_id_column,
                    child_key_on_pivot=False,
                )
            case RelationKind.MORPH_TO:
                target_id = get_id_attribute(self.target_model)
                return ResolvedKeys(
                    owner_key=self.morph_id_column,
                    filter_column=target_id,
                    filter_on_join=False,
                    child_key=target_id,
                    child_key_on_pivot=False,
                )
            case RelationKind.BELONGS_TO_MANY:
                foreign_key = self.resolved_foreign_key
                other_key = self.resolved_other_key
                owner_key = (
                    self.through_foreign_key_target
                    or self.foreign_key_target
                    or get_id_attribute(self.owner_model)
                )
                extra: tuple[str, ...] = ()
                if self.interim_model is not None:
                    extra = (get_id_attribute(self.interim_model),)
                return ResolvedKeys(
                    owner_key=owner_key,
                    filter_column=foreign_key,
                    filter_on_join=True,
                    child_key=foreign_key,
                    child_key_on_pivot=True,
                    join_table=self.join_table,
                    join_column=other_key,
                    target_join_column=self.other_key_target or get_id_attribute(self.target_model),
                    pivot_columns=_unique(*extra, foreign_key, other_key, *self.pivot_columns),
                )
            case RelationKind.BELONGS_TO if self.interim_model is not None:
                interim_key = self.through_foreign_key_target or get_id_attribute(self.interim_model)
                far_key = self.resolved_foreign_key
                return ResolvedKeys(
                    owner_key=self.resolved_through_foreign_key,
                    filter_column=interim_key,
                    filter_on_join=True,
                    child_key=interim_key,
                    child_key_on_pivot=True,
                    join_table=self.join_table,
                    join_column=far_key,
                    target_join_column=(
                        self.other_key_target
                        or self.foreign_key_target
                        or get_id_attribute(self.target_model)
                    ),
                    pivot_columns=_unique(interim_key, far_key, *self.pivot_columns),
                )
            case RelationKind.BELONGS_TO:
                target_key = self.foreign_key_target or get_id_attribute(self.target_model)
                return ResolvedKeys(
                    owner_key=self.resolved_foreign_key,
                    filter_column=target_key,
                    filter_on_join=False,
                    child_key=target_key,
                    child_key_on_pivot=False,
                )
            case RelationKind.HAS_ONE | RelationKind.HAS_MANY if self.interim_model is not None:
                near_key = self.resolved_foreign_key
                interim_key = self.through_foreign_key_target or get_id_attribute(self.interim_model)
                return ResolvedKeys(
                    owner_key=(
                        self.other_key_target
                        or self.foreign_key_target
                        or get_id_attribute(self.owner_model)
                    ),
                    filter_column=near_key,
                    filter_on_join=True,
                    child_key=near_key,
                    child_key_on_pivot=True,
                    join_table=self.join_table,
                    join_column=interim_key,
                    target_join_column=self.resolved_through_foreign_key,
                    pivot_columns=_unique(interim_key, near_key, *self.pivot_columns),
                )
            case _:
                foreign_key = self.resolved_foreign_key
                return ResolvedKeys(
                    owner_key=self.foreign_key_target or get_id_attribute(self.owner_model),
                    filter_column=foreign_key,
                    filter_on_join=False,
                    child_key=foreign_key,
                    child_key_on_pivot=False,
                )

    @property
    def _owner_default_key(self) -> str:
        owner = self.owner_model
        return default_key(get_table_name(owner), get_id_attribute(owner))

    @property
    def _target_default_key(self) -> str:
        target = self.target_model
        return default_key(get_table_name(target), get_id_attribute(target))

    def __repr__(self) -> str:
        owner = self.owner.__name__ if self.owner is not None else "?"
        target = getattr(self.target, "__name__", self.target)
        through = ""
        if self.is_through:
            through = f" through {getattr(self.through_interim, '__name__', self.through_interim)}"
        return f"<{self.kind.value} {owner}.{self.name} -> {target}{through}>"


def _unique(*columns: str) -> tuple[str, ...]:
    return tuple(dict.fromkeys(columns))


# -- declaration helpers ------------------------------------------------------


def has_one(
    target: ModelRef,
    foreign_key: str | None = None,
    foreign_key_target: str | None = None,
) -> RelationDescriptor:
    """The target table holds one row whose ``foreign_key`` references this record."""
    return RelationDescriptor(
        RelationKind.HAS_ONE,
        target,
        foreign_key=foreign_key,
        foreign_key_target=foreign_key_target,
    )


def has_many(
    target: ModelRef,
    foreign_key: str | None = None,
    foreign_key_target: str | None = None,
) -> RelationDescriptor:
    """The target table holds any number of rows referencing this record."""
    return RelationDescriptor(
        RelationKind.HAS_MANY,
        target,
        foreign_key=foreign_key,
        foreign_key_target=foreign_key_target,
    )


def belongs_to(
    target: ModelRef,
    foreign_key: str | None = None,
    foreign_key_target: str | None = None,
) -> RelationDescriptor:
    """This record's ``foreign_key`` references one row of the target table."""
    return RelationDescriptor(
        RelationKind.BELONGS_TO,
        target,
        foreign_key=foreign_key,
        foreign_key_target=foreign_key_target,
    )


def belongs_to_many(
    target: ModelRef,
    join_table_name: str | None = None,
    foreign_key: str | None = None,
    other_key: str | None = None,
    foreign_key_target: str | None = None,
    other_key_target: str | None = None,
) -> RelationDescriptor:
    """Many-to-many through a join table.

    The join table defaults to both table names sorted and joined by ``_``;
    ``foreign_key`` (join table -> this record) and ``other_key`` (join table ->
    target) default to the singular table name plus the identity attribute.
    """
    return RelationDescriptor(
        RelationKind.BELONGS_TO_MANY,
        target,
        join_table_name=join_table_name,
        foreign_key=foreign_key,
        other_key=other_key,
        foreign_key_target=foreign_key_target,
        other_key_target=other_key_target,
    )


def morph_one(
    target: ModelRef,
    name: str,
    column_names: Sequence[str] | None = None,
    morph_value: str | None = None,
) -> RelationDescriptor:
    return _morph_one_or_many(RelationKind.MORPH_ONE, target, name, column_names, morph_value)


def morph_many(
    target: ModelRef,
    name: str,
    column_names: Sequence[str] | None = None,
    morph_value: str | None = None,
) -> RelationDescriptor:
    return _morph_one_or_many(RelationKind.MORPH_MANY, target, name, column_names, morph_value)


def morph_to(
    name: str,
    *candidates: ModelRef | tuple[ModelRef, str],
    column_names: Sequence[str] | None = None,
) -> RelationDescriptor:
    """Inverse of ``morph_one``/``morph_many``.

    Each candidate is a record type (its morph value defaults to its table name)
    or a ``(record type, morph value)`` pair.  The concrete target is chosen per
    row from the stored type column.
    """
    normalized = tuple(
        MorphCandidate(*candidate) if isinstance(candidate, tuple) else MorphCandidate(candidate)
        for candidate in candidates
    )

    return RelationDescriptor(
        RelationKind.MORPH_TO,
        morph_name=name,
        morph_column_names=_column_pair(column_names),
        morph_candidates=normalized,
    )


def _morph_one_or_many(
    kind: RelationKind,
    target: ModelRef,
    name: str,
    column_names: Sequence[str] | None,
    morph_value: str | None,
) -> RelationDescriptor:
    return RelationDescriptor(
        kind,
        target,
        morph_name=name,
        morph_column_names=_column_pair(column_names),
        morph_value=morph_value,
    )


def _column_pair(column_names: Sequence[str] | None) -> tuple[str, str] | None:
    if column_names is None:
        return None
    if len(column_names) != 2:  # noqa: PLR2004
        raise ConfigurationError("morph column names must be a (type_column, id_column) pair")

    return (column_names[0], column_names[1])
