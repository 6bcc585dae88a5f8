"""Declarative record types and record sets.

A project declares one abstract base and its concrete record types::

    class Base(Model):
        __abstract__ = True

    class Author(Base):
        __table__ = sa.Table("authors", Base.metadata, ...)
        books = has_many("Book")

    Base.bind(engine)
    author = await Author(id=1).fetch(with_related=["books.reviews"])

Each abstract base owns a ``sa.MetaData``, a name :class:`Registry` and the
:class:`Store` every subclass runs its statements through.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Iterator, Mapping, Sequence
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar, overload


if sys.version_info >= (3, 11):
    from typing import Self, Unpack
else:
    from typing_extensions import Self, Unpack

import sqlalchemy as sa

from . import hooks, pivot
from .bridge import constrain_for_fetch, constrain_for_write, parse_pivot
from .eager import (
    EagerBranch,
    EagerLoader,
    FetchOptions,
    WithRelated,
    empty_related,
    parse_with_related,
)
from .errors import (
    ConfigurationError,
    EmptyResultError,
    NoRowsDeletedError,
    NoRowsUpdatedError,
    NotFoundError,
    UnknownRelationError,
)
from .hooks import Hook, Phase
from .record import Record
from .registry import Registry
from .relations import Condition, RelationDescriptor, RelationKind
from .store import Store
from .tools import add_conditions, get_column, get_id_attribute, get_table, get_table_name


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

    from .store import Lock


logger = logging.getLogger(__name__)

M = TypeVar("M", bound="Model")


class Model(Record):
    """Base class of every record type."""

    __abstract__: ClassVar[bool] = True
    __table__: ClassVar[sa.Table]
    __relations__: ClassVar[dict[str, RelationDescriptor]] = {}

    metadata: ClassVar[sa.MetaData]
    registry: ClassVar[Registry]
    store: ClassVar[Store | None] = None

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if cls.__dict__.get("__abstract__", False):
            if not hasattr(cls, "metadata"):
                cls.metadata = sa.MetaData()
            if not hasattr(cls, "registry"):
                cls.registry = Registry()
            return

        if not hasattr(cls, "registry"):
            raise ConfigurationError(
                f"{cls.__name__} must derive from an abstract base (`__abstract__ = True`)",
                record_type=cls,
            )
        get_table(cls)

        declared: dict[str, RelationDescriptor] = {}
        for base in reversed(cls.__mro__[1:]):
            declared.update(base.__dict__.get("__relations__", {}))
        for name, value in list(cls.__dict__.items()):
            if not isinstance(value, RelationDescriptor):
                continue
            if hasattr(Model, name):
                raise ConfigurationError(
                    f"Relation name {name!r} on {cls.__name__} shadows a record attribute",
                    record_type=cls,
                )
            declared[name] = value

        bound = {name: descriptor.bind(cls, name) for name, descriptor in declared.items()}
        for name, descriptor in bound.items():
            setattr(cls, name, descriptor)
        cls.__relations__ = bound

        cls.registry.register(cls.__dict__.get("__registry_name__", cls.__name__), cls)

    def __init__(self, attributes: Mapping[str, Any] | None = None, /, **kwargs: Any) -> None:
        cls = type(self)
        if cls.__dict__.get("__abstract__", False):
            raise ConfigurationError(f"{cls.__name__} is abstract", record_type=cls)

        super().__init__(
            attributes,
            table_name=get_table_name(cls),
            id_attribute=get_id_attribute(cls),
            **kwargs,
        )

    # -- class level --------------------------------------------------------

    @classmethod
    def bind(cls, bind: AsyncEngine | AsyncConnection | Store | None) -> Store | None:
        """Set (or with ``None`` unset) the store used by this type and its subclasses."""
        cls.store = bind if bind is None or isinstance(bind, Store) else Store(bind)
        return cls.store

    @classmethod
    def get_store(cls) -> Store:
        if cls.store is None:
            raise ConfigurationError(
                f"No store bound for {cls.__name__}; call `bind()` on its base first",
                record_type=cls,
            )

        return cls.store

    @classmethod
    def relation(cls, name: str) -> RelationDescriptor:
        """Template lookup of a declared relation.

        Raises:
            UnknownRelationError: If *name* is not declared on this type.
        """
        try:
            return cls.__relations__[name]
        except KeyError:
            raise UnknownRelationError(name, record_type=cls) from None

    @classmethod
    def relations_map(cls) -> Mapping[str, RelationDescriptor]:
        return MappingProxyType(cls.__relations__)

    @overload
    @classmethod
    def on(cls, phase: Phase, callback: Hook) -> Hook: ...
    @overload
    @classmethod
    def on(cls, phase: Phase, callback: None = None) -> Callable[[Hook], Hook]: ...
    @classmethod
    def on(cls, phase: Phase, callback: Hook | None = None) -> Hook | Callable[[Hook], Hook]:
        """Register a lifecycle hook; usable as a decorator."""
        if callback is not None:
            return hooks.register(cls, phase, callback)

        def decorator(fn: Hook) -> Hook:
            return hooks.register(cls, phase, fn)

        return decorator

    @classmethod
    def off(cls, phase: Phase, callback: Hook) -> None:
        hooks.unregister(cls, phase, callback)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Self:
        return cls(row)

    @classmethod
    def collection(
        cls,
        records: Sequence[Any] = (),
        *,
        related_data: RelationDescriptor | None = None,
        parent: Record | None = None,
    ) -> RecordSet[Self]:
        return RecordSet(cls, records, related_data=related_data, parent=parent)

    @classmethod
    def where(cls, **attributes: Any) -> RecordSet[Self]:
        return cls.collection().where(**attributes)

    @classmethod
    def query(cls, condition: Condition) -> RecordSet[Self]:
        return cls.collection().query(condition)

    @classmethod
    async def fetch_all(cls, **options: Unpack[FetchOptions]) -> RecordSet[Self]:
        return await cls.collection().fetch(**options)

    # -- relations ----------------------------------------------------------

    def related(self, name: str) -> Any:
        """The loaded value of relation *name*, or a new empty one bound to this record.

        Raises:
            UnknownRelationError: If *name* is not declared on this type.
        """
        if name in self.relations:
            return self.relations[name]

        descriptor = type(self).relation(name)
        if descriptor.kind is RelationKind.MORPH_TO:
            descriptor = descriptor.morph_target(self.get(descriptor.morph_type_column)) or descriptor

        value = self.relations[name] = empty_related(descriptor, self)
        return value

    # -- persistence --------------------------------------------------------

    def _select(self, columns: Sequence[str] | None = None) -> sa.Select[Any]:
        table = get_table(type(self))
        if self.related_data is not None and self.parent is not None:
            query = constrain_for_fetch(self.parent, self.related_data, columns=columns)
        else:
            query = sa.select(*([get_column(table, col) for col in columns] if columns else [table]))

        if self.attributes:
            query = query.where(*(get_column(table, key) == value for key, value in self.attributes.items()))

        return query.limit(1)

    async def fetch(self, **options: Unpack[FetchOptions]) -> Self | None:
        """Fetch the row matching this record's attributes (and relation, if any).

        Returns ``None`` when nothing matches, unless ``require`` is set.

        Raises:
            NotFoundError: With ``require=True`` and no matching row.
            UnknownRelationError: Before any query, for a bad ``with_related`` name.
        """
        cls = type(self)
        branches = parse_with_related(cls, options.get("with_related"))
        store = cls.get_store()
        transacting = options.get("transacting")
        lock = options.get("lock")

        await hooks.run(cls, Phase.FETCHING, self, options)
        rows = await store.fetch_all(
            self._select(options.get("columns")), transacting=transacting, lock=lock
        )
        if not rows:
            if options.get("require", False):
                raise NotFoundError(f"{cls.__name__} not found", record_type=cls)
            return None

        self.attributes.update(rows[0])
        if self.related_data is not None and self.related_data.is_joined:
            parse_pivot([self], self.related_data)
        await hooks.run(cls, Phase.LOADED, self, options)

        if branches:
            await EagerLoader(store, transacting=transacting, lock=lock).load([self], branches, rows)
        await hooks.run(cls, Phase.FETCHED, self, options)

        return self

    async def load(
        self,
        *with_related: str | Mapping[str, Condition | None],
        transacting: AsyncConnection | None = None,
        lock: Lock | None = None,
    ) -> Self:
        """Eager load relations onto this already-fetched record."""
        cls = type(self)
        branches = parse_with_related(cls, list(with_related))
        await EagerLoader(cls.get_store(), transacting=transacting, lock=lock).load([self], branches)
        return self

    async def count(
        self,
        column: str | None = None,
        *,
        transacting: AsyncConnection | None = None,
    ) -> int:
        """Count the rows of this type's table (or relation, when reached through one)."""
        cls = type(self)
        table = get_table(cls)
        if self.related_data is not None and self.parent is not None:
            query = constrain_for_fetch(self.parent, self.related_data)
        else:
            query = sa.select(table)

        return await cls.get_store().count(query, column, transacting=transacting)

    async def save(
        self,
        attributes: Mapping[str, Any] | None = None,
        *,
        method: str | None = None,
        patch: bool = False,
        require: bool = True,
        transacting: AsyncConnection | None = None,
    ) -> Self:
        """Insert (new records) or update (records with an id) this record.

        Records reached through a relation get their foreign key (and morph
        type) set from the owning record first.

        Raises:
            NoRowsUpdatedError: An update matched no row and ``require`` is set.
            ConfigurationError: Unknown *method*, or an update without an id.
        """
        cls = type(self)
        if attributes:
            self.set(attributes)

        method = method or ("insert" if self.is_new() else "update")
        if method not in ("insert", "update"):
            raise ConfigurationError(f"Unknown save method {method!r}", record_type=cls)

        if (
            self.related_data is not None
            and self.parent is not None
            and self.related_data.kind is not RelationKind.MORPH_TO
        ):
            constrain_for_write(self, self.related_data, self.parent)

        options = {"method": method, "patch": patch, "transacting": transacting}
        await hooks.run(cls, Phase.SAVING, self, options)

        store = cls.get_store()
        table = get_table(cls)
        if method == "insert":
            ids = await store.insert(table, dict(self.attributes), transacting=transacting)
            if self.id is None and ids and ids[0] is not None:
                self.attributes[self.id_attribute] = ids[0]
            logger.debug("inserted %s id=%r", cls.__name__, self.id)
        else:
            if self.id is None:
                raise ConfigurationError(
                    f"Cannot update {cls.__name__} without {self.id_attribute!r}", record_type=cls
                )
            source = attributes if patch and attributes else self.attributes
            values = {key: value for key, value in source.items() if key != self.id_attribute}
            if values:
                count = await store.update(
                    sa.update(table)
                    .where(get_column(table, self.id_attribute) == self.id)
                    .values(values),
                    transacting=transacting,
                )
                if not count and require:
                    raise NoRowsUpdatedError(f"No {cls.__name__} rows were updated", record_type=cls)
                logger.debug("updated %s id=%r (%d rows)", cls.__name__, self.id, count)

        await hooks.run(cls, Phase.SAVED, self, options)
        return self

    async def destroy(
        self,
        *,
        require: bool = True,
        transacting: AsyncConnection | None = None,
    ) -> Self:
        """Delete this record's row by id, then clear its attributes.

        Raises:
            ConfigurationError: The record has no id.
            NoRowsDeletedError: Nothing was deleted and ``require`` is set.
        """
        cls = type(self)
        if self.id is None:
            raise ConfigurationError(
                f"A {cls.__name__} cannot be destroyed without {self.id_attribute!r}",
                record_type=cls,
            )

        options = {"transacting": transacting}
        await hooks.run(cls, Phase.DESTROYING, self, options)

        table = get_table(cls)
        count = await cls.get_store().delete(
            sa.delete(table).where(get_column(table, self.id_attribute) == self.id),
            transacting=transacting,
        )
        if not count and require:
            raise NoRowsDeletedError(f"No {cls.__name__} rows were deleted", record_type=cls)
        logger.debug("destroyed %s id=%r (%d rows)", cls.__name__, self.id, count)

        await hooks.run(cls, Phase.DESTROYED, self, options)
        self.clear()
        return self

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.attributes!r}>"


class RecordSet(Generic[M]):
    """An ordered set of records of one type.

    A set reached through a relation (``author.books``) keeps the relation
    and its owner, so fetching, counting and creating are constrained to
    that owner.  ``query``/``where``/``with_pivot`` return new sets; the
    filters of one set never leak into another.
    """

    __slots__ = ("conditions", "model", "parent", "records", "related_data")

    def __init__(
        self,
        model: type[M],
        records: Sequence[Any] = (),
        *,
        related_data: RelationDescriptor | None = None,
        parent: Record | None = None,
        conditions: tuple[Condition, ...] = (),
    ) -> None:
        self.model = model
        self.related_data = related_data
        self.parent = parent
        self.conditions = conditions
        self.records: list[M] = [self._coerce(record) for record in records]

    def _coerce(self, record: Any) -> M:
        return record if isinstance(record, self.model) else self.model(record)

    def _copy(self, **changes: Any) -> RecordSet[M]:
        fields = {
            "related_data": self.related_data,
            "parent": self.parent,
            "conditions": self.conditions,
            **changes,
        }
        return type(self)(self.model, list(self.records), **fields)

    def _relation(self, operation: str) -> tuple[RelationDescriptor, Record]:
        if self.related_data is None or self.parent is None:
            raise ConfigurationError(
                f"`{operation}` needs a record set reached through a relation",
                record_type=self.model,
            )

        return self.related_data, self.parent

    # -- sequence protocol --------------------------------------------------

    def __iter__(self) -> Iterator[M]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    @overload
    def __getitem__(self, index: int) -> M: ...
    @overload
    def __getitem__(self, index: slice) -> list[M]: ...
    def __getitem__(self, index: int | slice) -> M | list[M]:
        return self.records[index]

    def __repr__(self) -> str:
        return f"<RecordSet {self.model.__name__} x{len(self.records)}>"

    def get(self, id_: Any) -> M | None:
        return next((record for record in self.records if record.id == id_), None)

    def add(self, record: M | Mapping[str, Any]) -> M:
        coerced = self._coerce(record)
        self.records.append(coerced)
        return coerced

    def remove(self, record: M | Any) -> None:
        id_ = record.id if isinstance(record, Record) else record
        self.records = [item for item in self.records if item is not record and item.id != id_]

    def pluck(self, attribute: str) -> list[Any]:
        return [record.get(attribute) for record in self.records]

    def to_list(self, *, shallow: bool = False, omit_pivot: bool = False) -> list[dict[str, Any]]:
        return [record.to_dict(shallow=shallow, omit_pivot=omit_pivot) for record in self.records]

    # -- constraint chaining ------------------------------------------------

    def query(self, condition: Condition) -> RecordSet[M]:
        return self._copy(conditions=(*self.conditions, condition))

    def where(self, **attributes: Any) -> RecordSet[M]:
        table = get_table(self.model)
        return self.query(
            add_conditions(*(get_column(table, key) == value for key, value in attributes.items()))
        )

    def with_pivot(self, *columns: str) -> RecordSet[M]:
        descriptor, _ = self._relation("with_pivot")
        return self._copy(related_data=descriptor.with_pivot(*columns))

    def _select(self, columns: Sequence[str] | None = None) -> sa.Select[Any]:
        if self.related_data is not None and self.parent is not None:
            query = constrain_for_fetch(self.parent, self.related_data, columns=columns)
        else:
            table = get_table(self.model)
            query = sa.select(*([get_column(table, col) for col in columns] if columns else [table]))

        for condition in self.conditions:
            query = condition(query)

        return query

    # -- I/O ----------------------------------------------------------------

    def _hydrate(self, rows: Sequence[Mapping[str, Any]]) -> list[M]:
        records = [self.model.from_row(row) for row in rows]
        if self.related_data is not None and self.related_data.is_joined:
            parse_pivot(records, self.related_data)

        return records

    async def fetch(self, **options: Unpack[FetchOptions]) -> Self:
        """Replace this set's records with the matching rows.

        An empty result skips the ``LOADED`` and ``FETCHED`` hooks.

        Raises:
            EmptyResultError: With ``require=True`` and no matching rows.
            UnknownRelationError: Before any query, for a bad ``with_related`` name.
        """
        model = self.model
        branches = parse_with_related(model, options.get("with_related"))
        store = model.get_store()
        transacting = options.get("transacting")
        lock = options.get("lock")

        await hooks.run(model, Phase.FETCHING, self, options)
        rows = await store.fetch_all(
            self._select(options.get("columns")), transacting=transacting, lock=lock
        )
        if not rows:
            if options.get("require", False):
                raise EmptyResultError(f"No {model.__name__} records found", record_type=model)
            self.records = []
            return self

        self.records = self._hydrate(rows)
        await hooks.run(model, Phase.LOADED, self, options)

        if branches:
            await EagerLoader(store, transacting=transacting, lock=lock).load(self.records, branches, rows)
        await hooks.run(model, Phase.FETCHED, self, options)

        return self

    async def fetch_one(self, **options: Unpack[FetchOptions]) -> M | None:
        """Fetch the first matching record without touching this set.

        Raises:
            NotFoundError: With ``require=True`` and no matching row.
        """
        model = self.model
        branches = parse_with_related(model, options.get("with_related"))
        store = model.get_store()
        transacting = options.get("transacting")
        lock = options.get("lock")

        await hooks.run(model, Phase.FETCHING, self, options)
        rows = await store.fetch_all(
            self._select(options.get("columns")).limit(1), transacting=transacting, lock=lock
        )
        if not rows:
            if options.get("require", False):
                raise NotFoundError(f"{model.__name__} not found", record_type=model)
            return None

        record = self._hydrate(rows)[0]
        record.related_data = self.related_data
        record.parent = self.parent
        await hooks.run(model, Phase.LOADED, record, options)

        if branches:
            await EagerLoader(store, transacting=transacting, lock=lock).load([record], branches, rows)
        await hooks.run(model, Phase.FETCHED, record, options)

        return record

    async def count(
        self,
        column: str | None = None,
        *,
        transacting: AsyncConnection | None = None,
    ) -> int:
        return await self.model.get_store().count(self._select(), column, transacting=transacting)

    async def load(
        self,
        *with_related: str | Mapping[str, Condition | None],
        transacting: AsyncConnection | None = None,
        lock: Lock | None = None,
    ) -> Self:
        """Eager load relations onto every record of this set."""
        branches: tuple[EagerBranch, ...] = parse_with_related(self.model, list(with_related))
        if self.records:
            loader = EagerLoader(self.model.get_store(), transacting=transacting, lock=lock)
            await loader.load(self.records, branches)

        return self

    async def create(
        self,
        attributes: Mapping[str, Any] | None = None,
        /,
        *,
        transacting: AsyncConnection | None = None,
        **kwargs: Any,
    ) -> M:
        """Save a new record, constrained to this set's owner, and add it to the set.

        For a ``belongs_to_many`` set the record is saved on its own table and
        then attached through a new join row.
        """
        record = self.model(attributes, **kwargs)
        descriptor, parent = self.related_data, self.parent
        attaches = (
            descriptor is not None
            and descriptor.kind is RelationKind.BELONGS_TO_MANY
            and not descriptor.is_through
        )
        if descriptor is not None and parent is not None and not attaches:
            record.related_data = descriptor
            record.parent = parent

        await record.save(transacting=transacting)
        if attaches:
            assert descriptor is not None
            assert parent is not None
            rows = await pivot.attach(
                parent, record, descriptor, self.model.get_store(), transacting=transacting
            )
            record.pivot = Record(rows[0], table_name=descriptor.join_table)

        self.records.append(record)
        return record

    async def attach(
        self,
        targets: Any,
        pivot_attributes: Mapping[str, Any] | None = None,
        *,
        transacting: AsyncConnection | None = None,
    ) -> Self:
        """Insert join rows between this set's owner and *targets*.

        Record targets are added to the set with their new pivot.
        """
        descriptor, parent = self._relation("attach")
        rows = await pivot.attach(
            parent,
            targets,
            descriptor,
            self.model.get_store(),
            pivot_attributes=pivot_attributes,
            transacting=transacting,
        )
        for target, row in zip(pivot.as_targets(targets), rows):
            if isinstance(target, self.model):
                target.pivot = Record(row, table_name=descriptor.join_table)
                self.records.append(target)

        return self

    async def detach(
        self,
        targets: Any = None,
        *,
        transacting: AsyncConnection | None = None,
    ) -> Self:
        """Delete join rows of this set's owner (all of them when *targets* is ``None``)."""
        descriptor, parent = self._relation("detach")
        await pivot.detach(
            parent, targets, descriptor, self.model.get_store(), transacting=transacting
        )

        if targets is None:
            self.records = []
        else:
            column = descriptor.keys.target_join_column
            values = {pivot.target_value(descriptor.keys, target) for target in pivot.as_targets(targets)}
            self.records = [record for record in self.records if record.get(column or "") not in values]

        return self

    async def update_pivot(
        self,
        attributes: Mapping[str, Any],
        *,
        targets: Any = None,
        where: Mapping[str, Any] | None = None,
        require: bool = False,
        transacting: AsyncConnection | None = None,
    ) -> int:
        descriptor, parent = self._relation("update_pivot")
        return await pivot.update_pivot(
            parent,
            attributes,
            descriptor,
            self.model.get_store(),
            targets=targets,
            where=where,
            require=require,
            transacting=transacting,
        )


__all__ = ("FetchOptions", "Model", "RecordSet", "WithRelated")
