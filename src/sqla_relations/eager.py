"""Batched eager loading of nested relations.

``with_related`` names are dotted paths (``"books.reviews"``) optionally
paired with a filter callback that receives and returns the ``sa.Select``
of the last segment.  Loading a tree issues one query per relation and
level, whatever the number of parent records:

    >>> authors = await Author.fetch_all(with_related=["books.reviews"])
    # 3 statements: authors, books of all authors, reviews of all books

Every name is resolved against the record types before the first query
runs, so a misspelled name never leaves a half-loaded graph behind.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import defaultdict
from collections.abc import Awaitable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Union


if sys.version_info >= (3, 11):
    from typing import TypedDict
else:
    from typing_extensions import TypedDict

from .bridge import child_key, fetch_constrained, owner_keys, parse_pivot
from .errors import UnknownRelationError
from .record import Record
from .relations import Condition, RelationDescriptor, RelationKind


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection

    from .model import Model
    from .store import Lock, Store


logger = logging.getLogger(__name__)

WithRelated = Union[
    str,
    Mapping[str, Union[Condition, None]],
    Sequence[Union[str, Mapping[str, Union[Condition, None]]]],
]


class FetchOptions(TypedDict, total=False):
    """Options accepted by every fetch-like operation."""

    transacting: AsyncConnection | None
    lock: Lock | None
    columns: Sequence[str] | None
    require: bool
    with_related: WithRelated


@dataclass(frozen=True, slots=True)
class EagerBranch:
    """One relation to load at the current level.

    ``nested`` holds the remaining paths (relative to this relation's
    target) with their filter callbacks.
    """

    name: str
    descriptor: RelationDescriptor
    condition: Condition | None = None
    nested: tuple[tuple[str, Condition | None], ...] = ()


def normalize_with_related(with_related: WithRelated | None) -> dict[str, Condition | None]:
    """Flatten every accepted ``with_related`` shape to ``{dotted name: callback}``."""
    if not with_related:
        return {}
    if isinstance(with_related, str):
        return {with_related: None}
    if isinstance(with_related, Mapping):
        return dict(with_related)

    out: dict[str, Condition | None] = {}
    for item in with_related:
        if isinstance(item, str):
            out.setdefault(item, None)
        else:
            out.update(item)

    return out


@lru_cache(maxsize=1028)
def _resolve_path(model: type[Model], dotted: str) -> tuple[RelationDescriptor, ...]:
    """Resolve ``"a.b.c"`` into the descriptors along the path.

    A ``morph_to`` segment ends the static walk: the rest of the path must
    exist on at least one of its candidates.

    Raises:
        UnknownRelationError: For the first segment not declared on its type.
    """
    parts = dotted.split(".")
    current = model
    path: list[RelationDescriptor] = []
    for i, segment in enumerate(parts):
        descriptor = current.relation(segment)
        path.append(descriptor)
        if descriptor.kind is RelationKind.MORPH_TO:
            rest = ".".join(parts[i + 1:])
            if rest and not any(_resolves(target, rest) for target, _ in descriptor.candidates):
                raise UnknownRelationError(parts[i + 1], record_type=descriptor.owner)
            break
        current = descriptor.target_model

    return tuple(path)


def _resolves(model: type[Model], dotted: str) -> bool:
    try:
        _resolve_path(model, dotted)
    except UnknownRelationError:
        return False

    return True


def parse_with_related(
    model: type[Model],
    with_related: WithRelated | Mapping[str, Condition | None] | None,
) -> tuple[EagerBranch, ...]:
    """Validate every requested path, then group them into top-level branches.

    Raises:
        UnknownRelationError: Before any I/O, if any segment of any path is
            not a relation of its record type.
    """
    items = with_related if isinstance(with_related, dict) else normalize_with_related(with_related)
    for dotted in items:
        _resolve_path(model, dotted)

    return _plan(model, items)


def _plan(model: type[Model], items: Mapping[str, Condition | None]) -> tuple[EagerBranch, ...]:
    grouped: dict[str, tuple[list[Condition | None], dict[str, Condition | None]]] = {}
    for dotted, condition in items.items():
        head, _, rest = dotted.partition(".")
        own, nested = grouped.setdefault(head, ([None], {}))
        if rest:
            if condition is not None or rest not in nested:
                nested[rest] = condition
        elif condition is not None:
            own[0] = condition

    return tuple(
        EagerBranch(
            name=head,
            descriptor=model.relation(head),
            condition=own[0],
            nested=tuple(nested.items()),
        )
        for head, (own, nested) in grouped.items()
    )


def empty_related(descriptor: RelationDescriptor, parent: Record) -> Any:
    """The value of a relation with no matching rows: an empty record or set."""
    if descriptor.kind is RelationKind.MORPH_TO and not descriptor.is_narrowed:
        return Record()

    target = descriptor.target_model
    if descriptor.is_single:
        empty = target()
        empty.related_data = descriptor
        empty.parent = parent
        return empty

    return target.collection(related_data=descriptor, parent=parent)


async def gather_branches(coros: Iterable[Awaitable[None]]) -> None:
    """Await sibling branches concurrently; the first failure cancels the rest."""
    pending = list(coros)
    if len(pending) == 1:
        await pending[0]
        return

    tasks = [asyncio.ensure_future(coro) for coro in pending]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class EagerLoader:
    """Loads a planned relation tree onto already-fetched parent records.

    The optional ``transacting`` connection is threaded through every
    branch and every nested level.
    """

    __slots__ = ("lock", "store", "transacting")

    def __init__(
        self,
        store: Store,
        *,
        transacting: AsyncConnection | None = None,
        lock: Lock | None = None,
    ) -> None:
        self.store = store
        self.transacting = transacting
        self.lock = lock

    async def load(
        self,
        parents: Sequence[Record],
        branches: Sequence[EagerBranch],
        rows: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        if not parents or not branches:
            return

        await gather_branches(self._load_branch(parents, branch, rows) for branch in branches)

    async def _load_branch(
        self,
        parents: Sequence[Record],
        branch: EagerBranch,
        rows: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        descriptor = branch.descriptor
        if descriptor.kind is RelationKind.MORPH_TO and not descriptor.is_narrowed:
            await self._load_morph_to(parents, branch)
            return

        if not owner_keys(descriptor, parents, rows):
            logger.debug("eager %r: no owner keys, skipping query", descriptor)
            for parent in parents:
                parent.relations[branch.name] = empty_related(descriptor, parent)
            return

        fetched = await fetch_constrained(
            parents,
            descriptor,
            self.store,
            transacting=self.transacting,
            lock=self.lock,
            condition=branch.condition,
            rows=rows,
        )
        target = descriptor.target_model
        children = [target.from_row(row) for row in fetched]
        if descriptor.is_joined:
            parse_pivot(children, descriptor)

        logger.debug("eager %r: %d parents -> %d rows", descriptor, len(parents), len(children))
        self._merge(parents, children, branch)

        if branch.nested and children:
            await self.load(children, _plan(target, dict(branch.nested)))

    async def _load_morph_to(self, parents: Sequence[Record], branch: EagerBranch) -> None:
        descriptor = branch.descriptor
        partitions: dict[Any, list[Record]] = defaultdict(list)
        for parent in parents:
            partitions[parent.get(descriptor.morph_type_column)].append(parent)

        pending = []
        for morph_value, group in partitions.items():
            narrowed = descriptor.morph_target(morph_value) if morph_value is not None else None
            if narrowed is None:
                logger.debug("eager %r: no candidate for type %r", descriptor, morph_value)
                for parent in group:
                    parent.relations[branch.name] = Record()
                continue

            nested = tuple(
                (dotted, condition)
                for dotted, condition in branch.nested
                if _resolves(narrowed.target_model, dotted)
            )
            pending.append(self._load_branch(group, replace(branch, descriptor=narrowed, nested=nested)))

        if pending:
            await gather_branches(pending)

    @staticmethod
    def _merge(parents: Sequence[Record], children: Sequence[Record], branch: EagerBranch) -> None:
        descriptor = branch.descriptor
        owner_key = descriptor.keys.owner_key
        grouped: dict[Any, list[Record]] = defaultdict(list)
        for child in children:
            grouped[child_key(descriptor, child)].append(child)

        for parent in parents:
            matched = grouped.get(parent.get(owner_key), [])
            if not descriptor.is_single:
                parent.relations[branch.name] = descriptor.target_model.collection(
                    matched, related_data=descriptor, parent=parent
                )
            elif matched:
                child = matched[0]
                child.related_data = descriptor
                if child.parent is None:
                    child.parent = parent
                parent.relations[branch.name] = child
            else:
                parent.relations[branch.name] = empty_related(descriptor, parent)


async def eager_load(
    parents: Sequence[Record],
    with_related: WithRelated | Sequence[EagerBranch],
    *,
    store: Store,
    model: type[Model] | None = None,
    rows: Sequence[Mapping[str, Any]] | None = None,
    transacting: AsyncConnection | None = None,
    lock: Lock | None = None,
) -> None:
    """Attach the *with_related* tree to *parents*, mutating them in place.

    Args:
        parents: Records of one type, already fetched.
        with_related: Names to load, or branches from :func:`parse_with_related`.
        store: Where the queries run.
        model: Record type of *parents*; defaults to the type of the first parent.
        rows: The raw rows *parents* were built from; owner keys are read from
            them when given.
        transacting: Connection every query (nested levels included) runs on.
        lock: Row lock applied to every query.

    Raises:
        UnknownRelationError: Before any query, for an undeclared name.
    """
    if (
        isinstance(with_related, Sequence)
        and not isinstance(with_related, str)
        and all(isinstance(branch, EagerBranch) for branch in with_related)
    ):
        branches = tuple(with_related)
    else:
        if model is None:
            if not parents:
                return
            model = type(parents[0])
        branches = parse_with_related(model, with_related)  # type: ignore[arg-type]

    loader = EagerLoader(store, transacting=transacting, lock=lock)
    await loader.load(parents, branches, rows)
