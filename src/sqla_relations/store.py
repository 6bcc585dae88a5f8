"""Async execution of SQLAlchemy Core statements.

The :class:`Store` is the only place statements are executed.  Everything
above it builds immutable ``sa.Select``/``sa.Insert``/``sa.Update``/``sa.Delete``
values; the store runs them and hands back flat rows.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any, Literal

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .errors import StoreError


logger = logging.getLogger(__name__)

Lock = Literal["for_update", "for_share"]


class Store:
    """Executes statements against an ``AsyncEngine`` or a single ``AsyncConnection``.

    A caller-supplied ``transacting`` connection is always used as-is: the
    store never begins, commits or rolls back on it.  Statements that share a
    connection are serialized, so concurrently scheduled eager branches can
    safely use one transaction handle.  An engine-bound store without
    ``transacting`` runs each statement in its own ``engine.begin()`` block.
    """

    __slots__ = ("_bind", "_locks")

    def __init__(self, bind: AsyncEngine | AsyncConnection) -> None:
        self._bind = bind
        self._locks: weakref.WeakKeyDictionary[AsyncConnection, asyncio.Lock] = (
            weakref.WeakKeyDictionary()
        )

    @property
    def bind(self) -> AsyncEngine | AsyncConnection:
        return self._bind

    @asynccontextmanager
    async def connection(
        self, transacting: AsyncConnection | None = None
    ) -> AsyncIterator[AsyncConnection]:
        """Yield the connection a statement should run on."""
        conn = transacting
        if conn is None and isinstance(self._bind, AsyncConnection):
            conn = self._bind

        if conn is not None:
            lock = self._locks.get(conn)
            if lock is None:
                lock = self._locks[conn] = asyncio.Lock()
            async with lock:
                yield conn
            return

        assert isinstance(self._bind, AsyncEngine)
        async with self._bind.begin() as owned:
            yield owned

    async def execute(
        self,
        statement: sa.Executable,
        *,
        transacting: AsyncConnection | None = None,
    ) -> sa.CursorResult[Any]:
        try:
            async with self.connection(transacting) as conn:
                return await conn.execute(statement)
        except sa_exc.SQLAlchemyError as e:
            raise StoreError(f"Statement failed: {e}", original=e) from e

    async def fetch_all(
        self,
        statement: sa.Select[Any],
        *,
        transacting: AsyncConnection | None = None,
        lock: Lock | None = None,
    ) -> list[dict[str, Any]]:
        """Run a SELECT and return its rows as ordered column -> value dicts."""
        if lock is not None:
            statement = statement.with_for_update(read=lock == "for_share")

        logger.debug("select: %s", statement)
        try:
            async with self.connection(transacting) as conn:
                result = await conn.execute(statement)
                rows = [dict(row) for row in result.mappings().all()]
        except sa_exc.SQLAlchemyError as e:
            raise StoreError(f"Select failed: {e}", original=e) from e

        return rows

    async def insert(
        self,
        table: sa.TableClause,
        values: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        *,
        transacting: AsyncConnection | None = None,
    ) -> list[Any]:
        """Insert one or many rows; returns the generated identity of a single-row insert."""
        many = not isinstance(values, Mapping)
        logger.debug("insert into %s (%d rows)", table.name, len(values) if many else 1)

        result = await self.execute(
            sa.insert(table).values(list(values) if many else dict(values)),
            transacting=transacting,
        )
        if many:
            return []

        pk = result.inserted_primary_key
        return list(pk) if pk is not None else []

    async def update(
        self,
        statement: sa.Update,
        *,
        transacting: AsyncConnection | None = None,
    ) -> int:
        """Run an UPDATE and return the number of affected rows."""
        logger.debug("update: %s", statement)
        result = await self.execute(statement, transacting=transacting)
        return result.rowcount

    async def delete(
        self,
        statement: sa.Delete,
        *,
        transacting: AsyncConnection | None = None,
    ) -> int:
        """Run a DELETE and return the number of affected rows."""
        logger.debug("delete: %s", statement)
        result = await self.execute(statement, transacting=transacting)
        return result.rowcount

    async def count(
        self,
        statement: sa.Select[Any],
        column: str | None = None,
        *,
        transacting: AsyncConnection | None = None,
    ) -> int:
        """Count the rows *statement* would return (non-null *column* values if given)."""
        subq = statement.subquery()
        counted = sa.func.count(subq.c[column]) if column else sa.func.count()
        try:
            async with self.connection(transacting) as conn:
                value = (await conn.execute(sa.select(counted).select_from(subq))).scalar_one()
        except sa_exc.SQLAlchemyError as e:
            raise StoreError(f"Count failed: {e}", original=e) from e

        return int(value)
