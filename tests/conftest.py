from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from sqla_relations import Store, relations_cache_clear

from .models import (
    Appointment,
    Author,
    Base,
    Book,
    Chapter,
    Doctor,
    Paragraph,
    Patient,
    Photo,
    Post,
    Review,
    Role,
    Site,
    User,
    roles_users,
)


pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
def store(connection: AsyncConnection) -> Iterator[Store]:
    bound = Base.bind(connection)
    assert bound is not None
    yield bound
    Base.bind(None)


@pytest.fixture
def statements(engine: AsyncEngine) -> Iterator[list[str]]:
    """SQL text of every statement sent to the database while the test runs."""
    captured: list[str] = []

    def _capture(conn: Any, cursor: Any, statement: str, *args: Any) -> None:
        captured.append(statement)

    sa.event.listen(engine.sync_engine, "before_cursor_execute", _capture)
    yield captured
    sa.event.remove(engine.sync_engine, "before_cursor_execute", _capture)


SEED: dict[sa.Table, list[dict[str, Any]]] = {
    Author.__table__: [
        {"id": 1, "name": "Ursula"},
        {"id": 2, "name": "Terry"},
        {"id": 3, "name": "Nobody"},
    ],
    Book.__table__: [
        {"id": 1, "title": "A Wizard of Earthsea", "author_id": 1},
        {"id": 2, "title": "The Lathe of Heaven", "author_id": 1},
        {"id": 3, "title": "Mort", "author_id": 2},
    ],
    Review.__table__: [
        {"id": 1, "book_id": 1, "stars": 5},
        {"id": 2, "book_id": 1, "stars": 3},
        {"id": 3, "book_id": 3, "stars": 4},
    ],
    Chapter.__table__: [
        {"id": 1, "book_id": 1, "title": "Warriors in the Mist"},
        {"id": 2, "book_id": 1, "title": "The Shadow"},
        {"id": 3, "book_id": 3, "title": "Death's Apprentice"},
    ],
    Paragraph.__table__: [
        {"id": 1, "chapter_id": 1, "body": "The island of Gont"},
        {"id": 2, "chapter_id": 1, "body": "a single mountain"},
        {"id": 3, "chapter_id": 2, "body": "Ged was thirteen"},
        {"id": 4, "chapter_id": 3, "body": "This is the bright candlelit room"},
    ],
    User.__table__: [
        {"id": 1, "name": "alice"},
        {"id": 2, "name": "bob"},
        {"id": 3, "name": "carol"},
    ],
    Role.__table__: [
        {"id": 1, "name": "admin"},
        {"id": 2, "name": "editor"},
        {"id": 3, "name": "viewer"},
    ],
    roles_users: [
        {"user_id": 1, "role_id": 1, "role": "owner"},
        {"user_id": 1, "role_id": 2, "role": None},
        {"user_id": 2, "role_id": 2, "role": "guest"},
    ],
    Site.__table__: [
        {"id": 1, "name": "docs"},
        {"id": 2, "name": "blog"},
    ],
    Post.__table__: [
        {"id": 1, "title": "Hello"},
        {"id": 2, "title": "Goodbye"},
    ],
    Photo.__table__: [
        {"id": 1, "url": "site-1-a.png", "imageable_type": "site", "imageable_id": 1},
        {"id": 2, "url": "site-1-b.png", "imageable_type": "site", "imageable_id": 1},
        {"id": 3, "url": "post-1.png", "imageable_type": "post", "imageable_id": 1},
        {"id": 4, "url": "ursula.png", "imageable_type": "authors", "imageable_id": 1},
        {"id": 5, "url": "stray.png", "imageable_type": "galaxy", "imageable_id": 9},
    ],
    Doctor.__table__: [
        {"id": 1, "name": "House"},
        {"id": 2, "name": "Grey"},
    ],
    Patient.__table__: [
        {"id": 1, "name": "Ann"},
        {"id": 2, "name": "Ben"},
    ],
    Appointment.__table__: [
        {"id": 1, "doctor_id": 1, "patient_id": 1, "slot": "mon"},
        {"id": 2, "doctor_id": 1, "patient_id": 2, "slot": "tue"},
        {"id": 3, "doctor_id": 2, "patient_id": 2, "slot": "wed"},
    ],
}


@pytest.fixture
async def seed_data(connection: AsyncConnection, store: Store) -> dict[sa.Table, list[dict[str, Any]]]:
    for table, rows in SEED.items():
        await connection.execute(table.insert().values(rows))

    if connection.dialect.name == "postgresql":
        for table in SEED:
            if "id" in table.c:
                await connection.execute(
                    sa.text(
                        f"SELECT setval(pg_get_serial_sequence('{table.name}', 'id'), "
                        f"(SELECT max(id) FROM {table.name}))"
                    )
                )

    return SEED


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    relations_cache_clear()
