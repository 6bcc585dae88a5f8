from __future__ import annotations

from typing import Any

import pytest
import sqlalchemy as sa

from sqla_relations import ConfigurationError, Store, StoreError, attach, detach, update_pivot

from ..models import Author, Role, User, roles_users


pytestmark = pytest.mark.anyio

Seed = dict[sa.Table, list[dict[str, Any]]]


async def _join_rows(store: Store, user_id: int) -> list[dict[str, Any]]:
    return await store.fetch_all(
        sa.select(roles_users)
        .where(roles_users.c.user_id == user_id)
        .order_by(roles_users.c.role_id)
    )


class TestFetch:
    async def test_pivot_extracted(self, seed_data: Seed) -> None:
        user = await User(id=1).fetch(with_related=["roles"])

        assert user is not None
        roles = user.related("roles")
        assert sorted(roles.pluck("name")) == ["admin", "editor"]
        admin = roles.get(1)
        assert admin.pivot is not None
        assert admin.pivot.get("role") == "owner"
        assert admin.pivot.get("user_id") == 1
        assert "_pivot_role" not in admin.attributes

    async def test_each_owner_gets_its_own_rows(self, seed_data: Seed) -> None:
        users = await User.fetch_all(with_related="roles")

        by_id = {u.id: u for u in users}
        editor_for_alice = by_id[1].related("roles").get(2)
        editor_for_bob = by_id[2].related("roles").get(2)
        assert editor_for_alice is not editor_for_bob
        assert editor_for_alice.pivot.get("role") is None
        assert editor_for_bob.pivot.get("role") == "guest"
        assert len(by_id[3].related("roles")) == 0

    async def test_inverse_side(self, seed_data: Seed) -> None:
        role = await Role(id=2).fetch(with_related="users")

        assert role is not None
        assert sorted(role.related("users").pluck("name")) == ["alice", "bob"]

    async def test_with_pivot_on_set(self, seed_data: Seed) -> None:
        role = await Role(id=2).fetch()
        assert role is not None

        users = await role.related("users").with_pivot("role").fetch()

        assert users.get(2).pivot.get("role") == "guest"

    async def test_lazy_fetch(self, seed_data: Seed) -> None:
        user = await User(id=2).fetch()
        assert user is not None

        roles = await user.related("roles").fetch()

        assert roles.pluck("name") == ["editor"]
        assert roles[0].pivot.get("role") == "guest"


class TestAttach:
    async def test_attach_then_fetch_surfaces_pivot(self, seed_data: Seed) -> None:
        carol = await User(id=3).fetch()
        assert carol is not None
        editor = await Role(id=2).fetch()
        assert editor is not None

        await carol.related("roles").attach(editor, {"role": "editor"})
        assert carol.related("roles").get(2) is editor

        fresh = await User(id=3).fetch(with_related=["roles"])
        assert fresh is not None
        assert fresh.related("roles").get(2).pivot.get("role") == "editor"

    async def test_attach_many_ids(self, seed_data: Seed, store: Store) -> None:
        carol = await User(id=3).fetch()
        assert carol is not None

        await carol.related("roles").attach([1, 3])

        assert [row["role_id"] for row in await _join_rows(store, 3)] == [1, 3]

    async def test_attach_mapping_with_extra_columns(self, seed_data: Seed, store: Store) -> None:
        await attach(User(id=3), {"role_id": 1, "role": "temp"}, User.relation("roles"), store)

        assert await _join_rows(store, 3) == [{"user_id": 3, "role_id": 1, "role": "temp"}]

    async def test_duplicate_attach_is_store_error(self, seed_data: Seed) -> None:
        alice = await User(id=1).fetch()
        assert alice is not None

        with pytest.raises(StoreError) as exc_info:
            await alice.related("roles").attach(1)

        assert exc_info.value.original is not None

    async def test_attach_requires_belongs_to_many(self, seed_data: Seed, statements: list[str]) -> None:
        author = Author(id=1)
        statements.clear()

        with pytest.raises(ConfigurationError, match="belongs_to_many"):
            await author.related("books").attach(1)

        assert statements == []

    async def test_attach_before_owner_saved(self, store: Store) -> None:
        with pytest.raises(ConfigurationError, match="save it first"):
            await User(name="new").related("roles").attach(1)

    async def test_create_saves_and_attaches(self, seed_data: Seed, store: Store) -> None:
        carol = await User(id=3).fetch()
        assert carol is not None

        auditor = await carol.related("roles").create({"name": "auditor"})

        assert auditor.id is not None
        assert auditor.pivot is not None
        assert auditor.pivot.get("user_id") == 3
        assert [row["role_id"] for row in await _join_rows(store, 3)] == [auditor.id]


class TestDetach:
    async def test_detach_all(self, seed_data: Seed) -> None:
        alice = await User(id=1).fetch(with_related="roles")
        assert alice is not None

        await alice.related("roles").detach()

        assert len(alice.related("roles")) == 0
        fresh = await User(id=1).fetch(with_related="roles")
        assert fresh is not None
        assert len(fresh.related("roles")) == 0

    async def test_detach_one(self, seed_data: Seed, store: Store) -> None:
        alice = await User(id=1).fetch(with_related="roles")
        assert alice is not None

        await alice.related("roles").detach(Role(id=1))

        assert alice.related("roles").pluck("id") == [2]
        assert [row["role_id"] for row in await _join_rows(store, 1)] == [2]

    async def test_detach_nothing_matching_is_fine(self, seed_data: Seed, store: Store) -> None:
        assert await detach(User(id=3), None, User.relation("roles"), store) == 0


class TestUpdatePivot:
    async def test_update_selected_rows(self, seed_data: Seed, store: Store) -> None:
        alice = await User(id=1).fetch()
        assert alice is not None

        updated = await alice.related("roles").update_pivot({"role": "root"}, targets=[2])

        assert updated == 1
        assert [row["role"] for row in await _join_rows(store, 1)] == ["owner", "root"]

    async def test_update_with_where(self, seed_data: Seed, store: Store) -> None:
        updated = await update_pivot(
            User(id=1), {"role": "demoted"}, User.relation("roles"), store, where={"role": "owner"}
        )

        assert updated == 1
        assert [row["role"] for row in await _join_rows(store, 1)] == ["demoted", None]

    async def test_zero_rows_is_not_an_error(self, seed_data: Seed, store: Store) -> None:
        assert await update_pivot(User(id=3), {"role": "x"}, User.relation("roles"), store) == 0
