"""Basic sqla-relations usage examples.

Demonstrates binding a store, lazy and eager relation loading, branch
conditions, join-table writes and lifecycle hooks.

NOTE: This file is illustrative; it won't run standalone
without a database and seeded data.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy.ext.asyncio import create_async_engine

from sqla_relations import Phase, RecordSet, add_conditions

from .models import Base, Comment, Post, Role, Tag, User


# ── 1. Bind once at startup ──────────────────────────────────────────

engine = create_async_engine("sqlite+aiosqlite:///:memory:")


async def setup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    Base.bind(engine)


# ── 2. Fetching records ─────────────────────────────────────────────


async def get_user(user_id: int) -> User:
    user = await User(id=user_id).fetch(require=True)
    assert user is not None
    return user


async def get_users_named(name: str) -> RecordSet[User]:
    return await User.where(name=name).fetch()


# ── 3. Eager loading: one query per relation level ──────────────────


async def get_users_with_posts_and_comments() -> RecordSet[User]:
    # users, posts of all users, comments of all posts: 3 statements
    return await User.fetch_all(with_related=["posts.comments", "roles"])


async def get_users_with_senior_roles() -> RecordSet[User]:
    roles = Role.__table__
    return await User.fetch_all(
        with_related={"roles": add_conditions(roles.c.level > 3)},  # noqa: PLR2004
    )


# ── 4. Lazy relation access ─────────────────────────────────────────


async def get_latest_posts(user: User) -> RecordSet[Post]:
    posts = Post.__table__
    return await user.related("posts").query(lambda q: q.order_by(posts.c.id.desc()).limit(5)).fetch()


async def count_comments_on_user_posts(user: User) -> int:
    # has_many through Post
    return await user.related("comments").count()


# ── 5. Polymorphic relations ────────────────────────────────────────


async def get_tags_with_owner() -> RecordSet[Tag]:
    # one query for tags, then one per taggable type present
    return await Tag.fetch_all(with_related="taggable")


async def tag_comment(comment: Comment, label: str) -> Tag:
    return await comment.related("tags").create({"label": label})


# ── 6. Join-table writes ────────────────────────────────────────────


async def grant(user: User, role_ids: list[int], granted_by: str) -> None:
    await user.related("roles").attach(role_ids, {"granted_by": granted_by})


async def revoke_all(user: User) -> None:
    await user.related("roles").detach()


# ── 7. Hooks ────────────────────────────────────────────────────────


@Post.on(Phase.SAVING)
def strip_title(post: Post, options: Mapping[str, Any]) -> None:
    if post.has("title"):
        post.set("title", post.get("title").strip())
