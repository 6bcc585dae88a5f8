"""Minimal record types for sqla-relations examples."""

from __future__ import annotations

import sqlalchemy as sa

from sqla_relations import (
    Model,
    belongs_to,
    belongs_to_many,
    has_many,
    morph_many,
    morph_to,
)


class Base(Model):
    __abstract__ = True


user_roles = sa.Table(
    "roles_users",
    Base.metadata,
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), primary_key=True),
    sa.Column("role_id", sa.Integer, sa.ForeignKey("roles.id"), primary_key=True),
    sa.Column("granted_by", sa.String(100), nullable=True),
)


class User(Base):
    __table__ = sa.Table(
        "users",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
    )

    posts = has_many("Post")
    roles = belongs_to_many("Role").with_pivot("granted_by")
    comments = has_many("Comment").through("Post")


class Role(Base):
    __table__ = sa.Table(
        "roles",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("level", sa.Integer, default=0),
    )

    users = belongs_to_many("User")


class Post(Base):
    __table__ = sa.Table(
        "posts",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    )

    user = belongs_to("User")
    comments = has_many("Comment")
    tags = morph_many("Tag", "taggable", morph_value="post")


class Comment(Base):
    __table__ = sa.Table(
        "comments",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("text", sa.Text, nullable=False),
        sa.Column("post_id", sa.Integer, sa.ForeignKey("posts.id"), nullable=False),
    )

    post = belongs_to("Post")
    tags = morph_many("Tag", "taggable", morph_value="comment")


class Tag(Base):
    __table__ = sa.Table(
        "tags",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("label", sa.String(50), nullable=False),
        sa.Column("taggable_type", sa.String(50), nullable=False),
        sa.Column("taggable_id", sa.Integer, nullable=False),
    )

    taggable = morph_to("taggable", ("Post", "post"), ("Comment", "comment"))
