from __future__ import annotations

import sqlalchemy as sa

from sqla_relations import (
    Model,
    belongs_to,
    belongs_to_many,
    has_many,
    has_one,
    morph_many,
    morph_one,
    morph_to,
)


class Base(Model):
    __abstract__ = True


# join table without a record type of its own: resolved from Base.metadata
roles_users = sa.Table(
    "roles_users",
    Base.metadata,
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), primary_key=True),
    sa.Column("role_id", sa.Integer, sa.ForeignKey("roles.id"), primary_key=True),
    sa.Column("role", sa.String(50), nullable=True),
)


class Author(Base):
    __table__ = sa.Table(
        "authors",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
    )

    books = has_many("Book")
    first_book = has_one("Book")
    avatar = morph_one("Photo", "imageable")


class Book(Base):
    __table__ = sa.Table(
        "books",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("author_id", sa.Integer, sa.ForeignKey("authors.id"), nullable=True),
    )

    author = belongs_to("Author")
    reviews = has_many("Review")
    chapters = has_many("Chapter")
    paragraphs = has_many("Paragraph").through("Chapter")


class Review(Base):
    __table__ = sa.Table(
        "reviews",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("book_id", sa.Integer, sa.ForeignKey("books.id"), nullable=False),
        sa.Column("stars", sa.Integer, nullable=False),
    )

    book = belongs_to("Book")


class Chapter(Base):
    __table__ = sa.Table(
        "chapters",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("book_id", sa.Integer, sa.ForeignKey("books.id"), nullable=False),
        sa.Column("title", sa.String(100), nullable=False),
    )

    book = belongs_to("Book")
    paragraphs = has_many("Paragraph")


class Paragraph(Base):
    __table__ = sa.Table(
        "paragraphs",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("chapter_id", sa.Integer, sa.ForeignKey("chapters.id"), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
    )

    chapter = belongs_to("Chapter")
    book = belongs_to("Book").through("Chapter")


class User(Base):
    __table__ = sa.Table(
        "users",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
    )

    roles = belongs_to_many("Role").with_pivot("role")


class Role(Base):
    __table__ = sa.Table(
        "roles",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(50), nullable=False),
    )

    users = belongs_to_many("User")


class Site(Base):
    __table__ = sa.Table(
        "sites",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
    )

    photos = morph_many("Photo", "imageable", morph_value="site")


class Post(Base):
    __table__ = sa.Table(
        "posts",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
    )

    photos = morph_many("Photo", "imageable", morph_value="post")
    cover = morph_one("Photo", "imageable", morph_value="post")


class Photo(Base):
    __table__ = sa.Table(
        "photos",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("url", sa.String(200), nullable=False),
        sa.Column("imageable_type", sa.String(50), nullable=True),
        sa.Column("imageable_id", sa.Integer, nullable=True),
    )

    imageable = morph_to("imageable", ("Site", "site"), ("Post", "post"), "Author")


class Doctor(Base):
    __table__ = sa.Table(
        "doctors",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
    )

    appointments = has_many("Appointment")
    patients = belongs_to_many("Patient").through("Appointment")


class Patient(Base):
    __table__ = sa.Table(
        "patients",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
    )

    doctors = belongs_to_many("Doctor").through("Appointment")


class Appointment(Base):
    __table__ = sa.Table(
        "appointments",
        Base.metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("doctor_id", sa.Integer, sa.ForeignKey("doctors.id"), nullable=False),
        sa.Column("patient_id", sa.Integer, sa.ForeignKey("patients.id"), nullable=False),
        sa.Column("slot", sa.String(20), nullable=False),
    )

    doctor = belongs_to("Doctor")
    patient = belongs_to("Patient")
