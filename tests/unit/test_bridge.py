from __future__ import annotations

import pytest
import sqlalchemy as sa

from sqla_relations import (
    ConfigurationError,
    Record,
    constrain_for_fetch,
    constrain_for_write,
    parse_pivot,
)
from sqla_relations.bridge import child_key, owner_keys

from ..models import Appointment, Author, Book, Doctor, Paragraph, Patient, Photo, Post, Role, Site, User


def _sql(query: sa.Select) -> str:
    return " ".join(str(query.compile(compile_kwargs={"literal_binds": True})).split())


class TestConstrainForFetch:
    def test_single_owner_uses_equality(self) -> None:
        sql = _sql(constrain_for_fetch(Author(id=1), Author.relation("books")))

        assert "books.author_id = 1" in sql
        assert " IN " not in sql

    def test_owner_set_uses_in(self) -> None:
        owners = [Author(id=1), Author(id=2), Author(id=1)]
        sql = _sql(constrain_for_fetch(owners, Author.relation("books")))

        assert "books.author_id IN (1, 2)" in sql

    def test_single_valued_relation_limited(self) -> None:
        sql = _sql(constrain_for_fetch(Author(id=1), Author.relation("first_book")))

        assert "LIMIT 1" in sql

    def test_owner_without_key_matches_nothing(self) -> None:
        sql = _sql(constrain_for_fetch(Book(title="draft"), Book.relation("author")))

        assert "false" in sql.lower() or "0 = 1" in sql or "1 != 1" in sql

    def test_columns_selection(self) -> None:
        sql = _sql(constrain_for_fetch(Author(id=1), Author.relation("books"), columns=["id", "title"]))

        assert sql.startswith("SELECT books.id, books.title FROM books")

    def test_belongs_to_many_joins_and_prefixes_pivot(self) -> None:
        sql = _sql(constrain_for_fetch([User(id=1)], User.relation("roles")))

        assert "JOIN roles_users ON roles_users.role_id = roles.id" in sql
        assert "roles_users.user_id AS _pivot_user_id" in sql
        assert "roles_users.role AS _pivot_role" in sql
        assert "roles_users.user_id IN (1)" in sql

    def test_has_many_through_two_hop_join(self) -> None:
        sql = _sql(constrain_for_fetch([Book(id=1)], Book.relation("paragraphs")))

        assert "JOIN chapters ON chapters.id = paragraphs.chapter_id" in sql
        assert "chapters.book_id IN (1)" in sql

    def test_belongs_to_through_filters_interim(self) -> None:
        sql = _sql(constrain_for_fetch([Paragraph(id=1, chapter_id=7)], Paragraph.relation("book")))

        assert "JOIN chapters ON chapters.book_id = books.id" in sql
        assert "chapters.id IN (7)" in sql

    def test_morph_many_filters_type_and_id(self) -> None:
        sql = _sql(constrain_for_fetch([Site(id=1), Site(id=2)], Site.relation("photos")))

        assert "photos.imageable_type = 'site'" in sql
        assert "photos.imageable_id IN (1, 2)" in sql

    def test_narrowed_morph_to(self) -> None:
        narrowed = Photo.relation("imageable").morph_target("post")
        assert narrowed is not None

        sql = _sql(constrain_for_fetch(Photo(id=3, imageable_type="post", imageable_id=1), narrowed))

        assert "FROM posts" in sql
        assert "posts.id = 1" in sql

    def test_unnarrowed_morph_to_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="morph_target"):
            constrain_for_fetch(Photo(id=1), Photo.relation("imageable"))

    def test_statements_are_independent_values(self) -> None:
        descriptor = Author.relation("books")
        first = constrain_for_fetch(Author(id=1), descriptor)
        second = constrain_for_fetch(Author(id=2), descriptor)

        assert "books.author_id = 1" in _sql(first)
        assert "books.author_id = 2" in _sql(second)


class TestOwnerKeys:
    def test_skips_nulls_and_duplicates(self) -> None:
        owners = [Author(id=2), Author(), Author(id=2), Author(id=1)]

        assert owner_keys(Author.relation("books"), owners) == [2, 1]

    def test_reads_rows_when_given(self) -> None:
        rows = [{"id": 5}, {"id": 6}]

        assert owner_keys(Author.relation("books"), [Author(id=1)], rows) == [5, 6]


class TestConstrainForWrite:
    def test_sets_foreign_key(self) -> None:
        book = constrain_for_write(Book(title="new"), Author.relation("books"), Author(id=4))

        assert book.get("author_id") == 4

    def test_sets_morph_type_and_id(self) -> None:
        photo = constrain_for_write(Photo(url="x"), Post.relation("photos"), Post(id=2))

        assert photo.get("imageable_id") == 2
        assert photo.get("imageable_type") == "post"

    def test_owner_without_identity(self) -> None:
        with pytest.raises(ConfigurationError, match="no 'id' yet"):
            constrain_for_write(Book(title="new"), Author.relation("books"), Author(name="new"))

    @pytest.mark.parametrize(
        ("model", "name"),
        [(Book, "author"), (User, "roles"), (Book, "paragraphs"), (Photo, "imageable")],
    )
    def test_noop_kinds(self, model: type, name: str) -> None:
        record = Record({"x": 1})

        assert constrain_for_write(record, model.relation(name), model(id=1)).attributes == {"x": 1}


class TestParsePivot:
    def test_splits_prefixed_attributes(self) -> None:
        role = Role({"id": 2, "name": "editor", "_pivot_user_id": 1, "_pivot_role": "owner"})
        parse_pivot([role], User.relation("roles"))

        assert role.attributes == {"id": 2, "name": "editor"}
        assert role.pivot is not None
        assert role.pivot.attributes == {"user_id": 1, "role": "owner"}
        assert role.pivot.table_name == "roles_users"

    def test_idempotent(self) -> None:
        role = Role({"id": 2, "name": "editor", "_pivot_user_id": 1, "_pivot_role_id": 2})
        descriptor = User.relation("roles")
        parse_pivot([role], descriptor)
        pivot = role.pivot
        parse_pivot([role], descriptor)

        assert role.pivot is pivot
        assert role.attributes == {"id": 2, "name": "editor"}
        assert role.pivot is not None
        assert role.pivot.attributes == {"user_id": 1, "role_id": 2}

    def test_through_pivot_is_interim_record(self) -> None:
        patient = Patient({"id": 1, "name": "Ann", "_pivot_id": 9, "_pivot_doctor_id": 1})
        parse_pivot([patient], Doctor.relation("patients"))

        assert isinstance(patient.pivot, Appointment)
        assert patient.pivot.id == 9

    def test_child_key_read_from_pivot(self) -> None:
        role = Role({"id": 2, "_pivot_user_id": 1})
        descriptor = User.relation("roles")
        parse_pivot([role], descriptor)

        assert child_key(descriptor, role) == 1
