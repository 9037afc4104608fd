"""Tests for the entity registry and descriptors."""
from __future__ import annotations

from datetime import datetime

import pytest

from sqla_populate import (
    EntityRegistry,
    EntityType,
    Field,
    ManyToOne,
    MetadataError,
    NotFoundError,
    OneToMany,
    PrimaryKey,
)
from sqla_populate.metadata import MISSING
from tests.utils import domain


def _parent_child() -> tuple[EntityType, EntityType]:
    parent = EntityType(
        "Parent",
        fields=[Field("name", str)],
        relations=[OneToMany("children", "Child", inverse="parent")],
    )
    child = EntityType(
        "Child",
        fields=[Field("name", str)],
        relations=[ManyToOne("parent", "Parent", inverse="children")],
    )
    return parent, child


def test_table_name_is_snake_case() -> None:
    assert EntityType("BookReview").table_name == "book_review"
    assert EntityType("BookReview", table_name="reviews").table_name == "reviews"


def test_duplicate_field_name() -> None:
    with pytest.raises(MetadataError):
        EntityType("Author", fields=[Field("name", str), Field("name", str)])


def test_field_named_like_primary_key() -> None:
    with pytest.raises(MetadataError):
        EntityType("Author", fields=[Field("id", int)])


@pytest.mark.parametrize("name", ["pk", "entity_type", "_private"])
def test_reserved_field_names(name: str) -> None:
    with pytest.raises(MetadataError):
        EntityType("Author", fields=[Field(name, str)])


def test_one_to_many_needs_inverse() -> None:
    with pytest.raises(MetadataError):
        OneToMany("books", "Book")


def test_many_to_one_column_name() -> None:
    assert ManyToOne("favorite_author", "Author").column_name == "favorite_author_id"
    assert ManyToOne("author", "Author", column_name="writer").column_name == "writer"


def test_field_defaults() -> None:
    assert Field("name", str).required
    assert Field("name", str).get_default() is MISSING
    assert not Field("deleted_at", datetime, nullable=True).required
    assert Field("deleted_at", datetime, nullable=True).get_default() is None
    assert Field("tags", list, default_factory=list).get_default() == []
    assert Field("score", int, default=3).get_default() == 3


def test_primary_key_auto() -> None:
    assert PrimaryKey().auto
    assert not PrimaryKey("code", str).auto
    assert not PrimaryKey("id", int, autoincrement=False).auto


def test_relation_lookup() -> None:
    assert domain.Fan.relation("favorite_author").target == "Author"
    with pytest.raises(NotFoundError):
        domain.Fan.relation("books")


def test_registry_lookup() -> None:
    assert domain.registry.get("Book") is domain.Book
    assert domain.registry.get(domain.Book) is domain.Book
    assert domain.Book in domain.registry
    assert len(domain.registry) == 3
    with pytest.raises(MetadataError):
        domain.registry.get("Publisher")


def test_register_twice() -> None:
    parent, child = _parent_child()
    registry = EntityRegistry([parent, child])
    with pytest.raises(MetadataError):
        registry.register(parent)
    with pytest.raises(MetadataError):
        EntityRegistry([parent])


def test_unregistered_type_has_no_registry() -> None:
    with pytest.raises(MetadataError):
        _ = EntityType("Loose").registry


def test_finalize_unknown_target() -> None:
    orphan = EntityType("Orphan", relations=[ManyToOne("parent", "Parent")])
    registry = EntityRegistry([orphan])
    with pytest.raises(MetadataError, match="unknown type 'Parent'"):
        registry.finalize()


def test_finalize_inverse_mismatch() -> None:
    parent = EntityType(
        "Parent", relations=[OneToMany("children", "Child", inverse="owner")]
    )
    child = EntityType("Child", relations=[ManyToOne("parent", "Parent", inverse="children")])
    registry = EntityRegistry([parent, child])
    with pytest.raises(MetadataError):
        registry.finalize()


def test_register_after_finalize() -> None:
    parent, child = _parent_child()
    registry = EntityRegistry([parent, child])
    registry.finalize()
    with pytest.raises(MetadataError):
        registry.register(EntityType("Late"))


def test_unsupported_python_type() -> None:
    registry = EntityRegistry([EntityType("Blob", fields=[Field("payload", object)])])
    with pytest.raises(MetadataError):
        registry.finalize()


def test_tables() -> None:
    domain.registry.finalize()
    fans = domain.registry.table(domain.Fan)
    assert fans.name == "fan"
    assert list(fans.c.keys()) == ["id", "name", "favorite_author_id"]
    assert not fans.c.favorite_author_id.nullable
    (foreign_key,) = fans.c.favorite_author_id.foreign_keys
    assert foreign_key.target_fullname == "author.id"
    books = domain.registry.table("Book")
    assert books.c.deleted_at.nullable
    assert not books.c.title.nullable
    assert "books" not in domain.registry.table(domain.Author).c


def test_dependencies() -> None:
    assert domain.registry.dependencies(domain.Fan) == {"Author"}
    assert domain.registry.dependencies(domain.Author) == set()
