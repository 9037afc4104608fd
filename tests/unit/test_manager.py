"""Tests for the entity manager."""
from __future__ import annotations

from datetime import datetime

import pytest

from sqla_populate import (
    ORM,
    Entity,
    EntityManager,
    EntityValidationError,
    MetadataError,
    NotFoundError,
    QueryError,
)
from tests.utils import domain


def test_create_by_type_name(em: EntityManager) -> None:
    author = em.create("Author", {"name": "Stephen King"})
    assert author.entity_type is domain.Author
    assert em.unit_of_work.pending == (author,)


def test_create_without_persist(em: EntityManager) -> None:
    author = em.create(domain.Author, {"name": "Stephen King"}, persist=False)
    assert em.unit_of_work.pending == ()
    assert em.persist(author) is author
    assert em.unit_of_work.pending == (author,)


def test_create_with_collection(em: EntityManager) -> None:
    book = em.create(domain.Book, {"author": 1, "title": "It"}, persist=False)
    author = em.create(domain.Author, {"name": "Stephen King", "books": [book]})
    assert list(author.books) == [book]
    assert book.author.get() is author


@pytest.mark.parametrize(
    "fields",
    [
        {},
        {"name": None},
        {"name": "Stephen King", "publisher": "Scribner"},
        {"name": "Stephen King", "books": ["It"]},
    ],
)
def test_create_validation(em: EntityManager, fields: dict) -> None:
    with pytest.raises(EntityValidationError):
        em.create(domain.Author, fields)
    assert em.unit_of_work.pending == ()


def test_create_reference_validation(em: EntityManager) -> None:
    with pytest.raises(EntityValidationError):
        em.create(domain.Fan, {"name": "David", "favorite_author": "Stephen King"})
    book = em.create(domain.Book, {"author": 1, "title": "It"}, persist=False)
    with pytest.raises(EntityValidationError):
        em.create(domain.Fan, {"name": "David", "favorite_author": book})


def test_create_unregistered_type(em: EntityManager) -> None:
    with pytest.raises(MetadataError):
        em.create("Publisher", {})


def test_find_one(em: EntityManager, author: Entity) -> None:
    found = em.find_one(domain.Author, {"name": "Stephen King"})
    assert found is not None
    assert found.pk == author.pk
    assert em.find_one(domain.Author, {"name": "Richard Bachman"}) is None
    with pytest.raises(NotFoundError):
        em.find_one_or_fail(domain.Author, {"name": "Richard Bachman"})


def test_find_returns_tracked_instances(em: EntityManager, author: Entity) -> None:
    first = em.find_one_or_fail(domain.Author, {"id": author.pk})
    first.name = "Richard Bachman"
    second = em.find_one_or_fail(domain.Author, {"id": author.pk})
    assert second is first
    assert second.name == "Richard Bachman"


def test_get(em: EntityManager, author: Entity, statements: list[str]) -> None:
    loaded = em.get(domain.Author, author.pk)
    assert loaded is not None
    assert em.get("Author", author.pk) is loaded
    assert len(statements) == 1
    assert em.get(domain.Author, 999) is None


def test_count(em: EntityManager, author: Entity) -> None:
    assert em.count(domain.Fan) == 2
    assert em.count("Fan", {"name": "David"}) == 1


def test_find_and_count_pages(em: EntityManager, author: Entity) -> None:
    page, total = em.find_and_count(domain.Book, limit=1, offset=1)
    assert [book.title for book in page] == ["Book 2"]
    assert total == 2


def test_find_by_type_name_with_string_path(em: EntityManager, author: Entity) -> None:
    (loaded,) = em.find("Author", populate="books")
    assert len(loaded.books) == 2


def test_clear(em: EntityManager, author: Entity) -> None:
    first = em.find_one_or_fail(domain.Author, {"id": author.pk})
    em.create(domain.Author, {"name": "Richard Bachman"})

    em.clear()

    assert len(em.identity_map) == 0
    assert em.unit_of_work.pending == ()
    assert em.find_one_or_fail(domain.Author, {"id": author.pk}) is not first


def test_fork(em: EntityManager, author: Entity) -> None:
    loaded = em.find_one_or_fail(domain.Author, {"id": author.pk})
    forked = em.fork()
    assert forked.engine is em.engine
    assert len(forked.identity_map) == 0
    assert forked.find_one_or_fail(domain.Author, {"id": author.pk}) is not loaded


def test_populate_mixed_types(em: EntityManager, author: Entity) -> None:
    entities = [*em.find(domain.Fan), *em.find(domain.Book)]
    with pytest.raises(QueryError):
        em.populate(entities, ["favorite_author"])


def test_populate_nothing(em: EntityManager) -> None:
    assert em.populate([], ["favorite_author"]) == []


def test_orm_context_manager() -> None:
    with ORM(domain.registry, url="sqlite://") as orm:
        orm.schema.create_schema()
        orm.em.create(domain.Author, {"name": "Stephen King"})
        orm.em.flush()
        assert orm.em.count(domain.Author) == 1


def test_get_applies_filters(em: EntityManager, author: Entity) -> None:
    book = em.find_one_or_fail(domain.Book, {"title": "Book 1"})
    book.deleted_at = datetime(2022, 1, 1)
    em.flush()

    assert em.get(domain.Book, book.pk) is None
    assert em.get(domain.Book, book.pk, filters={"soft-delete": False}) is book
    em.clear()
    assert em.get(domain.Book, book.pk) is None
