"""Tests for entity instances, references and collections."""
from __future__ import annotations

import pytest

from sqla_populate import Entity, NotLoadedError
from sqla_populate.entity import (
    changes,
    column_values,
    hydrate,
    is_managed,
    take_snapshot,
)
from tests.utils import domain


def test_new_entity() -> None:
    author = Entity(domain.Author)
    assert author.pk is None
    assert author.name is None
    assert author.entity_type is domain.Author
    assert author.books.is_initialized
    assert list(author.books) == []


def test_scalar_attributes() -> None:
    author = Entity(domain.Author)
    author.name = "Stephen King"
    assert author.name == "Stephen King"
    assert repr(author) == "Author(id=None, name='Stephen King')"


def test_unknown_attribute() -> None:
    author = Entity(domain.Author)
    with pytest.raises(AttributeError):
        _ = author.publisher
    with pytest.raises(AttributeError):
        author.publisher = "Scribner"


def test_reference_updates_inverse_collection() -> None:
    king, rowling = Entity(domain.Author), Entity(domain.Author)
    fan = Entity(domain.Fan)

    fan.favorite_author = king
    assert fan.favorite_author.get() is king
    assert list(king.fans) == [fan]

    fan.favorite_author = rowling
    assert list(king.fans) == []
    assert list(rowling.fans) == [fan]

    fan.favorite_author = None
    assert fan.favorite_author.get() is None
    assert len(rowling.fans) == 0


def test_reference_type_check() -> None:
    fan = Entity(domain.Fan)
    with pytest.raises(TypeError):
        fan.favorite_author = Entity(domain.Book)


def test_reference_by_key() -> None:
    fan = Entity(domain.Fan)
    fan.favorite_author = 7
    assert fan.favorite_author.key == 7
    assert fan.favorite_author.is_set
    assert not fan.favorite_author.is_resolved
    with pytest.raises(NotLoadedError):
        fan.favorite_author.get()


def test_reference_key_follows_entity() -> None:
    author = Entity(domain.Author)
    book = Entity(domain.Book)
    book.author = author
    assert book.author.key is None
    author.id = 3
    assert book.author.key == 3


def test_collection_add_and_remove() -> None:
    author = Entity(domain.Author)
    first, second = Entity(domain.Book), Entity(domain.Book)

    author.books.add(first, second, first)
    assert author.books.items() == [first, second]
    assert first.author.get() is author
    assert first in author.books
    assert author.books[1] is second

    author.books.remove(first)
    assert author.books.items() == [second]
    assert first.author.get() is None


def test_collection_assignment_replaces_contents() -> None:
    author = Entity(domain.Author)
    first, second = Entity(domain.Book), Entity(domain.Book)
    author.books.add(first)

    author.books = [second]

    assert author.books.items() == [second]
    assert first.author.get() is None
    assert second.author.get() is author


def test_hydrated_entity() -> None:
    fan = hydrate(domain.Fan, {"id": 1, "name": "David", "favorite_author_id": 4})
    assert fan.pk == 1
    assert fan.name == "David"
    assert fan.favorite_author.key == 4
    assert not fan.favorite_author.is_resolved

    author = hydrate(domain.Author, {"id": 4, "name": "Stephen King"})
    assert not author.fans.is_initialized
    with pytest.raises(NotLoadedError):
        list(author.fans)
    with pytest.raises(NotLoadedError):
        len(author.books)
    with pytest.raises(NotLoadedError):
        author.books.add(Entity(domain.Book))


def test_collection_hydrate_deduplicates() -> None:
    author = hydrate(domain.Author, {"id": 4, "name": "Stephen King"})
    book = Entity(domain.Book)
    author.books.hydrate([book, book])
    assert author.books.is_initialized
    assert author.books.items() == [book]


def test_column_values() -> None:
    author = hydrate(domain.Author, {"id": 4, "name": "Stephen King"})
    book = Entity(domain.Book)
    book.title = "It"
    book.author = author
    assert column_values(book) == {"id": None, "title": "It", "deleted_at": None, "author_id": 4}


def test_changes_against_snapshot() -> None:
    book = hydrate(domain.Book, {"id": 1, "title": "It", "deleted_at": None, "author_id": 4})
    assert not is_managed(book)
    take_snapshot(book)
    assert is_managed(book)
    assert changes(book) == {}

    book.title = "Carrie"
    book.author = 5
    assert changes(book) == {"title": "Carrie", "author_id": 5}
