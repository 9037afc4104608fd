"""Tests for condition compilation and the query executor."""
from __future__ import annotations

from typing import Any

import pytest

from sqla_populate import Entity, EntityManager, QueryError
from sqla_populate.query import compile_condition
from tests.utils import domain


@pytest.fixture()
def books(em: EntityManager) -> list[Entity]:
    king = em.create(domain.Author, {"name": "Stephen King"})
    rowling = em.create(domain.Author, {"name": "J. K. Rowling"})
    books = [
        em.create(domain.Book, {"author": king, "title": "Carrie"}),
        em.create(domain.Book, {"author": king, "title": "It"}),
        em.create(domain.Book, {"author": king, "title": "Misery"}),
        em.create(domain.Book, {"author": rowling, "title": "The Casual Vacancy"}),
    ]
    em.flush()
    return books


def _titles(em: EntityManager, where: dict[str, Any], **kwargs: Any) -> list[str]:
    return [book.title for book in em.find(domain.Book, where, **kwargs)]


@pytest.mark.parametrize(
    ("where", "expected"),
    [
        ({}, ["Carrie", "It", "Misery", "The Casual Vacancy"]),
        ({"title": "It"}, ["It"]),
        ({"title": ["It", "Misery"]}, ["It", "Misery"]),
        ({"title": {"$ne": "It"}}, ["Carrie", "Misery", "The Casual Vacancy"]),
        ({"title": {"$in": ["Carrie"]}}, ["Carrie"]),
        ({"title": {"$nin": ["Carrie", "It"]}}, ["Misery", "The Casual Vacancy"]),
        ({"title": {"$like": "%a%"}}, ["Carrie", "The Casual Vacancy"]),
        ({"id": {"$gt": 1, "$lte": 3}}, ["It", "Misery"]),
        ({"id": {"$gte": 4}}, ["The Casual Vacancy"]),
        ({"id": {"$lt": 2}}, ["Carrie"]),
        ({"$or": [{"title": "It"}, {"title": "Carrie"}]}, ["Carrie", "It"]),
        ({"$and": [{"id": {"$gt": 1}}, {"id": {"$lt": 4}}]}, ["It", "Misery"]),
        ({"$not": {"title": {"$like": "%e%"}}}, ["It"]),
        ({"$or": []}, []),
    ],
)
def test_conditions(
    em: EntityManager, books: list[Entity], where: dict[str, Any], expected: list[str]
) -> None:
    assert _titles(em, where) == expected


def test_condition_on_reference(em: EntityManager, books: list[Entity]) -> None:
    rowling = books[-1].author.get()
    assert _titles(em, {"author": rowling}) == ["The Casual Vacancy"]
    assert _titles(em, {"author": rowling.pk}) == ["The Casual Vacancy"]
    assert _titles(em, {"author": {"$ne": rowling}}) == ["Carrie", "It", "Misery"]


def test_null_condition(em: EntityManager, books: list[Entity]) -> None:
    assert len(_titles(em, {"deleted_at": None})) == 4
    assert _titles(em, {"deleted_at": {"$ne": None}}) == []


def test_order_limit_offset(em: EntityManager, books: list[Entity]) -> None:
    assert _titles(em, {}, order_by={"title": "desc"}, limit=2) == [
        "The Casual Vacancy",
        "Misery",
    ]
    assert _titles(em, {}, limit=2, offset=1) == ["It", "Misery"]
    assert _titles(em, {}, order_by={"id": "DESC"}, limit=1) == ["The Casual Vacancy"]


def test_invalid_order(em: EntityManager) -> None:
    with pytest.raises(QueryError):
        em.find(domain.Book, order_by={"title": "up"})


@pytest.mark.parametrize(
    "where",
    [
        {"publisher": "Scribner"},
        {"title": {"$regex": "It"}},
        {"$nor": [{"title": "It"}]},
        {"$or": {"title": "It"}},
    ],
)
def test_invalid_conditions(where: dict[str, Any]) -> None:
    domain.registry.finalize()
    table = domain.registry.table(domain.Book)
    with pytest.raises(QueryError):
        compile_condition(domain.Book, table, where)


def test_condition_on_collection() -> None:
    domain.registry.finalize()
    table = domain.registry.table(domain.Author)
    with pytest.raises(QueryError):
        compile_condition(domain.Author, table, {"books": 1})


def test_count_ignores_pagination(em: EntityManager, books: list[Entity]) -> None:
    entities, count = em.find_and_count(domain.Book, {"author": books[0].author}, limit=1)
    assert [book.title for book in entities] == ["Carrie"]
    assert count == 3
