"""Pytest configuration and fixtures."""
from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
import structlog
from sqlalchemy import event

from sqla_populate import ORM, Entity, EntityManager
from tests.utils import domain


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    structlog.reset_defaults()


@pytest.fixture()
def orm() -> Iterator[ORM]:
    """A fresh in-memory database with the example domain's schema applied."""
    orm = ORM(domain.registry, url="sqlite://")
    orm.schema.refresh_database()
    yield orm
    orm.close(drop=True)


@pytest.fixture()
def em(orm: ORM) -> EntityManager:
    return orm.em


@pytest.fixture()
def statements(orm: ORM) -> Iterator[list[str]]:
    """SQL statements executed on the engine while the test runs."""
    executed: list[str] = []

    def _record(  # pylint: disable=too-many-arguments
        conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: bool
    ) -> None:
        executed.append(statement)

    event.listen(orm.engine, "before_cursor_execute", _record)
    yield executed
    event.remove(orm.engine, "before_cursor_execute", _record)


@pytest.fixture()
def author(em: EntityManager) -> Entity:
    """Stephen King, with two fans and two books, flushed and cleared."""
    author = em.create(domain.Author, {"name": "Stephen King"})
    em.create(domain.Fan, {"favorite_author": author, "name": "David"})
    em.create(domain.Fan, {"favorite_author": author, "name": "Jeremy"})
    em.create(domain.Book, {"author": author, "title": "Book 1", "deleted_at": None})
    em.create(domain.Book, {"author": author, "title": "Book 2", "deleted_at": None})
    em.flush()
    em.clear()
    return author
