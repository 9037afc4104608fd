"""Example domain objects for testing."""
from __future__ import annotations

from sqla_populate import EntityRegistry

from .authors import Author
from .books import Book
from .fans import Fan

registry = EntityRegistry([Author, Book, Fan])

__all__ = ["Author", "Book", "Fan", "registry"]
