"""Example domain objects for testing."""
from __future__ import annotations

from datetime import datetime

from sqla_populate import EntityType, Field, FilterDefinition, ManyToOne

Book = EntityType(
    "Book",
    fields=[
        Field("title", str),
        Field("deleted_at", datetime, nullable=True),
    ],
    relations=[ManyToOne("author", "Author", inverse="books")],
    filters=[
        FilterDefinition("soft-delete", {"deleted_at": None}, default=True),
        FilterDefinition("title", lambda params: {"title": {"$like": params["pattern"]}}),
    ],
)
