"""Entity registry, unit of work and relation population on top of SQLAlchemy Core.

Example:
```python
from sqla_populate import ORM, EntityRegistry

orm = ORM(EntityRegistry([Author, Book, Fan]))
orm.schema.refresh_database()
fans, count = orm.em.find_and_count(Fan, {}, populate=["favorite_author.books"])
```
"""
from __future__ import annotations

from . import dto, log, settings
from .entity import Collection, Entity, Reference
from .exceptions import (
    ConstraintError,
    EntityValidationError,
    MetadataError,
    NotFoundError,
    NotLoadedError,
    ORMError,
    QueryError,
)
from .manager import EntityManager
from .metadata import (
    EntityRegistry,
    EntityType,
    Field,
    FilterDefinition,
    ManyToOne,
    OneToMany,
    PrimaryKey,
)
from .orm import ORM, SchemaManager, create_engine
from .unit_of_work import FlushResult

__all__ = [
    "ORM",
    "Collection",
    "ConstraintError",
    "Entity",
    "EntityManager",
    "EntityRegistry",
    "EntityType",
    "EntityValidationError",
    "Field",
    "FilterDefinition",
    "FlushResult",
    "ManyToOne",
    "MetadataError",
    "NotFoundError",
    "NotLoadedError",
    "ORMError",
    "OneToMany",
    "PrimaryKey",
    "QueryError",
    "Reference",
    "SchemaManager",
    "create_engine",
    "dto",
    "log",
    "settings",
]
