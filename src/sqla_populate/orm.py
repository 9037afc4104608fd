"""Engine setup, schema management and the `ORM` facade."""
from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool

from sqla_populate import settings
from sqla_populate.log import install_query_logging
from sqla_populate.manager import EntityManager
from sqla_populate.metadata import EntityRegistry, EntityType

if TYPE_CHECKING:
    from types import TracebackType

    from sqlalchemy.engine import Engine

__all__ = ["ORM", "SchemaManager", "create_engine"]

logger = structlog.get_logger()


def create_engine(
    url: str | None = None,
    *,
    echo: bool | None = None,
    foreign_keys: bool | None = None,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with defaults from `settings.db`.

    In-memory SQLite databases share a single connection, so every call of the
    entity manager sees the same database.

    Args:
        url: Database URL, `settings.db.URL` by default.
        echo: Passed to `sqlalchemy.create_engine()`.
        foreign_keys: Enforce foreign keys on SQLite.
        **kwargs: Extra arguments forwarded to `sqlalchemy.create_engine()`.
    """
    url = url or settings.db.URL
    echo = settings.db.ECHO if echo is None else echo
    foreign_keys = settings.db.FOREIGN_KEYS if foreign_keys is None else foreign_keys

    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return _sa_create_engine(url, echo=echo, **kwargs)

    kwargs.setdefault("connect_args", {"check_same_thread": False})
    if parsed.database in (None, "", ":memory:"):
        kwargs.setdefault("poolclass", StaticPool)
    engine = _sa_create_engine(url, echo=echo, **kwargs)

    if foreign_keys:

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


class SchemaManager:
    """Creates and drops the tables of a registry."""

    def __init__(self, engine: Engine, registry: EntityRegistry) -> None:
        self._engine = engine
        self._registry = registry

    def create_schema(self) -> None:
        self._registry.finalize()
        self._registry.metadata.create_all(self._engine)

    def drop_schema(self) -> None:
        self._registry.finalize()
        self._registry.metadata.drop_all(self._engine)

    def refresh_database(self) -> None:
        """Drop and recreate every table, leaving an empty database."""
        self.drop_schema()
        self.create_schema()
        logger.info("schema_refreshed", tables=[et.table_name for et in self._registry])


class ORM:
    """Entry point tying an engine, a registry and an entity manager together.

    ```python
    orm = ORM([Author, Book, Fan])
    orm.schema.refresh_database()
    author = orm.em.create(Author, {"name": "Stephen King"})
    orm.em.flush()
    orm.close()
    ```

    Args:
        entities: A registry, or the entity types to build one from.
        url: Database URL, `settings.db.URL` by default.
        debug: Log SQL statements and their parameters, `settings.log.QUERIES` by default.
        **engine_kwargs: Forwarded to `create_engine()`.
    """

    def __init__(
        self,
        entities: EntityRegistry | Iterable[EntityType],
        *,
        url: str | None = None,
        debug: bool | None = None,
        **engine_kwargs: Any,
    ) -> None:
        if isinstance(entities, EntityRegistry):
            self.registry = entities
        else:
            self.registry = EntityRegistry(entities)
        self.registry.finalize()
        self.engine = create_engine(url, **engine_kwargs)
        if settings.log.QUERIES if debug is None else debug:
            install_query_logging(self.engine)
        self.schema = SchemaManager(self.engine, self.registry)
        self.em = EntityManager(self.engine, self.registry)

    def close(self, drop: bool = False) -> None:
        """Dispose of the engine, dropping the tables first if `drop`."""
        if drop:
            self.schema.drop_schema()
        self.engine.dispose()

    def __enter__(self) -> ORM:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
