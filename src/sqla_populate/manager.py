"""Entity manager, the public entry point for reading and writing entities."""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from sqla_populate import dto
from sqla_populate.entity import Entity
from sqla_populate.exceptions import EntityValidationError, NotFoundError, QueryError
from sqla_populate.filters import FilterLayer
from sqla_populate.identity_map import IdentityMap
from sqla_populate.metadata import OneToMany
from sqla_populate.query import QueryExecutor
from sqla_populate.resolver import RelationResolver
from sqla_populate.unit_of_work import FlushResult, UnitOfWork

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Engine

    from sqla_populate.filters import FilterOverrides
    from sqla_populate.metadata import EntityRegistry, EntityType

__all__ = ["EntityManager"]

logger = structlog.get_logger()


class EntityManager:  # pylint: disable=too-many-instance-attributes
    """Creates, tracks, flushes and queries entities.

    Each manager owns an identity map and a unit of work. It is not safe to
    share one between threads, use `fork()` to get a fresh manager on the
    same engine.

    Args:
        engine: Engine of the backing store.
        registry: Finalized registry of the entity types.
    """

    def __init__(self, engine: Engine, registry: EntityRegistry) -> None:
        registry.finalize()
        self.engine = engine
        self.registry = registry
        self.identity_map = IdentityMap()
        self.unit_of_work = UnitOfWork(registry, self.identity_map)
        self.filters = FilterLayer(registry)
        self._executor = QueryExecutor(registry, self.filters)
        self._resolver = RelationResolver(self._executor, self.identity_map)

    def fork(self) -> EntityManager:
        """A new manager with an empty identity map, sharing engine, registry and filter params."""
        forked = EntityManager(self.engine, self.registry)
        for name, params in self.filters.params.items():
            forked.set_filter_params(name, params)
        return forked

    def create(
        self,
        entity_type: EntityType | str,
        fields: Mapping[str, Any] | None = None,
        *,
        persist: bool = True,
    ) -> Entity:
        """Create a new entity from `fields`.

        Many-to-one relations accept an entity or a primary key, one-to-many
        relations a list of entities.

        Args:
            entity_type: The type, or its registered name.
            fields: Field values, validated against the type's write DTO.
            persist: Schedule the entity for insert on the next flush.

        Raises:
            EntityValidationError: if `fields` don't validate.
        """
        entity_type = self.registry.get(entity_type)
        write_dto = dto.factory(f"{entity_type.name}Write", entity_type, dto.Purpose.WRITE)
        try:
            data = write_dto.model_validate(dict(fields or {}))
        except ValidationError as exc:
            raise EntityValidationError(f"invalid {entity_type.name}: {exc}") from exc

        entity = Entity(entity_type)
        for name, value in data.to_fields().items():
            if entity_type.has_relation(name) and isinstance(entity_type.relation(name), OneToMany):
                getattr(entity, name).add(*value)
            else:
                setattr(entity, name, value)
        if persist:
            self.unit_of_work.persist(entity)
        return entity

    def persist(self, entity: Entity) -> Entity:
        """Schedule `entity` for insert on the next flush."""
        self.unit_of_work.persist(entity)
        return entity

    def remove(self, entity: Entity) -> None:
        """Schedule `entity` for delete on the next flush."""
        self.unit_of_work.remove(entity)

    def flush(self) -> FlushResult:
        """Write all pending changes. See `UnitOfWork.flush()`."""
        return self.unit_of_work.flush(self.engine)

    def clear(self) -> None:
        """Forget every tracked entity and every pending change."""
        self.identity_map.clear()
        self.unit_of_work.clear()
        logger.debug("entity_manager_cleared")

    def set_filter_params(self, name: str, params: Mapping[str, Any]) -> None:
        """Parameters given to filter `name` whenever it is active."""
        self.filters.set_params(name, params)

    def find(  # pylint: disable=too-many-arguments
        self,
        entity_type: EntityType | str,
        where: Mapping[str, Any] | None = None,
        *,
        populate: Iterable[str] = (),
        filters: FilterOverrides | None = None,
        order_by: Mapping[str, str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Entity]:
        """Entities of `entity_type` matching `where` and the active filters.

        Args:
            entity_type: The type, or its registered name.
            where: Condition mapping, see `sqla_populate.query`.
            populate: Dotted relation paths to populate on the results.
            filters: Filter overrides by name, also used for populated collections.
            order_by: Field name to `"asc"` or `"desc"`, primary key ascending by default.
            limit: Maximum number of entities.
            offset: Number of matching entities to skip.
        """
        entity_type, populate = self._prepare(entity_type, populate, filters)
        with self.engine.connect() as conn:
            return self._find(
                conn, entity_type, where, populate, filters, order_by, limit, offset
            )

    def find_and_count(  # pylint: disable=too-many-arguments
        self,
        entity_type: EntityType | str,
        where: Mapping[str, Any] | None = None,
        *,
        populate: Iterable[str] = (),
        filters: FilterOverrides | None = None,
        order_by: Mapping[str, str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> tuple[list[Entity], int]:
        """Like `find()`, also returning the total count of matches.

        The count ignores `limit` and `offset`.
        """
        entity_type, populate = self._prepare(entity_type, populate, filters)
        with self.engine.connect() as conn:
            entities = self._find(
                conn, entity_type, where, populate, filters, order_by, limit, offset
            )
            count = self._executor.count(conn, entity_type, where, filters=filters)
        return entities, count

    def find_one(
        self,
        entity_type: EntityType | str,
        where: Mapping[str, Any] | None = None,
        *,
        populate: Iterable[str] = (),
        filters: FilterOverrides | None = None,
    ) -> Entity | None:
        """First entity matching `where`, or `None`."""
        found = self.find(entity_type, where, populate=populate, filters=filters, limit=1)
        return found[0] if found else None

    def find_one_or_fail(
        self,
        entity_type: EntityType | str,
        where: Mapping[str, Any] | None = None,
        *,
        populate: Iterable[str] = (),
        filters: FilterOverrides | None = None,
    ) -> Entity:
        """First entity matching `where`.

        Raises:
            NotFoundError: if nothing matches.
        """
        entity = self.find_one(entity_type, where, populate=populate, filters=filters)
        if entity is None:
            name = entity_type if isinstance(entity_type, str) else entity_type.name
            raise NotFoundError(f"{name} not found ({where!r})")
        return entity

    def get(
        self,
        entity_type: EntityType | str,
        pk: Any,
        *,
        filters: FilterOverrides | None = None,
    ) -> Entity | None:
        """Entity by primary key, `None` if it doesn't exist or is filtered out.

        Without active filters a tracked entity is returned without a query.
        With active filters the stored row is queried, so unflushed changes
        don't decide whether the entity is filtered out. The instance returned
        is still the tracked one.
        """
        entity_type = self.registry.get(entity_type)
        self.filters.validate(filters)
        tracked = self.identity_map.get(entity_type, pk)
        if tracked is not None and not self.filters.active(entity_type, filters):
            return tracked
        return self.find_one(entity_type, {entity_type.primary_key.name: pk}, filters=filters)

    def count(
        self,
        entity_type: EntityType | str,
        where: Mapping[str, Any] | None = None,
        *,
        filters: FilterOverrides | None = None,
    ) -> int:
        """Number of entities matching `where` and the active filters."""
        entity_type = self.registry.get(entity_type)
        self.filters.validate(filters)
        with self.engine.connect() as conn:
            return self._executor.count(conn, entity_type, where, filters=filters)

    def populate(
        self,
        entities: Sequence[Entity],
        populate: Iterable[str],
        *,
        filters: FilterOverrides | None = None,
    ) -> Sequence[Entity]:
        """Populate relation paths on already loaded entities of one type.

        Raises:
            NotFoundError: if a path names a relation that doesn't exist.
            QueryError: if the entities are of different types.
        """
        if not entities:
            return entities
        entity_type = entities[0].entity_type
        if any(entity.entity_type is not entity_type for entity in entities):
            raise QueryError("can only populate entities of a single type")
        entity_type, populate = self._prepare(entity_type, populate, filters)
        with self.engine.connect() as conn:
            self._resolver.populate(conn, entity_type, entities, populate, filters=filters)
        return entities

    def _prepare(
        self,
        entity_type: EntityType | str,
        populate: Iterable[str],
        filters: FilterOverrides | None,
    ) -> tuple[EntityType, list[str]]:
        entity_type = self.registry.get(entity_type)
        if isinstance(populate, str):
            populate = [populate]
        populate = list(populate)
        self._resolver.validate(entity_type, populate)
        self.filters.validate(filters)
        return entity_type, populate

    def _find(  # pylint: disable=too-many-arguments
        self,
        conn: Connection,
        entity_type: EntityType,
        where: Mapping[str, Any] | None,
        populate: list[str],
        filters: FilterOverrides | None,
        order_by: Mapping[str, str] | None,
        limit: int | None,
        offset: int | None,
    ) -> list[Entity]:
        rows = self._executor.select(
            conn,
            entity_type,
            where,
            filters=filters,
            order_by=order_by,
            limit=limit,
            offset=offset,
        )
        entities = [self.identity_map.load(entity_type, row) for row in rows]
        if populate and entities:
            self._resolver.populate(conn, entity_type, entities, populate, filters=filters)
        logger.debug("entities_found", entity_type=entity_type.name, count=len(entities))
        return entities
