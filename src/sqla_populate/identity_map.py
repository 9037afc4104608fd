"""Identity map: one in-memory instance per primary key and entity type."""
from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any

from sqla_populate.entity import Entity, hydrate, take_snapshot
from sqla_populate.exceptions import ConstraintError
from sqla_populate.metadata import EntityType

__all__ = ["IdentityMap"]


class IdentityMap:
    """Tracks managed entities by `(entity type name, primary key)`."""

    def __init__(self) -> None:
        self._entities: dict[str, dict[Any, Entity]] = {}

    def __len__(self) -> int:
        return sum(len(by_key) for by_key in self._entities.values())

    def __iter__(self) -> Iterator[Entity]:
        for by_key in list(self._entities.values()):
            yield from list(by_key.values())

    def __contains__(self, entity: object) -> bool:
        if not isinstance(entity, Entity) or entity.pk is None:
            return False
        return self.get(entity.entity_type, entity.pk) is entity

    def get(self, entity_type: EntityType, pk: Any) -> Entity | None:
        return self._entities.get(entity_type.name, {}).get(pk)

    def add(self, entity: Entity) -> None:
        """Start tracking `entity`.

        Raises:
            ConstraintError: if the entity has no key, or another instance holds it.
        """
        if entity.pk is None:
            raise ConstraintError(f"{entity.entity_type.name} has no primary key")
        by_key = self._entities.setdefault(entity.entity_type.name, {})
        existing = by_key.get(entity.pk)
        if existing is not None and existing is not entity:
            raise ConstraintError(
                f"duplicate primary key {entity.pk!r} for {entity.entity_type.name}"
            )
        by_key[entity.pk] = entity

    def remove(self, entity: Entity) -> None:
        by_key = self._entities.get(entity.entity_type.name, {})
        if by_key.get(entity.pk) is entity:
            del by_key[entity.pk]

    def clear(self) -> None:
        self._entities.clear()

    def load(self, entity_type: EntityType, row: Mapping[str, Any]) -> Entity:
        """Return the tracked instance for `row`, hydrating a new one if needed.

        Already tracked instances are returned as they are, unflushed changes
        on them are kept.
        """
        entity = self.get(entity_type, row[entity_type.primary_key.name])
        if entity is None:
            entity = hydrate(entity_type, row)
            take_snapshot(entity)
            self.add(entity)
        return entity
