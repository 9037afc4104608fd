"""Entity instances and their relation fields.

A many-to-one relation is held by a `Reference`, which is either unresolved
(only the foreign key is known) or resolved (the related entity is attached).
A one-to-many relation is held by a `Collection`, which is uninitialized until
it is populated. Neither loads anything by itself: reading an unresolved
reference or an uninitialized collection raises `NotLoadedError`, and
`EntityManager.populate()` resolves them.
"""
from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from sqla_populate.exceptions import NotLoadedError
from sqla_populate.metadata import EntityType, ManyToOne, OneToMany

__all__ = ["Collection", "Entity", "Reference"]


class Entity:
    """An instance of a registered `EntityType`.

    Scalar values are read and written as attributes. Relation attributes
    return the `Reference` or `Collection` for that relation; assigning to a
    many-to-one attribute sets the reference, assigning an iterable to a
    one-to-many attribute replaces the collection contents.

    Args:
        entity_type: Descriptor of the instance.
        new: New instances start with initialized, empty collections.
    """

    __slots__ = ("_type", "_values", "_relations", "_snapshot", "__weakref__")

    def __init__(self, entity_type: EntityType, *, new: bool = True) -> None:
        object.__setattr__(self, "_type", entity_type)
        object.__setattr__(self, "_values", {entity_type.primary_key.name: None})
        object.__setattr__(self, "_snapshot", None)
        relations: dict[str, Reference | Collection] = {}
        for relation in entity_type.relations:
            if isinstance(relation, ManyToOne):
                relations[relation.name] = Reference(self, relation)
            else:
                relations[relation.name] = Collection(self, relation, initialized=new)
        object.__setattr__(self, "_relations", relations)

    @property
    def entity_type(self) -> EntityType:
        return self._type

    @property
    def pk(self) -> Any:
        return self._values[self._type.primary_key.name]

    def __getattr__(self, name: str) -> Any:
        try:
            entity_type = object.__getattribute__(self, "_type")
        except AttributeError:
            raise AttributeError(name) from None
        if entity_type.has_scalar(name):
            return self._values.get(name)
        if entity_type.has_relation(name):
            return self._relations[name]
        raise AttributeError(f"{entity_type.name} entity has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        if self._type.has_scalar(name):
            self._values[name] = value
        elif self._type.has_relation(name):
            relation = self._relations[name]
            relation.set(value)  # type: ignore[arg-type]
        else:
            raise AttributeError(f"{self._type.name} entity has no attribute '{name}'")

    def __repr__(self) -> str:
        values = ", ".join(f"{key}={value!r}" for key, value in self._values.items())
        return f"{self._type.name}({values})"


class Reference:
    """The many-to-one side of a relation on one entity."""

    __slots__ = ("owner", "relation", "_key", "_entity")

    def __init__(self, owner: Entity, relation: ManyToOne) -> None:
        self.owner = owner
        self.relation = relation
        self._key: Any = None
        self._entity: Entity | None = None

    def __repr__(self) -> str:
        state = "resolved" if self.is_resolved else "unresolved"
        return f"<Reference {self.relation.target} key={self.key!r} {state}>"

    @property
    def key(self) -> Any:
        """Primary key of the referenced entity, `None` if unset or not yet flushed."""
        if self._entity is not None:
            return self._entity.pk
        return self._key

    @property
    def is_resolved(self) -> bool:
        return self._entity is not None

    @property
    def is_set(self) -> bool:
        return self._entity is not None or self._key is not None

    def get(self) -> Entity | None:
        """Return the referenced entity, `None` if the reference is empty.

        Raises:
            NotLoadedError: if the reference holds only a key.
        """
        if self._entity is None and self._key is not None:
            raise NotLoadedError(
                f"{self.owner.entity_type.name}.{self.relation.name} is not populated"
            )
        return self._entity

    def set(self, value: Entity | Reference | Any) -> None:
        """Point the reference at an entity or a primary key, or clear it with `None`.

        The owner is moved between the inverse collections of the previous
        and the new target. Uninitialized collections keep the move until
        they are populated.
        """
        if isinstance(value, Reference):
            value = value._entity if value._entity is not None else value._key
        previous = self._entity
        if isinstance(value, Entity):
            if value.entity_type.name != self.relation.target:
                raise TypeError(
                    f"{self.owner.entity_type.name}.{self.relation.name} expects"
                    f" {self.relation.target}, got {value.entity_type.name}"
                )
            self._entity, self._key = value, None
        else:
            self._entity, self._key = None, value

        inverse = self.relation.inverse
        if inverse is None or previous is self._entity:
            return
        if previous is not None:
            collection = previous._relations[inverse]  # pylint: disable=protected-access
            collection._discard(self.owner)  # type: ignore[union-attr]
        if self._entity is not None:
            collection = self._entity._relations[inverse]  # pylint: disable=protected-access
            collection._append(self.owner)  # type: ignore[union-attr]

    def hydrate(self, entity: Entity) -> None:
        """Attach a loaded entity without touching inverse collections."""
        self._entity, self._key = entity, None


class Collection:
    """The one-to-many side of a relation on one entity.

    Holds an ordered set of related entities. The owner is a back reference,
    membership is mirrored by the inverse `Reference` on each item.
    """

    __slots__ = ("owner", "relation", "_items", "_initialized")

    def __init__(self, owner: Entity, relation: OneToMany, *, initialized: bool = False) -> None:
        self.owner = owner
        self.relation = relation
        self._items: list[Entity] = []
        self._initialized = initialized

    def __repr__(self) -> str:
        if not self._initialized:
            return f"<Collection {self.relation.target} uninitialized>"
        return f"<Collection {self.relation.target} {self._items!r}>"

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _check_initialized(self) -> None:
        if not self._initialized:
            raise NotLoadedError(
                f"{self.owner.entity_type.name}.{self.relation.name} is not populated"
            )

    def __iter__(self) -> Iterator[Entity]:
        self._check_initialized()
        return iter(list(self._items))

    def __len__(self) -> int:
        self._check_initialized()
        return len(self._items)

    def __contains__(self, item: object) -> bool:
        self._check_initialized()
        return item in self._items

    def __getitem__(self, index: int) -> Entity:
        self._check_initialized()
        return self._items[index]

    def items(self) -> list[Entity]:
        self._check_initialized()
        return list(self._items)

    def add(self, *entities: Entity) -> None:
        """Add entities, pointing their inverse reference at the owner."""
        self._check_initialized()
        for entity in entities:
            reference = entity._relations[self.relation.inverse]  # type: ignore[index]
            reference.set(self.owner)  # type: ignore[union-attr]
            self._append(entity)

    def remove(self, *entities: Entity) -> None:
        """Remove entities, clearing their inverse reference."""
        self._check_initialized()
        for entity in entities:
            if entity not in self._items:
                continue
            self._discard(entity)
            reference = entity._relations[self.relation.inverse]  # type: ignore[index]
            if reference.get() is self.owner:  # type: ignore[union-attr]
                reference.set(None)  # type: ignore[union-attr]

    def set(self, entities: Iterable[Entity]) -> None:
        """Replace the contents of the collection."""
        entities = list(entities)
        self._initialized = True
        self.remove(*(item for item in list(self._items) if item not in entities))
        self.add(*entities)

    def hydrate(self, entities: Iterable[Entity]) -> None:
        """Fill the collection with loaded entities and mark it initialized.

        Entities attached to the owner before the collection was populated
        are kept, as long as their inverse reference still points at the owner.
        """
        inverse = self.relation.inverse
        attached = [
            entity
            for entity in self._items
            # pylint: disable-next=protected-access
            if entity._relations[inverse]._entity is self.owner  # type: ignore[index,union-attr]
        ]
        self._items = list(dict.fromkeys([*entities, *attached]))
        self._initialized = True

    def _append(self, entity: Entity) -> None:
        if entity not in self._items:
            self._items.append(entity)

    def _discard(self, entity: Entity) -> None:
        if entity in self._items:
            self._items.remove(entity)


def column_values(entity: Entity) -> dict[str, Any]:
    """Values of every column of the entity's table, foreign keys included."""
    entity_type = entity.entity_type
    values = entity._values  # pylint: disable=protected-access
    row = {entity_type.primary_key.name: entity.pk}
    for scalar in entity_type.fields:
        row[scalar.name] = values.get(scalar.name)
    for relation in entity_type.many_to_one:
        row[relation.column_name] = getattr(entity, relation.name).key
    return row


def hydrate(entity_type: EntityType, row: Mapping[str, Any]) -> Entity:
    """Build an entity from a table row. Relations are left unresolved."""
    entity = Entity(entity_type, new=False)
    values = entity._values  # pylint: disable=protected-access
    values[entity_type.primary_key.name] = row[entity_type.primary_key.name]
    for scalar in entity_type.fields:
        values[scalar.name] = row[scalar.name]
    for relation in entity_type.many_to_one:
        reference: Reference = getattr(entity, relation.name)
        reference._key = row[relation.column_name]  # pylint: disable=protected-access
    return entity


def take_snapshot(entity: Entity) -> None:
    """Record the current column values as the persisted state."""
    object.__setattr__(entity, "_snapshot", column_values(entity))


def drop_snapshot(entity: Entity) -> None:
    object.__setattr__(entity, "_snapshot", None)


def is_managed(entity: Entity) -> bool:
    """`True` once the entity has been flushed or loaded."""
    return entity._snapshot is not None  # pylint: disable=protected-access


def changes(entity: Entity) -> dict[str, Any]:
    """Columns whose value differs from the snapshot."""
    snapshot = entity._snapshot  # pylint: disable=protected-access
    if snapshot is None:
        return {}
    return {
        key: value for key, value in column_values(entity).items() if snapshot.get(key) != value
    }
