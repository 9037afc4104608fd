"""Unit of work: buffers pending writes and flushes them in dependency order."""
from __future__ import annotations

from graphlib import CycleError, TopologicalSorter
from typing import TYPE_CHECKING, Any, NamedTuple

import structlog
from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError

from sqla_populate.entity import (
    Entity,
    changes,
    column_values,
    drop_snapshot,
    is_managed,
    take_snapshot,
)
from sqla_populate.exceptions import ConstraintError

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Engine

    from sqla_populate.identity_map import IdentityMap
    from sqla_populate.metadata import EntityRegistry, EntityType

__all__ = ["FlushResult", "UnitOfWork"]

logger = structlog.get_logger()


class FlushResult(NamedTuple):
    """Number of rows written by a flush."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0


class UnitOfWork:
    """Collects new and removed entities until the next flush.

    Changes to managed entities are found at flush time by comparing them to
    the snapshot taken when they were loaded or last flushed.

    Args:
        registry: Registry of the entity types being written.
        identity_map: Receives entities once they have a primary key.
    """

    def __init__(self, registry: EntityRegistry, identity_map: IdentityMap) -> None:
        self._registry = registry
        self._identity_map = identity_map
        self._inserts: list[Entity] = []
        self._removals: list[Entity] = []

    @property
    def pending(self) -> tuple[Entity, ...]:
        """Entities waiting to be inserted."""
        return tuple(self._inserts)

    @property
    def removals(self) -> tuple[Entity, ...]:
        """Entities waiting to be deleted."""
        return tuple(self._removals)

    def persist(self, entity: Entity) -> None:
        """Schedule a new entity for insert, or cancel a pending removal."""
        self._registry.get(entity.entity_type)
        if entity in self._removals:
            self._removals.remove(entity)
            return
        if is_managed(entity) or entity in self._inserts:
            return
        self._inserts.append(entity)

    def remove(self, entity: Entity) -> None:
        """Schedule a managed entity for delete, or drop a pending insert."""
        if entity in self._inserts:
            self._inserts.remove(entity)
        elif is_managed(entity) and entity not in self._removals:
            self._removals.append(entity)

    def clear(self) -> None:
        self._inserts.clear()
        self._removals.clear()

    def type_order(self) -> list[EntityType]:
        """Entity types ordered so referenced types come before referencing ones.

        Raises:
            ConstraintError: if types reference each other in a cycle.
        """
        graph = {et.name: self._registry.dependencies(et) for et in self._registry}
        try:
            names = list(TopologicalSorter(graph).static_order())
        except CycleError as exc:
            raise ConstraintError(
                f"entity types reference each other in a cycle: {exc.args[1]}"
            ) from exc
        return [self._registry.get(name) for name in names]

    def flush(self, engine: Engine) -> FlushResult:
        """Write pending inserts, changes and removals in a single transaction.

        Inserts run parents first, deletes run children first. If anything
        fails nothing is written, the buffers are kept and the entities are
        left as they were.

        Raises:
            ConstraintError: if a referenced parent has no key, a required
                reference is missing, a primary key is taken or changed, an
                updated row no longer exists or the database reports an
                integrity error.
        """
        order = self.type_order()
        logger.debug("flush_started", inserts=len(self._inserts), removals=len(self._removals))
        assigned: list[tuple[Entity, bool]] = []
        try:
            with engine.begin() as conn:
                inserted = self._insert(conn, order, assigned)
                updated = self._update(conn)
                deleted = self._delete(conn, order)
        except IntegrityError as exc:
            self._revert(assigned)
            raise ConstraintError(exc.orig) from exc
        except Exception:
            self._revert(assigned)
            raise

        for entity in inserted + updated:
            take_snapshot(entity)
        for entity in deleted:
            self._detach(entity)
        self.clear()
        result = FlushResult(len(inserted), len(updated), len(deleted))
        logger.info("flush_completed", **result._asdict())
        return result

    def _insert(
        self, conn: Connection, order: list[EntityType], assigned: list[tuple[Entity, bool]]
    ) -> list[Entity]:
        self._check_unique_keys()
        written: list[Entity] = []
        for entity_type in order:
            batch = [e for e in self._inserts if e.entity_type is entity_type]
            if not batch:
                continue
            # rows of a self referencing type are written one by one, in creation order
            if entity_type.name in {r.target for r in entity_type.many_to_one}:
                chunks = [[entity] for entity in batch]
            else:
                chunks = [batch]
            for chunk in chunks:
                self._insert_chunk(conn, entity_type, chunk, assigned)
            written.extend(batch)
        return written

    def _insert_chunk(
        self,
        conn: Connection,
        entity_type: EntityType,
        chunk: list[Entity],
        assigned: list[tuple[Entity, bool]],
    ) -> None:
        table = self._registry.table(entity_type)
        pk_name = entity_type.primary_key.name
        generated: list[tuple[Entity, dict[str, Any]]] = []
        keyed: list[dict[str, Any]] = []
        for entity in chunk:
            row = column_values(entity)
            self._check_references(entity, row)
            if row[pk_name] is not None:
                keyed.append(row)
                self._identity_map.add(entity)
                assigned.append((entity, False))
            elif entity_type.primary_key.auto:
                del row[pk_name]
                generated.append((entity, row))
            else:
                raise ConstraintError(f"{entity_type.name} needs a primary key")
        if keyed:
            conn.execute(insert(table), keyed)
        if generated:
            result = conn.execute(
                insert(table).returning(table.c[pk_name], sort_by_parameter_order=True),
                [row for _, row in generated],
            )
            for (entity, _), key in zip(generated, result.scalars().all()):
                entity._values[pk_name] = key  # pylint: disable=protected-access
                self._identity_map.add(entity)
                assigned.append((entity, True))

    def _check_references(self, entity: Entity, row: dict[str, Any]) -> None:
        entity_type = entity.entity_type
        for relation in entity_type.many_to_one:
            reference = getattr(entity, relation.name)
            if reference.is_resolved and reference.key is None:
                raise ConstraintError(
                    f"{entity_type.name}.{relation.name} references a {relation.target}"
                    " that has no primary key and is not scheduled for insert"
                )
            if row[relation.column_name] is None and not relation.nullable:
                raise ConstraintError(f"{entity_type.name}.{relation.name} is required")

    def _check_unique_keys(self) -> None:
        seen: set[tuple[str, Any]] = set()
        for entity in self._inserts:
            if entity.pk is None:
                continue
            key = (entity.entity_type.name, entity.pk)
            if key in seen or self._identity_map.get(entity.entity_type, entity.pk) is not None:
                raise ConstraintError(
                    f"duplicate primary key {entity.pk!r} for {entity.entity_type.name}"
                )
            seen.add(key)

    def _update(self, conn: Connection) -> list[Entity]:
        written: list[Entity] = []
        for entity in self._identity_map:
            if entity in self._removals or entity in self._inserts:
                continue
            changed = changes(entity)
            if not changed:
                continue
            entity_type = entity.entity_type
            pk_name = entity_type.primary_key.name
            if pk_name in changed:
                raise ConstraintError(
                    f"primary key of a managed {entity_type.name} can't change"
                    f" ({self._stored_key(entity)!r} to {entity.pk!r})"
                )
            self._check_references(entity, column_values(entity))
            table = self._registry.table(entity_type)
            result = conn.execute(
                update(table).where(table.c[pk_name] == entity.pk).values(**changed)
            )
            if result.rowcount != 1:
                raise ConstraintError(f"{entity_type.name} {entity.pk!r} no longer exists")
            written.append(entity)
        return written

    @staticmethod
    def _stored_key(entity: Entity) -> Any:
        snapshot = entity._snapshot  # pylint: disable=protected-access
        return snapshot[entity.entity_type.primary_key.name]

    def _delete(self, conn: Connection, order: list[EntityType]) -> list[Entity]:
        written: list[Entity] = []
        for entity_type in reversed(order):
            batch = [e for e in self._removals if e.entity_type is entity_type]
            if not batch:
                continue
            table = self._registry.table(entity_type)
            pk_column = table.c[entity_type.primary_key.name]
            conn.execute(delete(table).where(pk_column.in_([self._stored_key(e) for e in batch])))
            written.extend(batch)
        return written

    def _revert(self, assigned: list[tuple[Entity, bool]]) -> None:
        for entity, generated in assigned:
            self._identity_map.remove(entity)
            if generated:
                pk_name = entity.entity_type.primary_key.name
                entity._values[pk_name] = None  # pylint: disable=protected-access

    def _detach(self, entity: Entity) -> None:
        self._identity_map.remove(entity)
        drop_snapshot(entity)
        for relation in entity.entity_type.many_to_one:
            reference = getattr(entity, relation.name)
            parent = reference._entity  # pylint: disable=protected-access
            if parent is None or relation.inverse is None:
                continue
            collection = getattr(parent, relation.inverse)
            collection._discard(entity)  # pylint: disable=protected-access
