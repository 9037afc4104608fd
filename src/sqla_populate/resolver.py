"""Relation resolver: populates dotted relation paths with batched fetches.

`populate(conn, Fan, fans, ["favorite_author.books"])` resolves
`favorite_author` on every fan with one query, then loads `books` for every
author found with one more query, whatever the number of fans.
"""
from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

import structlog

from sqla_populate.exceptions import NotFoundError
from sqla_populate.metadata import ManyToOne

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

    from sqla_populate.entity import Collection, Entity, Reference
    from sqla_populate.filters import FilterOverrides
    from sqla_populate.identity_map import IdentityMap
    from sqla_populate.metadata import EntityType, OneToMany
    from sqla_populate.query import QueryExecutor

__all__ = ["PathTree", "RelationResolver", "parse_paths"]

PathTree = dict[str, "PathTree"]

logger = structlog.get_logger()


def parse_paths(paths: Iterable[str]) -> PathTree:
    """Merge dotted paths into a tree, so shared prefixes are populated once.

    Raises:
        NotFoundError: if a path has an empty segment.
    """
    tree: PathTree = {}
    for path in paths:
        node = tree
        for segment in path.split("."):
            if not segment:
                raise NotFoundError(f"invalid populate path '{path}'")
            node = node.setdefault(segment, {})
    return tree


class RelationResolver:
    """Attaches related entities to already loaded ones.

    Args:
        executor: Runs the batched selects.
        identity_map: Source of already loaded entities, receives the fetched ones.
    """

    def __init__(self, executor: QueryExecutor, identity_map: IdentityMap) -> None:
        self._executor = executor
        self._identity_map = identity_map

    def validate(self, entity_type: EntityType, paths: Iterable[str]) -> PathTree:
        """Parse `paths` and check every segment names a relation.

        Raises:
            NotFoundError: if a segment names no relation on its entity type.
        """
        tree = parse_paths(paths)
        self._validate_tree(entity_type, tree)
        return tree

    def _validate_tree(self, entity_type: EntityType, tree: PathTree) -> None:
        for name, subtree in tree.items():
            relation = entity_type.relation(name)
            self._validate_tree(entity_type.target(relation), subtree)

    def populate(
        self,
        conn: Connection,
        entity_type: EntityType,
        entities: Sequence[Entity],
        paths: Iterable[str],
        *,
        filters: FilterOverrides | None = None,
    ) -> None:
        """Populate every path on `entities`, all of type `entity_type`.

        Collections are loaded with the target type's filters, overridden by
        `filters`.
        """
        tree = self.validate(entity_type, paths)
        self._populate(conn, entity_type, list(entities), tree, filters, "")

    def _populate(  # pylint: disable=too-many-arguments
        self,
        conn: Connection,
        entity_type: EntityType,
        entities: list[Entity],
        tree: PathTree,
        filters: FilterOverrides | None,
        prefix: str,
    ) -> None:
        for name, subtree in tree.items():
            relation = entity_type.relation(name)
            target = entity_type.target(relation)
            if isinstance(relation, ManyToOne):
                related = self._resolve_references(conn, target, relation, entities)
            else:
                related = self._load_collections(
                    conn, target, relation, entities, filters  # type: ignore[arg-type]
                )
            logger.debug("entities_populated", path=f"{prefix}{name}", count=len(related))
            if subtree and related:
                self._populate(conn, target, related, subtree, filters, f"{prefix}{name}.")

    def _resolve_references(
        self, conn: Connection, target: EntityType, relation: ManyToOne, owners: list[Entity]
    ) -> list[Entity]:
        references: list[Reference] = [getattr(owner, relation.name) for owner in owners]
        unresolved: list[Reference] = []
        for reference in references:
            if reference.is_resolved or reference.key is None:
                continue
            cached = self._identity_map.get(target, reference.key)
            if cached is not None:
                reference.hydrate(cached)
            else:
                unresolved.append(reference)

        if unresolved:
            keys = list(dict.fromkeys(reference.key for reference in unresolved))
            rows = self._executor.select(
                conn, target, {target.primary_key.name: {"$in": keys}}, apply_filters=False
            )
            for row in rows:
                self._identity_map.load(target, row)
            for reference in unresolved:
                entity = self._identity_map.get(target, reference.key)
                if entity is None:
                    logger.warning(
                        "dangling_reference",
                        relation=f"{reference.owner.entity_type.name}.{relation.name}",
                        key=reference.key,
                    )
                    continue
                reference.hydrate(entity)

        related = (reference.get() for reference in references if reference.is_resolved)
        return list(dict.fromkeys(related))  # type: ignore[arg-type]

    def _load_collections(
        self,
        conn: Connection,
        target: EntityType,
        relation: OneToMany,
        owners: list[Entity],
        filters: FilterOverrides | None,
    ) -> list[Entity]:
        related: list[Entity] = []
        pending: list[Entity] = []
        for owner in owners:
            collection: Collection = getattr(owner, relation.name)
            if collection.is_initialized:
                related.extend(collection)
            elif owner.pk is None:
                collection.hydrate([])
            else:
                pending.append(owner)

        if pending:
            inverse = relation.inverse
            rows = self._executor.select(
                conn, target, {inverse: {"$in": [owner.pk for owner in pending]}}, filters=filters
            )
            by_owner: dict[Any, list[Entity]] = defaultdict(list)
            for row in rows:
                child = self._identity_map.load(target, row)
                by_owner[getattr(child, inverse).key].append(child)
            for owner in pending:
                children = by_owner.get(owner.pk, [])
                for child in children:
                    getattr(child, inverse).hydrate(owner)
                collection = getattr(owner, relation.name)
                collection.hydrate(children)
                related.extend(collection)

        return list(dict.fromkeys(related))
