"""Query executor and the condition language it compiles.

Conditions are mappings compiled to SQLAlchemy expressions:

```python
{"name": "Stephen King"}                   # name = 'Stephen King'
{"deleted_at": None}                       # deleted_at IS NULL
{"id": [1, 2]}                             # id IN (1, 2)
{"author": author}                         # author_id = <author.pk>
{"price": {"$gte": 10, "$lt": 20}}         # price >= 10 AND price < 20
{"$or": [{"title": "A"}, {"title": "B"}]}  # title = 'A' OR title = 'B'
```
"""
from __future__ import annotations

import operator
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, false, func, not_, or_, select, true

from sqla_populate import settings
from sqla_populate.entity import Entity, Reference
from sqla_populate.exceptions import QueryError
from sqla_populate.metadata import ManyToOne

if TYPE_CHECKING:
    from sqlalchemy import ColumnElement, Table
    from sqlalchemy.engine import Connection, RowMapping

    from sqla_populate.filters import FilterLayer, FilterOverrides
    from sqla_populate.metadata import EntityRegistry, EntityType

__all__ = ["QueryExecutor", "compile_condition"]

_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "$eq": operator.eq,
    "$ne": operator.ne,
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
    "$in": lambda column, value: column.in_(value),
    "$nin": lambda column, value: column.not_in(value),
    "$like": lambda column, value: column.like(value),
}


def _key_of(value: Any) -> Any:
    if isinstance(value, Entity):
        return value.pk
    if isinstance(value, Reference):
        return value.key
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_key_of(item) for item in value]
    return value


def _column(entity_type: EntityType, table: Table, name: str) -> Any:
    if entity_type.has_scalar(name):
        return table.c[name]
    if entity_type.has_relation(name):
        relation = entity_type.relation(name)
        if isinstance(relation, ManyToOne):
            return table.c[relation.column_name]
        raise QueryError(f"can't query on collection {entity_type.name}.{name}")
    raise QueryError(f"{entity_type.name} has no field '{name}'")


def _compare(column: Any, value: Any) -> ColumnElement[bool]:
    if isinstance(value, Mapping):
        clauses = []
        for op, operand in value.items():
            try:
                compare = _OPERATORS[op]
            except KeyError:
                raise QueryError(f"unknown operator '{op}'") from None
            clauses.append(compare(column, _key_of(operand)))
        return and_(true(), *clauses)
    if value is None:
        return column.is_(None)
    if isinstance(value, (list, tuple, set, frozenset)):
        return column.in_(_key_of(value))
    return column == _key_of(value)  # type: ignore[no-any-return]


def compile_condition(
    entity_type: EntityType, table: Table, condition: Mapping[str, Any] | None
) -> ColumnElement[bool]:
    """Compile a condition mapping into a SQLAlchemy boolean expression.

    Args:
        entity_type: Type whose fields the condition names.
        table: Backing table of `entity_type`.
        condition: The condition, `None` or empty matches every row.

    Raises:
        QueryError: on unknown fields, operators or malformed logical keys.
    """
    clauses = []
    for key, value in (condition or {}).items():
        if key in ("$and", "$or"):
            if not isinstance(value, Sequence) or isinstance(value, str):
                raise QueryError(f"'{key}' expects a list of conditions")
            parts = [compile_condition(entity_type, table, part) for part in value]
            clauses.append(and_(true(), *parts) if key == "$and" else or_(false(), *parts))
        elif key == "$not":
            clauses.append(not_(compile_condition(entity_type, table, value)))
        elif key.startswith("$"):
            raise QueryError(f"unknown operator '{key}'")
        else:
            clauses.append(_compare(_column(entity_type, table, key), value))
    return and_(true(), *clauses)


class QueryExecutor:
    """Runs filtered selects and counts against the registry's tables.

    Args:
        registry: Provides the tables.
        filters: Supplies the active filter conditions per entity type.
    """

    def __init__(self, registry: EntityRegistry, filters: FilterLayer) -> None:
        self._registry = registry
        self._filters = filters

    def where_clause(
        self,
        entity_type: EntityType,
        where: Mapping[str, Any] | None = None,
        *,
        filters: FilterOverrides | None = None,
        apply_filters: bool = True,
    ) -> ColumnElement[bool]:
        """The caller's condition AND-ed with the active filter conditions."""
        table = self._registry.table(entity_type)
        clauses = [compile_condition(entity_type, table, where)]
        if apply_filters:
            clauses.extend(
                compile_condition(entity_type, table, condition)
                for condition in self._filters.conditions(entity_type, filters)
            )
        return and_(*clauses)

    def select(  # pylint: disable=too-many-arguments
        self,
        conn: Connection,
        entity_type: EntityType,
        where: Mapping[str, Any] | None = None,
        *,
        filters: FilterOverrides | None = None,
        apply_filters: bool = True,
        order_by: Mapping[str, str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> Sequence[RowMapping]:
        """Fetch the rows matching `where` and the active filters."""
        table = self._registry.table(entity_type)
        statement = (
            select(table)
            .where(
                self.where_clause(
                    entity_type, where, filters=filters, apply_filters=apply_filters
                )
            )
            .order_by(*self._order_by(entity_type, table, order_by))
        )
        if limit is not None:
            statement = statement.limit(limit)
        if offset is not None:
            statement = statement.offset(offset)
        return conn.execute(statement).mappings().all()

    def count(
        self,
        conn: Connection,
        entity_type: EntityType,
        where: Mapping[str, Any] | None = None,
        *,
        filters: FilterOverrides | None = None,
    ) -> int:
        """Count the rows matching `where` and the active filters, ignoring pagination."""
        table = self._registry.table(entity_type)
        statement = (
            select(func.count())
            .select_from(table)
            .where(self.where_clause(entity_type, where, filters=filters))
        )
        return int(conn.execute(statement).scalar_one())

    @staticmethod
    def _order_by(
        entity_type: EntityType, table: Table, order_by: Mapping[str, str] | None
    ) -> list[Any]:
        pk_name = entity_type.primary_key.name
        order = dict(order_by or {})
        order.setdefault(pk_name, settings.orm.DEFAULT_ORDER)
        clauses = []
        for name, direction in order.items():
            column = _column(entity_type, table, name)
            direction = str(direction).lower()
            if direction not in ("asc", "desc"):
                raise QueryError(f"invalid order '{direction}' for {entity_type.name}.{name}")
            clauses.append(column.asc() if direction == "asc" else column.desc())
        return clauses
