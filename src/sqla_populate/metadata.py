"""Entity type descriptors and the registry that holds them.

Entity types are declared as plain descriptor objects and collected in an
`EntityRegistry` at startup:

```python
Author = EntityType(
    "Author",
    fields=[Field("name", str)],
    relations=[OneToMany("books", "Book", inverse="author")],
)
Book = EntityType(
    "Book",
    fields=[Field("title", str), Field("deleted_at", datetime, nullable=True)],
    relations=[ManyToOne("author", "Author", inverse="books")],
    filters=[FilterDefinition("soft-delete", {"deleted_at": None}, default=True)],
)
registry = EntityRegistry([Author, Book])
```

`EntityRegistry.finalize()` validates the relation graph and builds a
SQLAlchemy `Table` for every registered type.
"""
from __future__ import annotations

import datetime
import decimal
import re
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)

from sqla_populate.exceptions import MetadataError, NotFoundError, QueryError

if TYPE_CHECKING:
    from sqlalchemy.types import TypeEngine

__all__ = [
    "MISSING",
    "Cardinality",
    "EntityRegistry",
    "EntityType",
    "Field",
    "FilterDefinition",
    "ManyToOne",
    "OneToMany",
    "PrimaryKey",
    "Relation",
]

logger = structlog.get_logger()

RESERVED_NAMES = frozenset({"entity_type", "pk"})
"""Attribute names used by `Entity` itself."""

_COLUMN_TYPES: dict[type, type[TypeEngine]] = {
    str: String,
    int: Integer,
    float: Float,
    bool: Boolean,
    datetime.datetime: DateTime,
    datetime.date: Date,
    decimal.Decimal: Numeric,
    dict: JSON,
    list: JSON,
}


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()
"""Marks a field without a default value."""


def _column_type(python_type: type) -> TypeEngine:
    try:
        return _COLUMN_TYPES[python_type]()
    except KeyError:
        raise MetadataError(f"no column type for python type {python_type!r}") from None


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class Cardinality(Enum):
    """Which side of a relation a field sits on."""

    ONE = "one"
    MANY = "many"


@dataclass(frozen=True)
class PrimaryKey:
    """Primary key of an entity type.

    Integer keys are assigned by the database on flush unless `autoincrement`
    is `False`.
    """

    name: str = "id"
    python_type: type = int
    autoincrement: bool | None = None
    info: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def auto(self) -> bool:
        """Whether keys are assigned by the database."""
        if self.autoincrement is None:
            return self.python_type is int
        return self.autoincrement

    def column(self) -> Column:
        return Column(
            self.name, _column_type(self.python_type), primary_key=True, autoincrement=self.auto
        )


@dataclass(frozen=True)
class Field:
    """A scalar field, stored in a column of the same name."""

    name: str
    python_type: type
    nullable: bool = False
    default: Any = MISSING
    default_factory: Callable[[], Any] | None = None
    info: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def required(self) -> bool:
        """`True` if a value must be given when creating an entity."""
        return self.default is MISSING and self.default_factory is None and not self.nullable

    def get_default(self) -> Any:
        """Default value for a new entity, `MISSING` if there is none."""
        if self.default_factory is not None:
            return self.default_factory()
        if self.default is not MISSING:
            return self.default
        if self.nullable:
            return None
        return MISSING

    def column(self) -> Column:
        return Column(self.name, _column_type(self.python_type), nullable=self.nullable)


@dataclass(frozen=True)
class Relation:
    """Base for relation fields.

    `target` is the name of the related entity type, `inverse` the name of
    the relation field on the target that points back.
    """

    cardinality: ClassVar[Cardinality]

    name: str
    target: str
    inverse: str | None = None
    info: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ManyToOne(Relation):
    """The owning side of a relation, stored as a foreign key column."""

    cardinality: ClassVar[Cardinality] = Cardinality.ONE

    nullable: bool = False
    column_name: str = ""

    def __post_init__(self) -> None:
        if not self.column_name:
            object.__setattr__(self, "column_name", f"{self.name}_id")


@dataclass(frozen=True)
class OneToMany(Relation):
    """The collection side of a relation, mapped by a `ManyToOne` on the target."""

    cardinality: ClassVar[Cardinality] = Cardinality.MANY

    def __post_init__(self) -> None:
        if not self.inverse:
            raise MetadataError(f"one-to-many relation '{self.name}' needs an inverse")


@dataclass(frozen=True)
class FilterDefinition:
    """A named condition merged into every query of the entity type.

    `cond` is a condition mapping, or a callable that receives the filter
    parameters and returns one.
    """

    name: str
    cond: Mapping[str, Any] | Callable[[Mapping[str, Any]], Mapping[str, Any]] = field(
        compare=False
    )
    default: bool = False

    def condition(self, params: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
        """The condition mapping for `params`.

        Raises:
            QueryError: if a callable condition rejects `params`.
        """
        if not callable(self.cond):
            return self.cond
        try:
            return self.cond(params or {})
        except (LookupError, TypeError, ValueError) as exc:
            raise QueryError(
                f"filter '{self.name}' can't be built from params {dict(params or {})!r}: {exc!r}"
            ) from exc


@dataclass(eq=False)
class EntityType:  # pylint: disable=too-many-instance-attributes
    """Describes one entity type: its key, scalar fields, relations and filters."""

    name: str
    fields: Sequence[Field] = ()
    relations: Sequence[Relation] = ()
    filters: Sequence[FilterDefinition] = ()
    primary_key: PrimaryKey = field(default_factory=PrimaryKey)
    table_name: str = ""
    _registry: EntityRegistry | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.fields = tuple(self.fields)
        self.relations = tuple(self.relations)
        self.filters = tuple(self.filters)
        if not self.table_name:
            self.table_name = _snake_case(self.name)

        names = [self.primary_key.name, *(f.name for f in self.fields)]
        names.extend(r.name for r in self.relations)
        seen: set[str] = set()
        for name in names:
            if name in seen:
                raise MetadataError(f"{self.name} declares '{name}' more than once")
            if name in RESERVED_NAMES or name.startswith("_"):
                raise MetadataError(f"{self.name} can't declare a field named '{name}'")
            seen.add(name)

        self._fields_by_name = {f.name: f for f in self.fields}
        self._relations_by_name = {r.name: r for r in self.relations}
        self._filters_by_name = {f.name: f for f in self.filters}

    def __repr__(self) -> str:
        return f"<EntityType {self.name}>"

    @property
    def registry(self) -> EntityRegistry:
        if self._registry is None:
            raise MetadataError(f"{self.name} is not registered")
        return self._registry

    @property
    def many_to_one(self) -> tuple[ManyToOne, ...]:
        return tuple(r for r in self.relations if isinstance(r, ManyToOne))

    @property
    def one_to_many(self) -> tuple[OneToMany, ...]:
        return tuple(r for r in self.relations if isinstance(r, OneToMany))

    def has_scalar(self, name: str) -> bool:
        """`True` for the primary key and scalar field names."""
        return name == self.primary_key.name or name in self._fields_by_name

    def scalar(self, name: str) -> Field:
        try:
            return self._fields_by_name[name]
        except KeyError:
            raise MetadataError(f"{self.name} has no field '{name}'") from None

    def has_relation(self, name: str) -> bool:
        return name in self._relations_by_name

    def relation(self, name: str) -> Relation:
        """Get a relation field by name.

        Raises:
            NotFoundError: if the type has no relation called `name`.
        """
        try:
            return self._relations_by_name[name]
        except KeyError:
            raise NotFoundError(f"{self.name} has no relation '{name}'") from None

    def get_filter(self, name: str) -> FilterDefinition | None:
        return self._filters_by_name.get(name)

    def target(self, relation: Relation) -> EntityType:
        """The entity type at the other end of `relation`."""
        return self.registry.get(relation.target)

    def columns(self) -> list[Column]:
        """Columns of the backing table, foreign keys resolved through the registry."""
        columns = [self.primary_key.column()]
        columns.extend(f.column() for f in self.fields)
        for relation in self.many_to_one:
            target = self.target(relation)
            columns.append(
                Column(
                    relation.column_name,
                    _column_type(target.primary_key.python_type),
                    ForeignKey(f"{target.table_name}.{target.primary_key.name}"),
                    nullable=relation.nullable,
                    index=True,
                )
            )
        return columns


class EntityRegistry:
    """Holds the entity types of an application.

    Args:
        entity_types: Types to register straight away.
        metadata: SQLAlchemy `MetaData` that receives the tables, a new one by default.
    """

    def __init__(
        self, entity_types: Iterable[EntityType] = (), *, metadata: MetaData | None = None
    ) -> None:
        self.metadata = metadata if metadata is not None else MetaData()
        self._types: dict[str, EntityType] = {}
        self._tables: dict[str, Table] = {}
        self._finalized = False
        for entity_type in entity_types:
            self.register(entity_type)

    def __iter__(self) -> Iterator[EntityType]:
        return iter(self._types.values())

    def __len__(self) -> int:
        return len(self._types)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, EntityType):
            return self._types.get(item.name) is item
        return item in self._types

    def register(self, entity_type: EntityType) -> EntityType:
        """Add `entity_type` to the registry.

        Raises:
            MetadataError: if the registry is finalized, the name is taken or the
                type belongs to another registry.
        """
        if self._finalized:
            raise MetadataError(f"can't register {entity_type.name}, registry is finalized")
        if entity_type.name in self._types:
            raise MetadataError(f"{entity_type.name} is already registered")
        if entity_type._registry is not None:  # pylint: disable=protected-access
            raise MetadataError(f"{entity_type.name} belongs to another registry")
        entity_type._registry = self  # pylint: disable=protected-access
        self._types[entity_type.name] = entity_type
        return entity_type

    def get(self, entity_type: EntityType | str) -> EntityType:
        """Look up a registered type by name, or check that a type is registered.

        Raises:
            MetadataError: if the type isn't registered here.
        """
        name = entity_type.name if isinstance(entity_type, EntityType) else entity_type
        try:
            found = self._types[name]
        except KeyError:
            raise MetadataError(f"entity type '{name}' is not registered") from None
        if isinstance(entity_type, EntityType) and found is not entity_type:
            raise MetadataError(f"{name} is registered with a different descriptor")
        return found

    def finalize(self) -> None:
        """Validate relations and build tables. Safe to call more than once."""
        if self._finalized:
            return
        for entity_type in self._types.values():
            self._validate_relations(entity_type)
        for entity_type in self._types.values():
            self._tables[entity_type.name] = Table(
                entity_type.table_name, self.metadata, *entity_type.columns()
            )
        self._finalized = True
        logger.debug("registry_finalized", entity_types=list(self._types))

    def table(self, entity_type: EntityType | str) -> Table:
        self.finalize()
        return self._tables[self.get(entity_type).name]

    def dependencies(self, entity_type: EntityType) -> set[str]:
        """Names of the types `entity_type` references, excluding itself."""
        return {r.target for r in entity_type.many_to_one if r.target != entity_type.name}

    def _validate_relations(self, entity_type: EntityType) -> None:
        for relation in entity_type.relations:
            if relation.target not in self._types:
                raise MetadataError(
                    f"{entity_type.name}.{relation.name} targets unknown type '{relation.target}'"
                )
            target = self._types[relation.target]
            if relation.inverse is None:
                continue
            inverse = target._relations_by_name.get(  # pylint: disable=protected-access
                relation.inverse
            )
            expected = ManyToOne if isinstance(relation, OneToMany) else OneToMany
            if (
                not isinstance(inverse, expected)
                or inverse.target != entity_type.name
                or (isinstance(inverse, OneToMany) and inverse.inverse != relation.name)
            ):
                raise MetadataError(
                    f"{entity_type.name}.{relation.name} expects {target.name}.{relation.inverse}"
                    f" to be the {expected.__name__} relation back to {entity_type.name}"
                )
