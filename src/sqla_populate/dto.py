"""Pydantic models inferred from entity type descriptors.

A `Purpose.WRITE` model validates the values given to
`EntityManager.create()`. A `Purpose.READ` model serializes an entity and its
populated relations through `from_entity()`.

Fields can be marked for DTO purposes through `Field.info`, which allows
demarcation of fields that should always be private, or read-only at the
declaration layer.
"""
from __future__ import annotations

from enum import Enum, auto
from typing import (
    TYPE_CHECKING,
    Annotated,
    Any,
    ClassVar,
    NamedTuple,
    Optional,
    TypedDict,
    cast,
)

from pydantic import AfterValidator, BaseModel, ConfigDict
from pydantic import Field as PydanticField
from pydantic import create_model
from pydantic.fields import FieldInfo

from sqla_populate import settings
from sqla_populate.entity import Collection, Entity, Reference
from sqla_populate.metadata import MISSING, Field, ManyToOne, OneToMany, PrimaryKey, Relation

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from sqla_populate.metadata import EntityType

_GENERATED_DTO_MODELS: dict[
    tuple[EntityType, str, Purpose, frozenset[EntityType]], type[_EntityBind]
] = {}


class Mark(str, Enum):
    """For marking field definitions on the entity types.

    Example:
    ```python
    EntityType(
        "User",
        fields=[Field("updated_at", datetime, info={"dto": Attrib(mark=Mark.READ_ONLY)})],
    )
    ```
    """

    READ_ONLY = "read-only"
    SKIP = "skip"


class Purpose(Enum):
    """For identifying the purpose of a DTO to the factory.

    The factory will exclude fields marked as private or read-only on the entity type depending
    on the purpose of the DTO.

    Example:
    ```python
    ReadDTO = dto.factory("AuthorReadDTO", Author, purpose=dto.Purpose.READ)
    ```
    """

    READ = auto()
    WRITE = auto()


class DTOInfo(TypedDict):
    """Represent dto infos suitable for the `info` param of `Field`."""

    dto: Attrib


class Attrib(NamedTuple):
    """For configuring DTO behavior on entity fields."""

    mark: Mark | None = None
    """Mark the field as read only, or skip."""
    pydantic_field: FieldInfo | None = None
    """If provided, used for the pydantic model for this attribute."""
    pydantic_type: Any | None = None
    """Override the field type on the pydantic model for this attribute."""
    validators: Iterable[Callable[[Any], Any]] | None = None
    """Single argument callables that are run on the field value after type validation."""


class _EntityBind(BaseModel):
    """Produce entity field values from, and read them into, a pydantic model."""

    __entity_type__: ClassVar[EntityType]
    __nested__: ClassVar[dict[str, type[_EntityBind] | None]] = {}

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    def __init_subclass__(  # pylint: disable=arguments-differ
        cls,
        entity_type: EntityType | None = None,
        nested: dict[str, type[_EntityBind] | None] | None = None,
        **kwargs: Any,
    ) -> None:
        if entity_type is not None:
            cls.__entity_type__ = entity_type
        if nested is not None:
            cls.__nested__ = nested
        super().__init_subclass__(**kwargs)

    def to_fields(self) -> dict[str, Any]:
        """Field values suitable for `EntityManager.create()`.

        Values are taken as they are, so entities given for relations are
        passed through untouched.
        """
        return {name: getattr(self, name) for name in type(self).model_fields}

    @classmethod
    def from_entity(cls, entity: Entity) -> _EntityBind:
        """Create an instance from `entity` and its populated relations.

        Unpopulated relations are `None`. Relations to a type that is already
        an ancestor in the DTO tree are given as primary keys.
        """
        if entity.entity_type is not cls.__entity_type__:
            raise TypeError(f"{cls.__name__} can't be built from {entity.entity_type.name}")
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            value = getattr(entity, name)
            nested = cls.__nested__.get(name)
            if isinstance(value, Reference):
                if nested is None:
                    values[name] = value.key
                elif value.is_resolved:
                    values[name] = nested.from_entity(cast("Entity", value.get()))
                else:
                    values[name] = None
            elif isinstance(value, Collection):
                if not value.is_initialized:
                    values[name] = None
                elif nested is None:
                    values[name] = [item.pk for item in value]
                else:
                    values[name] = [nested.from_entity(item) for item in value]
            else:
                values[name] = value
        return cls.model_validate(values)


def _construct_field_info(elem: Field | PrimaryKey | Relation, purpose: Purpose) -> FieldInfo:
    if purpose is Purpose.READ:
        if isinstance(elem, Relation):
            return cast("FieldInfo", PydanticField(default=None))
        return cast("FieldInfo", PydanticField(...))
    if isinstance(elem, PrimaryKey):
        if elem.auto:
            return cast("FieldInfo", PydanticField(default=None))
        return cast("FieldInfo", PydanticField(...))
    if isinstance(elem, OneToMany):
        return cast("FieldInfo", PydanticField(default_factory=list))
    if isinstance(elem, ManyToOne):
        if elem.nullable:
            return cast("FieldInfo", PydanticField(default=None))
        return cast("FieldInfo", PydanticField(...))
    if elem.default_factory is not None:
        return cast("FieldInfo", PydanticField(default_factory=elem.default_factory))
    if elem.default is not MISSING:
        return cast("FieldInfo", PydanticField(default=elem.default))
    if elem.nullable:
        return cast("FieldInfo", PydanticField(default=None))
    return cast("FieldInfo", PydanticField(...))


def _get_dto_attrib(elem: Field | PrimaryKey | Relation) -> Attrib:
    return cast("Attrib", elem.info.get(settings.orm.DTO_INFO_KEY, Attrib()))


def _should_exclude_field(
    purpose: Purpose,
    elem: Field | PrimaryKey | Relation,
    exclude: set[str],
    dto_attrib: Attrib,
) -> bool:
    if elem.name in exclude:
        return True
    if dto_attrib.mark is Mark.SKIP:
        return True
    if purpose is Purpose.WRITE and dto_attrib.mark is Mark.READ_ONLY:
        return True
    return False


def _inspect_entity(entity_type: EntityType) -> list[Field | PrimaryKey | Relation]:
    return [entity_type.primary_key, *entity_type.fields, *entity_type.relations]


def _reference_validator(target: EntityType) -> Callable[[Any], Any]:
    def validate(value: Any) -> Any:
        if isinstance(value, Entity):
            if value.entity_type.name != target.name:
                raise ValueError(f"expected {target.name}, got {value.entity_type.name}")
            return value
        if value is None or isinstance(value, target.primary_key.python_type):
            return value
        raise ValueError(f"expected {target.name} or its primary key, got {value!r}")

    return validate


def _entity_validator(target: EntityType) -> Callable[[Any], Any]:
    def validate(value: Any) -> Any:
        if not isinstance(value, Entity) or value.entity_type.name != target.name:
            raise ValueError(f"expected {target.name} entity, got {value!r}")
        return value

    return validate


def _resolve_type(
    name: str,
    entity_type: EntityType,
    elem: Field | PrimaryKey | Relation,
    parents: dict[EntityType, str],
    purpose: Purpose,
) -> Any:
    if isinstance(elem, PrimaryKey):
        return Optional[elem.python_type] if elem.auto else elem.python_type
    if isinstance(elem, Field):
        return Optional[elem.python_type] if elem.nullable else elem.python_type

    target = entity_type.target(elem)
    if purpose is Purpose.WRITE:
        if isinstance(elem, ManyToOne):
            return Annotated[Any, AfterValidator(_reference_validator(target))]
        return list[Annotated[Any, AfterValidator(_entity_validator(target))]]

    # relations back to a type already in the tree are given as keys
    if target in parents:
        item_type: Any = target.primary_key.python_type
    else:
        model_name = target.name
        item_type = factory(
            f"{name}_{model_name}",
            target,
            purpose=purpose,
            model_name=model_name,
            parents=parents,
        )
    if isinstance(elem, ManyToOne):
        return Optional[item_type]
    return Optional[list[item_type]]  # type: ignore[valid-type]


def mark(mark_type: Mark) -> DTOInfo:
    """Shortcut for ```python.

    {"dto": Attrib(mark=mark_type)}
    ```

    Example:

    ```python
    EntityType(
        "User",
        fields=[
            Field("email", str),
            Field("password_hash", str, info=dto.mark(dto.Mark.SKIP)),
        ],
    )
    ```

    Args:
        mark_type: dto Mark

    Returns:
        A `DTOInfo` suitable to pass to `info` param of `Field`
    """
    return {"dto": Attrib(mark=mark_type)}


def factory(
    name: str,
    entity_type: EntityType,
    purpose: Purpose,
    *,
    exclude: set[str] | None = None,
    base: type[BaseModel] | None = None,
    model_name: str | None = None,
    parents: dict[EntityType, str] | None = None,
) -> type[_EntityBind]:
    """Infer a Pydantic model from an entity type.

    The fields that are included in the model can be controlled on the entity type
    declaration by including a "dto" key in the `Field.info` mapping. For example:

    ```python
    User = EntityType(
        "User",
        primary_key=PrimaryKey("id", UUID, info={"dto": Attrib(mark=dto.Mark.READ_ONLY)}),
        fields=[
            Field("email", str),
            Field("password_hash", str, info={"dto": Attrib(mark=dto.Mark.SKIP)}),
        ],
    )
    ```

    In the above example, a DTO generated for `Purpose.READ` will include the `id` and `email`
    fields, while a model generated for `Purpose.WRITE` will only include a field for `email`.
    Notice that fields marked as `Mark.SKIP` will not have a field produced in any DTO object.

    Relations are validated as entities (or primary keys for many-to-one) on write models.
    On read models they nest a DTO of the related type, or hold primary keys when the
    related type is already an ancestor in the DTO tree.

    Args:
        name: Name given to the DTO class.
        entity_type: The entity type descriptor, registered in a registry.
        purpose: Is the DTO for write or read operations?
        exclude: Explicitly exclude attributes from the DTO.
        base: A subclass of `pydantic.BaseModel` to be used as the base class of the DTO.

    Returns:
        A Pydantic model that includes only fields that are appropriate to `purpose` and not in
        `exclude`.
    """
    model_name = model_name or name
    cache_key = (entity_type, model_name, purpose, frozenset(parents or ()))
    if cache_key in _GENERATED_DTO_MODELS:
        return _GENERATED_DTO_MODELS[cache_key]
    parents = {} if parents is None else dict(parents)
    parents[entity_type] = name

    exclude = set() if exclude is None else exclude

    fields: dict[str, tuple[Any, FieldInfo]] = {}
    nested: dict[str, type[_EntityBind] | None] = {}
    for elem in _inspect_entity(entity_type):
        key = elem.name
        # don't override fields that already exist on `base`.
        if base is not None and key in base.model_fields:
            continue

        attrib = _get_dto_attrib(elem)

        if _should_exclude_field(purpose, elem, exclude, attrib):
            continue

        type_hint = _resolve_type(name, entity_type, elem, parents, purpose)
        if attrib.pydantic_type is not None:
            type_hint = attrib.pydantic_type

        validators = [AfterValidator(func) for func in attrib.validators or []]
        if validators:
            type_hint = Annotated[(type_hint, *validators)]  # type: ignore[valid-type]

        if isinstance(elem, Relation):
            nested[key] = _nested_model(type_hint)

        fields[key] = (type_hint, attrib.pydantic_field or _construct_field_info(elem, purpose))

    model = create_model(  # type:ignore[call-overload]
        name,
        __base__=tuple(filter(None, (base, _EntityBind))),
        __cls_kwargs__={"entity_type": entity_type, "nested": nested},
        __module__=__name__,
        **fields,
    )
    _GENERATED_DTO_MODELS[cache_key] = model
    return cast("type[_EntityBind]", model)


def _nested_model(type_hint: Any) -> type[_EntityBind] | None:
    """The DTO class inside `Optional[X]` or `Optional[list[X]]`, if any."""
    stack = [type_hint]
    while stack:
        current = stack.pop()
        if isinstance(current, type) and issubclass(current, _EntityBind):
            return current
        stack.extend(getattr(current, "__args__", ()))
    return None


def decorator(
    entity_type: EntityType, purpose: Purpose, *, exclude: set[str] | None = None
) -> Callable[[type[BaseModel]], type[_EntityBind]]:
    """Infer a Pydantic model from an entity type."""

    def wrapper(cls: type[BaseModel]) -> type[_EntityBind]:
        def wrapped() -> type[_EntityBind]:
            return factory(cls.__name__, entity_type, purpose, exclude=exclude, base=cls)

        return wrapped()

    return wrapper
