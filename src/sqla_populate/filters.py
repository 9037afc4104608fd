"""Filter layer: named conditions merged into queries unless disabled.

Filters are declared per entity type with `FilterDefinition`. On each query
the caller can override them by name:

- `{"soft-delete": False}` disables a filter,
- `{"published": True}` enables a filter that is off by default,
- `{"tenant": {"id": 3}}` enables a filter and passes it parameters.

Overrides are matched by name across all entity types, so the same mapping can
be passed to a query whose populated relations use other filters.
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Union

import structlog

from sqla_populate.exceptions import QueryError

if TYPE_CHECKING:
    from sqla_populate.metadata import EntityRegistry, EntityType, FilterDefinition

__all__ = ["FilterLayer", "FilterOverrides"]

FilterOverrides = Mapping[str, Union[bool, Mapping[str, Any]]]

logger = structlog.get_logger()


class FilterLayer:
    """Resolves the active filters of an entity type for a query.

    Args:
        registry: Used to validate filter names.
    """

    def __init__(self, registry: EntityRegistry) -> None:
        self._registry = registry
        self._params: dict[str, dict[str, Any]] = {}

    def set_params(self, name: str, params: Mapping[str, Any]) -> None:
        """Default parameters passed to filter `name` when it is active."""
        self.validate({name: True})
        self._params[name] = dict(params)

    @property
    def params(self) -> dict[str, dict[str, Any]]:
        """Parameters set per filter name."""
        return {name: dict(params) for name, params in self._params.items()}

    def get_params(self, name: str) -> dict[str, Any]:
        return dict(self._params.get(name, {}))

    def validate(self, overrides: FilterOverrides | None) -> None:
        """Check that every override names a declared filter.

        Raises:
            QueryError: on unknown names or values that are neither bool nor mapping.
        """
        if not overrides:
            return
        known = {f.name for entity_type in self._registry for f in entity_type.filters}
        for name, value in overrides.items():
            if name not in known:
                raise QueryError(f"unknown filter '{name}'")
            if not isinstance(value, (bool, Mapping)):
                raise QueryError(f"filter '{name}' override must be a bool or a mapping")

    def active(
        self, entity_type: EntityType, overrides: FilterOverrides | None = None
    ) -> list[tuple[FilterDefinition, dict[str, Any]]]:
        """Filters of `entity_type` that apply, with their parameters."""
        overrides = overrides or {}
        active = []
        for definition in entity_type.filters:
            override = overrides.get(definition.name)
            if override is False or (override is None and not definition.default):
                continue
            params = self.get_params(definition.name)
            if isinstance(override, Mapping):
                params.update(override)
            active.append((definition, params))
        return active

    def conditions(
        self, entity_type: EntityType, overrides: FilterOverrides | None = None
    ) -> list[Mapping[str, Any]]:
        """Condition mappings of the active filters of `entity_type`."""
        conditions = []
        for definition, params in self.active(entity_type, overrides):
            logger.debug("filter_applied", entity_type=entity_type.name, filter=definition.name)
            conditions.append(definition.condition(params))
        return conditions
