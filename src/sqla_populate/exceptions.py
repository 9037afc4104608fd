"""Exceptions raised by the entity manager and its collaborators."""
from __future__ import annotations

from typing import Any

__all__ = [
    "ConstraintError",
    "EntityValidationError",
    "MetadataError",
    "NotFoundError",
    "NotLoadedError",
    "ORMError",
    "QueryError",
]


class ORMError(Exception):
    """Base exception type for the library.

    Args:
        *args: args are converted to `str` before passing to `Exception`.
    """

    def __init__(self, *args: Any) -> None:
        super().__init__(*(str(arg) for arg in args))


class MetadataError(ORMError):
    """An entity declaration is invalid, or an entity type isn't registered."""


class ConstraintError(ORMError):
    """A write would break a key or reference constraint."""


class NotFoundError(ORMError):
    """A populate path, or a required query result, does not exist."""


class NotLoadedError(ORMError):
    """A relation was read before it was populated."""


class QueryError(ORMError):
    """A query condition, ordering or filter override is invalid."""


class EntityValidationError(ORMError):
    """Values passed to `EntityManager.create()` failed validation.

    The originating `pydantic.ValidationError` is available as `__cause__`.
    """
