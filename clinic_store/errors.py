"""
Errors raised by the clinic store.

Every error carries the entity, field and offending value (when known) so the
calling collaborator can act on it without parsing messages.
"""
from __future__ import annotations

from typing import Any


class StoreError(Exception):
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        entity: str | None = None,
        field: str | None = None,
        value: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.field = field
        self.value = value

    def as_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "entity": self.entity,
            "field": self.field,
            "value": self.value,
            "retryable": self.retryable,
        }


class ConstraintError(StoreError):
    """A proposed mutation would violate an invariant; nothing was written."""


class ValidationError(ConstraintError):
    """Local field constraint: range, enum membership, required-ness, type."""


class UniquenessError(ConstraintError):
    """Value collides with an existing unique key."""


class InvalidReferenceError(ConstraintError):
    """Foreign reference does not resolve to an existing row."""


class RestrictedDeleteError(ConstraintError):
    def __init__(self, message: str, *, dependent: str, count: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.dependent = dependent
        self.count = count

    def as_dict(self) -> dict[str, Any]:
        data = super().as_dict()
        data.update(dependent=self.dependent, count=self.count)
        return data


class NotFoundError(StoreError):
    pass


class ConflictError(StoreError):
    """A concurrent transaction interfered. Safe to retry."""

    retryable = True
