"""
Error taxonomy for the permission engine.

Lookups raise ``NotFound`` subclasses; writes raise ``DuplicateEntity``,
``CircularHierarchy``, ``HierarchyTooDeep`` or ``InvalidBulkOperation``;
``GuardMismatch`` always signals a caller bug. Store and cache connectivity
errors are not wrapped.
"""
from typing import Any, List, Optional, Sequence


class PermissionEngineError(Exception):
    """Base class for all errors raised by the engine."""


class NotFound(PermissionEngineError):
    """A permission or role lookup found no match for the guard."""

    entity = "entity"

    @classmethod
    def named(cls, name: str, guard: str = "") -> "NotFound":
        return cls(f"There is no {cls.entity} named `{name}` for guard `{guard}`.")

    @classmethod
    def with_id(cls, entity_id: int, guard: str = "") -> "NotFound":
        return cls(f"There is no {cls.entity} with id `{entity_id}` for guard `{guard}`.")


class PermissionNotFound(NotFound):
    entity = "permission"


class RoleNotFound(NotFound):
    entity = "role"


class DuplicateEntity(PermissionEngineError):
    """A create would violate the (name, guard, team) uniqueness rule."""

    def __init__(
        self,
        entity: str,
        name: str,
        guard: str,
        team_id: Optional[int] = None,
        existing_id: Optional[int] = None,
    ):
        self.entity = entity
        self.name = name
        self.guard = guard
        self.team_id = team_id
        self.existing_id = existing_id
        team = f", team `{team_id}`" if team_id is not None else ""
        super().__init__(
            f"A {entity} `{name}` already exists for guard `{guard}`{team} (id {existing_id})."
        )


class CircularHierarchy(PermissionEngineError):
    """Setting the parent would make a role its own ancestor."""

    def __init__(self, role: str, parent: Optional[str] = None, path: Sequence[Any] = ()):
        self.role = role
        self.parent = parent
        self.path = list(path)
        if parent is None:
            message = f"Role `{role}` is part of a circular hierarchy: {self.path}"
        else:
            message = (
                f"Cannot make `{parent}` the parent of `{role}`: "
                f"it would create a circular reference {self.path}"
            )
        super().__init__(message)


class GuardMismatch(PermissionEngineError):
    """A principal and a permission or role belong to different guards."""

    def __init__(self, expected: str, given: str, entity: str = "permission"):
        self.expected = expected
        self.given = given
        self.entity = entity
        super().__init__(
            f"The given {entity} with guard `{given}` does not match the guard `{expected}`."
        )


class HierarchyTooDeep(PermissionEngineError):
    """A role would sit deeper than the configured maximum."""

    def __init__(self, role: str, depth: int, max_depth: int):
        self.role = role
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(f"Role `{role}` would have depth {depth}, the maximum is {max_depth}.")


class InvalidBulkOperation(PermissionEngineError):
    """A batch failed validation; nothing was written."""

    def __init__(self, failures: List[Any], message: str = "Bulk operation rejected"):
        self.failures = failures
        super().__init__(f"{message}: {len(failures)} item(s) failed validation.")
