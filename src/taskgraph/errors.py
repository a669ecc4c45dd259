"""Error taxonomy shared by the stores, the facade, the CLI and the web API.

Every error derives from ``ValueError`` so call sites that only care about
"the request was rejected" can keep catching ``ValueError``.
"""

from __future__ import annotations

from collections.abc import Sequence


class TaskGraphError(ValueError):
    pass


class ValidationError(TaskGraphError):
    """Malformed input rejected before anything was written."""


class NotFoundError(TaskGraphError):
    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"unknown {entity}: {entity_id}")


class InvariantError(TaskGraphError):
    """A write that would break a graph invariant; ``ids`` names the offenders."""

    code = "invariant_violation"

    def __init__(self, message: str, *, ids: Sequence[str] = ()) -> None:
        self.ids = tuple(ids)
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        return {"code": self.code, "message": str(self), "ids": list(self.ids)}


class CycleError(InvariantError):
    code = "dependency_cycle"

    def __init__(self, path: Sequence[str]) -> None:
        self.path = tuple(path)
        shown = self.path + self.path[:1]
        super().__init__(
            f"circular dependency detected: {' -> '.join(shown)}",
            ids=self.path,
        )


class StoryScopeError(InvariantError):
    code = "cross_story_dependency"


class StoryNestingError(InvariantError):
    code = "story_nesting"


class TransitionError(InvariantError):
    code = "invalid_transition"


class DependencyIncompleteError(InvariantError):
    code = "dependency_incomplete"


class DeletionBlockedError(InvariantError):
    code = "deletion_blocked"
