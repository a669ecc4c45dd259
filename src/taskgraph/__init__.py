from __future__ import annotations

from typing import TYPE_CHECKING

__all__ = [
    "__version__",
    "ExecutionOrder",
    "TaskGraph",
    "TaskGraphError",
    "TaskGraphEvent",
]

__version__ = "0.1.0"

if TYPE_CHECKING:
    from .errors import TaskGraphError
    from .events import TaskGraphEvent
    from .graph import TaskGraph
    from .ordering import ExecutionOrder


def __getattr__(name: str):
    if name == "TaskGraph":
        from .graph import TaskGraph

        return TaskGraph
    if name == "TaskGraphError":
        from .errors import TaskGraphError

        return TaskGraphError
    if name == "TaskGraphEvent":
        from .events import TaskGraphEvent

        return TaskGraphEvent
    if name == "ExecutionOrder":
        from .ordering import ExecutionOrder

        return ExecutionOrder
    raise AttributeError(f"module 'taskgraph' has no attribute {name!r}")
