from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Callable

from .stores.state import now_ms


TASK_CREATED = "task_created"
TASK_UPDATED = "task_updated"
TASK_DELETED = "task_deleted"
STORY_DELETED = "story_deleted"
STORY_STATUS_CHANGED = "story_status_changed"
DEPENDENCIES_SAVED = "dependencies_saved"
TASKS_PRUNED = "tasks_pruned"

EVENT_TYPES = frozenset(
    {
        TASK_CREATED,
        TASK_UPDATED,
        TASK_DELETED,
        STORY_DELETED,
        STORY_STATUS_CHANGED,
        DEPENDENCIES_SAVED,
        TASKS_PRUNED,
    }
)


@dataclass(frozen=True)
class TaskGraphEvent:
    type: str
    timestamp: int
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "timestamp": self.timestamp, "payload": dict(self.payload)}


EventSink = Callable[[TaskGraphEvent], None]


def make_event(
    event_type: str,
    payload: dict[str, Any] | None = None,
    *,
    timestamp: int | None = None,
) -> TaskGraphEvent:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown event type: {event_type}")
    return TaskGraphEvent(
        type=event_type,
        timestamp=now_ms() if timestamp is None else timestamp,
        payload=dict(payload or {}),
    )


def story_status_event(
    story_id: str,
    change: tuple[str, str],
    *,
    trigger: str,
    timestamp: int,
) -> TaskGraphEvent:
    old, new = change
    return make_event(
        STORY_STATUS_CHANGED,
        {"story_id": story_id, "from": old, "to": new, "trigger": trigger},
        timestamp=timestamp,
    )


def deliver(sink: EventSink | None, events: Iterable[TaskGraphEvent]) -> None:
    if sink is None:
        return
    for event in events:
        sink(event)
