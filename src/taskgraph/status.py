"""Task lifecycle states and the story status aggregation rules.

A story's status is derived from its children. ``suggest_status`` is the
pure rule; ``recompute_story_status`` applies it inside the caller's
transaction and is invoked by every child insert, status change and delete.
Only the story row is written: the model is exactly two levels deep, so
there is never a grandparent to revisit.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .errors import TransitionError, ValidationError


TASK_STATUSES = (
    "backlog",
    "todo",
    "in_progress",
    "done",
)

_FORWARD_TRANSITIONS = {
    "backlog": {"todo", "in_progress", "done"},
    "todo": {"in_progress", "done"},
    "in_progress": {"done"},
    "done": set(),
}


def normalize_status(status: str) -> str:
    value = str(status).strip().lower()
    if value not in TASK_STATUSES:
        raise ValidationError(
            f"invalid status: {status} (expected one of: {', '.join(TASK_STATUSES)})"
        )
    return value


def validate_transition(task_id: str, current: str, target: str) -> None:
    """Reject nonsensical manual moves; skipping ahead and reopening are allowed."""
    if current == target:
        return
    if target == "todo":
        return
    if target == "backlog" and current == "todo":
        return
    if target in _FORWARD_TRANSITIONS.get(current, set()):
        return
    raise TransitionError(
        f"invalid transition for {task_id}: {current} -> {target}",
        ids=[task_id],
    )


@dataclass(frozen=True)
class StatusCounts:
    total: int = 0
    done: int = 0
    in_progress: int = 0
    todo: int = 0
    backlog: int = 0

    @property
    def completion_percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return self.done / self.total * 100

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "done": self.done,
            "in_progress": self.in_progress,
            "todo": self.todo,
            "backlog": self.backlog,
        }


def count_statuses(statuses: Iterable[str]) -> StatusCounts:
    tally = {status: 0 for status in TASK_STATUSES}
    total = 0
    for status in statuses:
        total += 1
        if status in tally:
            tally[status] += 1
    return StatusCounts(total=total, **tally)


def suggest_status(counts: StatusCounts, current: str) -> str:
    if counts.total == 0:
        return current
    if counts.done == counts.total:
        return "done"
    if counts.done > 0 or counts.in_progress > 0:
        return "in_progress"
    if counts.todo > 0:
        return "todo"
    # every child is in backlog: a story parked by hand keeps its status
    return current


def _child_counts(conn: sqlite3.Connection, story_id: str) -> StatusCounts:
    rows = conn.execute(
        "SELECT status FROM tasks WHERE parent_story_id = ?",
        (story_id,),
    ).fetchall()
    return count_statuses(str(row["status"]) for row in rows)


def recompute_story_status(
    conn: sqlite3.Connection,
    story_id: str | None,
    *,
    now: int,
) -> tuple[str, str] | None:
    """Rewrite the story's status from its children.

    Returns ``(old, new)`` when the status changed, otherwise ``None``.
    """
    if not story_id:
        return None
    row = conn.execute(
        "SELECT status FROM tasks WHERE id = ? AND is_story = 1",
        (story_id,),
    ).fetchone()
    if row is None:
        return None

    current = str(row["status"])
    target = suggest_status(_child_counts(conn, story_id), current)
    if target == current:
        return None

    conn.execute(
        "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
        (target, now, story_id),
    )
    return current, target


def story_health(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    stories = conn.execute(
        """
        SELECT id, title, status, created_at
        FROM tasks
        WHERE is_story = 1
        ORDER BY seq DESC
        """
    ).fetchall()
    if not stories:
        return []

    statuses_by_story: dict[str, list[str]] = {str(row["id"]): [] for row in stories}
    for row in conn.execute(
        "SELECT parent_story_id, status FROM tasks WHERE parent_story_id IS NOT NULL"
    ).fetchall():
        bucket = statuses_by_story.get(str(row["parent_story_id"]))
        if bucket is not None:
            bucket.append(str(row["status"]))

    out: list[dict[str, Any]] = []
    for row in stories:
        story_id = str(row["id"])
        current = str(row["status"])
        counts = count_statuses(statuses_by_story[story_id])
        suggested = suggest_status(counts, current)
        out.append(
            {
                "story_id": story_id,
                "title": str(row["title"]),
                "status": current,
                "suggested_status": suggested,
                "counts": counts.as_dict(),
                "completion_percentage": round(counts.completion_percentage, 2),
                "status_mismatch": counts.total > 0 and suggested != current,
                "safe_to_delete": counts.done == 0,
                "created_at": int(row["created_at"]),
            }
        )
    return out
