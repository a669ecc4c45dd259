"""Guarded removal of tasks and stories.

Bulk removal by status classifies every candidate first and deletes in one
batch afterwards, so a delete can never change the outcome of a later
classification. A task is kept when:

- it is a story with at least one ``done`` child;
- it belongs to a story with at least one ``done`` child;
- any other task depends on it.

Children of a deleted story go with it (``ON DELETE CASCADE``) and are
reported as ``cascaded_ids``.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any

from .errors import DeletionBlockedError, NotFoundError
from .events import (
    STORY_DELETED,
    TASK_DELETED,
    TASKS_PRUNED,
    EventSink,
    TaskGraphEvent,
    deliver,
    make_event,
    story_status_event,
)
from .status import StatusCounts, count_statuses, normalize_status, recompute_story_status
from .stores.db import Database
from .stores.state import now_ms
from .stores.task import dependencies_by_task, dependent_ids, fetch_task_row, row_to_task


STORY_HAS_DONE_CHILDREN = "story has completed sub-tasks"
PARENT_HAS_DONE_CHILDREN = "parent story has completed sub-tasks"
HAS_DEPENDENTS = "other tasks depend on this task"


def _story_counts(conn: sqlite3.Connection, story_id: str) -> StatusCounts:
    rows = conn.execute(
        "SELECT status FROM tasks WHERE parent_story_id = ?",
        (story_id,),
    ).fetchall()
    return count_statuses(str(row["status"]) for row in rows)


def _completion_fields(counts: StatusCounts) -> dict[str, Any]:
    return {
        "completion_percentage": round(counts.completion_percentage, 2),
        "done_tasks": counts.done,
        "total_tasks": counts.total,
    }


def _delete_rows(conn: sqlite3.Connection, task_ids: list[str]) -> None:
    for task_id in task_ids:
        conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))


def _recompute_parents(
    conn: sqlite3.Connection,
    story_ids: list[str],
    *,
    trigger: str,
    now: int,
) -> list[TaskGraphEvent]:
    events: list[TaskGraphEvent] = []
    for story_id in story_ids:
        change = recompute_story_status(conn, story_id, now=now)
        if change is not None:
            events.append(story_status_event(story_id, change, trigger=trigger, timestamp=now))
    return events


def classify_for_deletion(
    conn: sqlite3.Connection,
    status: str,
) -> tuple[list[sqlite3.Row], list[dict[str, Any]]]:
    """Split the tasks at ``status`` into rows to delete and preserved entries."""
    rows = conn.execute(
        """
        SELECT id, title, parent_story_id, is_story
        FROM tasks
        WHERE status = ?
        ORDER BY seq ASC
        """,
        (status,),
    ).fetchall()

    counts_by_story: dict[str, StatusCounts] = {}

    def counts_for(story_id: str) -> StatusCounts:
        if story_id not in counts_by_story:
            counts_by_story[story_id] = _story_counts(conn, story_id)
        return counts_by_story[story_id]

    doomed: list[sqlite3.Row] = []
    preserved: list[dict[str, Any]] = []
    for row in rows:
        task_id = str(row["id"])
        entry: dict[str, Any] = {"id": task_id, "title": str(row["title"])}

        if row["is_story"]:
            counts = counts_for(task_id)
            if counts.done > 0:
                preserved.append(
                    {**entry, "reason": STORY_HAS_DONE_CHILDREN, **_completion_fields(counts)}
                )
                continue
        elif row["parent_story_id"] is not None:
            story_id = str(row["parent_story_id"])
            counts = counts_for(story_id)
            if counts.done > 0:
                preserved.append(
                    {
                        **entry,
                        "reason": PARENT_HAS_DONE_CHILDREN,
                        "story_id": story_id,
                        **_completion_fields(counts),
                    }
                )
                continue

        dependents = dependent_ids(conn, task_id)
        if dependents:
            preserved.append({**entry, "reason": HAS_DEPENDENTS, "dependents": dependents})
            continue
        doomed.append(row)

    return doomed, preserved


@dataclass
class DeletionGuard:
    db: Database
    event_sink: EventSink | None = None

    def safe_delete_by_status(self, status: str) -> dict[str, Any]:
        target = normalize_status(status)
        result: dict[str, Any] = {
            "status": target,
            "deleted_ids": [],
            "cascaded_ids": [],
            "preserved": [],
        }
        if not self.db.exists():
            return result

        now = now_ms()
        with self.db.transaction() as conn:
            doomed, preserved = classify_for_deletion(conn, target)
            deleted_ids = [str(row["id"]) for row in doomed]
            doomed_stories = {str(row["id"]) for row in doomed if row["is_story"]}

            cascaded: list[str] = []
            for story_id in sorted(doomed_stories):
                for child in conn.execute(
                    "SELECT id FROM tasks WHERE parent_story_id = ? ORDER BY seq ASC",
                    (story_id,),
                ).fetchall():
                    child_id = str(child["id"])
                    if child_id not in deleted_ids:
                        cascaded.append(child_id)
            # a preserved child cannot outlive the story that owns it
            preserved = [entry for entry in preserved if entry["id"] not in cascaded]

            parents: list[str] = []
            for row in doomed:
                parent = row["parent_story_id"]
                if parent is not None and str(parent) not in doomed_stories:
                    if str(parent) not in parents:
                        parents.append(str(parent))

            _delete_rows(conn, deleted_ids)
            events = _recompute_parents(conn, parents, trigger=f"prune:{target}", now=now)

        result["deleted_ids"] = deleted_ids
        result["cascaded_ids"] = cascaded
        result["preserved"] = preserved
        deliver(
            self.event_sink,
            [
                make_event(
                    TASKS_PRUNED,
                    {
                        "status": target,
                        "deleted_ids": list(deleted_ids),
                        "cascaded_ids": list(cascaded),
                        "preserved_ids": [entry["id"] for entry in preserved],
                    },
                    timestamp=now,
                ),
                *events,
            ],
        )
        return result

    def delete_task(self, task_id: str) -> dict[str, Any]:
        task_key = str(task_id or "").strip()
        now = now_ms()
        task: dict[str, Any] | None = None
        events: list[TaskGraphEvent] = []
        with self.db.transaction() as conn:
            row = fetch_task_row(conn, task_key)
            if row is None:
                raise NotFoundError("task", task_key)
            if not row["is_story"]:
                dependents = dependent_ids(conn, task_key)
                if dependents:
                    raise DeletionBlockedError(
                        f"cannot delete {task_key}: depended on by {', '.join(dependents)}",
                        ids=[task_key, *dependents],
                    )
                task = row_to_task(row, dependencies_by_task(conn, [task_key]).get(task_key, []))
                conn.execute("DELETE FROM tasks WHERE id = ?", (task_key,))
                parent = row["parent_story_id"]
                events = _recompute_parents(
                    conn,
                    [str(parent)] if parent is not None else [],
                    trigger=task_key,
                    now=now,
                )

        if task is None:
            return self.delete_story(task_key)

        deliver(
            self.event_sink,
            [make_event(TASK_DELETED, {"task": task}, timestamp=now), *events],
        )
        return task

    def delete_story(self, story_id: str, *, force: bool = False) -> dict[str, Any]:
        """Delete a story with all of its children.

        Refused when a child is ``done`` (unless ``force``) or when a task
        outside the story depends on the story or one of its children.
        """
        story_key = str(story_id or "").strip()
        now = now_ms()
        with self.db.transaction() as conn:
            row = fetch_task_row(conn, story_key)
            if row is None or not row["is_story"]:
                raise NotFoundError("story", story_key)

            children = conn.execute(
                "SELECT id, status FROM tasks WHERE parent_story_id = ? ORDER BY seq ASC",
                (story_key,),
            ).fetchall()
            child_ids = [str(child["id"]) for child in children]
            done_ids = [str(child["id"]) for child in children if child["status"] == "done"]
            if done_ids and not force:
                raise DeletionBlockedError(
                    f"cannot delete story {story_key}: {len(done_ids)} completed sub-task(s); "
                    "use force to delete anyway",
                    ids=[story_key, *done_ids],
                )

            members = {story_key, *child_ids}
            external: list[str] = []
            for member in [story_key, *child_ids]:
                for dependent in dependent_ids(conn, member):
                    if dependent not in members and dependent not in external:
                        external.append(dependent)
            if external:
                raise DeletionBlockedError(
                    f"cannot delete story {story_key}: depended on by {', '.join(external)}",
                    ids=[story_key, *external],
                )

            conn.execute("DELETE FROM tasks WHERE id = ?", (story_key,))

        result = {"story_id": story_key, "deleted_ids": [story_key, *child_ids], "forced": force}
        deliver(self.event_sink, [make_event(STORY_DELETED, dict(result), timestamp=now)])
        return result
