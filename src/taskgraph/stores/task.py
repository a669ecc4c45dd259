from __future__ import annotations

import json
import sqlite3
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from ..errors import (
    CycleError,
    DependencyIncompleteError,
    NotFoundError,
    StoryNestingError,
    StoryScopeError,
    ValidationError,
)
from ..events import (
    TASK_CREATED,
    TASK_UPDATED,
    EventSink,
    TaskGraphEvent,
    deliver,
    make_event,
    story_status_event,
)
from ..status import normalize_status, recompute_story_status, validate_transition
from .db import Database
from .state import new_id, now_ms


TASK_PRIORITIES = (
    "low",
    "medium",
    "high",
    "urgent",
)

_TASK_COLUMNS = """
    id, title, description, status, priority, tags, parent_story_id,
    is_story, created_at, updated_at
"""


def _normalize_title(title: str) -> str:
    value = str(title or "").strip()
    if not value:
        raise ValidationError("title cannot be empty")
    return value


def _normalize_priority(priority: str | None) -> str | None:
    if priority is None:
        return None
    value = str(priority).strip().lower()
    if not value:
        return None
    if value not in TASK_PRIORITIES:
        raise ValidationError(f"invalid priority: {priority}")
    return value


def _normalize_tags(tags: Iterable[str] | None) -> list[str]:
    return sorted({str(t).strip() for t in (tags or []) if str(t).strip()})


def _normalize_ids(values: Iterable[str] | None, *, field: str) -> list[str]:
    out: list[str] = []
    for raw in values or []:
        value = str(raw).strip()
        if not value:
            raise ValidationError(f"{field} cannot contain empty ids")
        if value not in out:
            out.append(value)
    return out


def fetch_task_row(conn: sqlite3.Connection, task_id: str) -> sqlite3.Row | None:
    return conn.execute(
        f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?",
        (task_id,),
    ).fetchone()


def dependencies_by_task(
    conn: sqlite3.Connection,
    task_ids: Sequence[str] | None = None,
) -> dict[str, list[str]]:
    """Map task id -> ids it depends on, in edge creation order."""
    query = "SELECT task_id, depends_on_task_id FROM task_deps"
    params: tuple[Any, ...] = ()
    if task_ids is not None:
        if not task_ids:
            return {}
        marks = ", ".join("?" for _ in task_ids)
        query += f" WHERE task_id IN ({marks})"
        params = tuple(task_ids)
    query += " ORDER BY created_at ASC, rowid ASC"

    deps: dict[str, list[str]] = {}
    for row in conn.execute(query, params).fetchall():
        deps.setdefault(str(row["task_id"]), []).append(str(row["depends_on_task_id"]))
    return deps


def dependent_ids(conn: sqlite3.Connection, task_id: str) -> list[str]:
    rows = conn.execute(
        """
        SELECT d.task_id
        FROM task_deps d
        JOIN tasks t ON t.id = d.task_id
        WHERE d.depends_on_task_id = ?
        ORDER BY t.seq ASC
        """,
        (task_id,),
    ).fetchall()
    return [str(row["task_id"]) for row in rows]


def row_to_task(row: sqlite3.Row, dependencies: list[str]) -> dict[str, Any]:
    raw_tags = row["tags"]
    return {
        "id": str(row["id"]),
        "title": str(row["title"]),
        "description": str(row["description"]),
        "status": str(row["status"]),
        "priority": (str(row["priority"]) if row["priority"] is not None else None),
        "tags": json.loads(raw_tags) if raw_tags else [],
        "parent_story_id": (
            str(row["parent_story_id"]) if row["parent_story_id"] is not None else None
        ),
        "is_story": bool(row["is_story"]),
        "dependencies": list(dependencies),
        "created_at": int(row["created_at"]),
        "updated_at": int(row["updated_at"]),
    }


def find_dependency_path(
    adjacency: dict[str, list[str]],
    start: str,
    goal: str,
) -> list[str] | None:
    """Shortest walk ``start -> ... -> goal`` along depends-on edges."""
    previous: dict[str, str | None] = {start: None}
    queue: deque[str] = deque([start])
    while queue:
        node = queue.popleft()
        if node == goal:
            path = [node]
            while previous[path[-1]] is not None:
                path.append(previous[path[-1]])  # type: ignore[arg-type]
            return list(reversed(path))
        for nxt in adjacency.get(node, []):
            if nxt not in previous:
                previous[nxt] = node
                queue.append(nxt)
    return None


def _check_dependencies_done(
    conn: sqlite3.Connection,
    task_id: str,
    dependencies: Sequence[str],
) -> None:
    for dep_id in dependencies:
        row = conn.execute(
            "SELECT title, status FROM tasks WHERE id = ?",
            (dep_id,),
        ).fetchone()
        if row is not None and str(row["status"]) != "done":
            raise DependencyIncompleteError(
                f"dependency task {dep_id} ({row['title']}) is not done yet",
                ids=[task_id, dep_id],
            )


def write_dependencies(
    conn: sqlite3.Connection,
    task_id: str,
    story_id: str | None,
    dependencies: Sequence[str],
    *,
    now: int,
) -> None:
    """Replace ``task_id``'s outgoing edges, validating each one against the
    graph as it stands inside the current transaction."""
    conn.execute("DELETE FROM task_deps WHERE task_id = ?", (task_id,))
    adjacency = dependencies_by_task(conn)

    for dep_id in dependencies:
        if dep_id == task_id:
            raise ValidationError(f"task cannot depend on itself: {task_id}")
        dep = conn.execute(
            "SELECT parent_story_id FROM tasks WHERE id = ?",
            (dep_id,),
        ).fetchone()
        if dep is None:
            raise NotFoundError("task", dep_id)
        dep_story = dep["parent_story_id"]
        if dep_story != story_id:
            raise StoryScopeError(
                "task dependencies must be within the same story: "
                f"{task_id} belongs to {story_id or 'no story'}, "
                f"{dep_id} belongs to {dep_story or 'no story'}",
                ids=[task_id, dep_id],
            )

        back = find_dependency_path(adjacency, dep_id, task_id)
        if back is not None:
            raise CycleError([task_id, *back[:-1]])

        conn.execute(
            """
            INSERT INTO task_deps(task_id, depends_on_task_id, created_at)
            VALUES(?, ?, ?)
            ON CONFLICT(task_id, depends_on_task_id) DO NOTHING
            """,
            (task_id, dep_id, now),
        )
        adjacency.setdefault(task_id, []).append(dep_id)


@dataclass
class TaskStore:
    db: Database
    event_sink: EventSink | None = None

    def _emit(self, events: list[TaskGraphEvent]) -> None:
        deliver(self.event_sink, events)

    def create(
        self,
        title: str,
        *,
        description: str = "",
        status: str = "backlog",
        parent_story_id: str | None = None,
        is_story: bool = False,
        dependencies: Iterable[str] | None = None,
        priority: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        task_title = _normalize_title(title)
        task_status = normalize_status(status)
        task_priority = _normalize_priority(priority)
        task_tags = _normalize_tags(tags)
        deps = _normalize_ids(dependencies, field="dependencies")
        parent_id = str(parent_story_id).strip() if parent_story_id else None

        task_id = new_id("task")
        if is_story and parent_id:
            raise StoryNestingError(
                f"a story cannot belong to another story: {parent_id}",
                ids=[parent_id],
            )

        now = now_ms()
        events: list[TaskGraphEvent] = []
        with self.db.transaction() as conn:
            if parent_id:
                parent = fetch_task_row(conn, parent_id)
                if parent is None:
                    raise NotFoundError("story", parent_id)
                if not parent["is_story"]:
                    raise StoryNestingError(
                        f"referenced parent {parent_id} is not a story",
                        ids=[parent_id],
                    )

            seq = int(conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM tasks").fetchone()[0])
            conn.execute(
                f"""
                INSERT INTO tasks({_TASK_COLUMNS}, seq)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task_id,
                    task_title,
                    description or "",
                    task_status,
                    task_priority,
                    json.dumps(task_tags),
                    parent_id,
                    1 if is_story else 0,
                    now,
                    now,
                    seq,
                ),
            )
            write_dependencies(conn, task_id, parent_id, deps, now=now)
            if task_status == "in_progress":
                _check_dependencies_done(conn, task_id, deps)

            change = recompute_story_status(conn, parent_id, now=now)
            task = row_to_task(fetch_task_row(conn, task_id), deps)  # type: ignore[arg-type]

        events.append(make_event(TASK_CREATED, {"task": task}, timestamp=now))
        if change is not None and parent_id:
            events.append(story_status_event(parent_id, change, trigger=task_id, timestamp=now))
        self._emit(events)
        return task

    def get(self, task_id: str) -> dict[str, Any] | None:
        task_key = str(task_id or "").strip()
        if not task_key:
            return None
        if not self.db.exists():
            return None
        with self.db.reader() as conn:
            row = fetch_task_row(conn, task_key)
            if row is None:
                return None
            deps = dependencies_by_task(conn, [task_key]).get(task_key, [])
        return row_to_task(row, deps)

    def require(self, task_id: str) -> dict[str, Any]:
        task = self.get(task_id)
        if task is None:
            raise NotFoundError("task", str(task_id))
        return task

    def list(
        self,
        *,
        status: str | None = None,
        story_id: str | None = None,
        is_story: bool | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        if not self.db.exists():
            return []

        where: list[str] = []
        params: list[Any] = []
        if status:
            where.append("status = ?")
            params.append(normalize_status(status))
        if story_id:
            where.append("parent_story_id = ?")
            params.append(story_id.strip())
        if is_story is not None:
            where.append("is_story = ?")
            params.append(1 if is_story else 0)

        query = f"SELECT {_TASK_COLUMNS} FROM tasks"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += " ORDER BY seq ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(1, int(limit)))

        with self.db.reader() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
            deps = dependencies_by_task(conn, [str(row["id"]) for row in rows])
        return [row_to_task(row, deps.get(str(row["id"]), [])) for row in rows]

    def children(self, story_id: str) -> list[dict[str, Any]]:
        return self.list(story_id=story_id)

    def update(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        status: str | None = None,
        priority: str | None = None,
        tags: Iterable[str] | None = None,
        dependencies: Iterable[str] | None = None,
        add_dependencies: Iterable[str] | None = None,
        remove_dependencies: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        task_key = str(task_id or "").strip()
        if not task_key:
            raise ValidationError("task id cannot be empty")

        set_parts: list[str] = []
        params: list[Any] = []
        changes: dict[str, Any] = {}

        if title is not None:
            clean = _normalize_title(title)
            set_parts.append("title = ?")
            params.append(clean)
            changes["title"] = clean
        if description is not None:
            set_parts.append("description = ?")
            params.append(description)
            changes["description"] = description
        if priority is not None:
            value = _normalize_priority(priority)
            set_parts.append("priority = ?")
            params.append(value)
            changes["priority"] = value
        if tags is not None:
            tag_list = _normalize_tags(tags)
            set_parts.append("tags = ?")
            params.append(json.dumps(tag_list))
            changes["tags"] = tag_list
        target_status = normalize_status(status) if status is not None else None
        deps = (
            _normalize_ids(dependencies, field="dependencies")
            if dependencies is not None
            else None
        )
        additions = _normalize_ids(add_dependencies, field="add_dependencies")
        removals = _normalize_ids(remove_dependencies, field="remove_dependencies")

        now = now_ms()
        change: tuple[str, str] | None = None
        with self.db.transaction() as conn:
            row = fetch_task_row(conn, task_key)
            if row is None:
                raise NotFoundError("task", task_key)
            current_status = str(row["status"])
            story_id = row["parent_story_id"]

            if deps is not None or additions or removals:
                current_deps = dependencies_by_task(conn, [task_key]).get(task_key, [])
                base = current_deps if deps is None else deps
                target = [dep for dep in base if dep not in removals]
                target.extend(dep for dep in additions if dep not in target)
                if deps is not None or target != current_deps:
                    write_dependencies(conn, task_key, story_id, target, now=now)
                    changes["dependencies"] = target

            if target_status is not None and target_status != current_status:
                validate_transition(task_key, current_status, target_status)
                if target_status == "in_progress":
                    current_deps = dependencies_by_task(conn, [task_key]).get(task_key, [])
                    _check_dependencies_done(conn, task_key, current_deps)
                set_parts.append("status = ?")
                params.append(target_status)
                changes["status"] = target_status

            if set_parts or "dependencies" in changes:
                conn.execute(
                    f"UPDATE tasks SET {', '.join([*set_parts, 'updated_at = ?'])} WHERE id = ?",
                    (*params, now, task_key),
                )
            if "status" in changes:
                change = recompute_story_status(conn, story_id, now=now)

            task = row_to_task(
                fetch_task_row(conn, task_key),  # type: ignore[arg-type]
                dependencies_by_task(conn, [task_key]).get(task_key, []),
            )

        if changes:
            events = [make_event(TASK_UPDATED, {"task": task, "changes": changes}, timestamp=now)]
            if change is not None and story_id:
                events.append(
                    story_status_event(str(story_id), change, trigger=task_key, timestamp=now)
                )
            self._emit(events)
        return task

    def set_status(self, task_id: str, status: str) -> dict[str, Any]:
        return self.update(task_id, status=status)

    def set_dependencies(self, task_id: str, dependencies: Iterable[str]) -> dict[str, Any]:
        return self.update(task_id, dependencies=list(dependencies))

    def add_dependency(self, task_id: str, depends_on: str) -> dict[str, Any]:
        dep_id = str(depends_on or "").strip()
        if not dep_id:
            raise ValidationError("dependency id cannot be empty")
        return self.update(task_id, add_dependencies=[dep_id])

    def remove_dependency(self, task_id: str, depends_on: str) -> dict[str, Any]:
        dep_id = str(depends_on or "").strip()
        if not dep_id:
            raise ValidationError("dependency id cannot be empty")
        return self.update(task_id, remove_dependencies=[dep_id])

    def dependents(self, task_id: str) -> list[str]:
        if not self.db.exists():
            return []
        with self.db.reader() as conn:
            return dependent_ids(conn, task_id.strip())
