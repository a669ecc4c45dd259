"""Resource conflict detection between active tasks.

Conflicts are derived from the current edge set on every call and are never
stored. Classification is a coarse rule over the two declared actions:

- both sides write (``modifies``/``creates``): ``concurrent_write``, high
- one side ``modifies`` while the other ``uses``: ``concurrent_modify``, medium
- anything else (both ``uses``, or ``creates`` against ``uses``): ``potential_collision``, low
"""

from __future__ import annotations

import sqlite3
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any

from .stores.db import Database
from .stores.resource import WRITE_ACTIONS


ACTIVE_STATUSES = ("todo", "in_progress")
CONFLICT_TYPES = (
    "concurrent_write",
    "concurrent_modify",
    "potential_collision",
)
SEVERITIES = ("high", "medium", "low")
_SEVERITY_RANK = {severity: rank for rank, severity in enumerate(SEVERITIES)}


@dataclass(frozen=True)
class Conflict:
    task_id: str
    task_title: str
    resource_id: str
    resource_name: str
    conflict_type: str
    severity: str
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_title": self.task_title,
            "resource_id": self.resource_id,
            "resource_name": self.resource_name,
            "conflict_type": self.conflict_type,
            "severity": self.severity,
            "description": self.description,
        }


def classify(action: str, other_action: str) -> tuple[str, str]:
    """Return ``(conflict_type, severity)`` for two actions on one resource."""
    if action in WRITE_ACTIONS and other_action in WRITE_ACTIONS:
        return "concurrent_write", "high"
    if {action, other_action} == {"modifies", "uses"}:
        return "concurrent_modify", "medium"
    return "potential_collision", "low"


def describe(
    conflict_type: str,
    resource_name: str,
    actions: Collection[str] = ("uses", "uses"),
) -> str:
    if conflict_type == "concurrent_write":
        return f'Both tasks are modifying "{resource_name}" concurrently'
    if conflict_type == "concurrent_modify":
        return f'"{resource_name}" being modified while in use'
    if "creates" in actions:
        return f'"{resource_name}" being created while another task uses it'
    return f'Both tasks reading "{resource_name}" (usually safe)'


def detect_conflicts(
    conn: sqlite3.Connection,
    task_id: str,
    *,
    active_statuses: Collection[str] = ACTIVE_STATUSES,
) -> list[Conflict]:
    statuses = tuple(active_statuses)
    if not statuses:
        return []
    marks = ", ".join("?" for _ in statuses)
    rows = conn.execute(
        f"""
        SELECT
            other.task_id AS other_task_id,
            t.title AS other_title,
            mine.resource_id,
            r.name AS resource_name,
            mine.action AS my_action,
            other.action AS other_action
        FROM resource_edges mine
        JOIN resource_edges other
            ON other.resource_id = mine.resource_id
            AND other.task_id != mine.task_id
        JOIN tasks t ON t.id = other.task_id
        JOIN resources r ON r.id = mine.resource_id
        WHERE mine.task_id = ?
            AND t.status IN ({marks})
        ORDER BY t.seq ASC, r.name ASC
        """,
        (task_id, *statuses),
    ).fetchall()

    # one finding per (other task, resource): the most severe action pairing
    best: dict[tuple[str, str], Conflict] = {}
    for row in rows:
        conflict_type, severity = classify(str(row["my_action"]), str(row["other_action"]))
        key = (str(row["other_task_id"]), str(row["resource_id"]))
        current = best.get(key)
        if current is not None and _SEVERITY_RANK[current.severity] <= _SEVERITY_RANK[severity]:
            continue
        name = str(row["resource_name"])
        best[key] = Conflict(
            task_id=key[0],
            task_title=str(row["other_title"]),
            resource_id=key[1],
            resource_name=name,
            conflict_type=conflict_type,
            severity=severity,
            description=describe(
                conflict_type,
                name,
                (str(row["my_action"]), str(row["other_action"])),
            ),
        )
    return list(best.values())


@dataclass
class ConflictDetector:
    db: Database
    active_statuses: tuple[str, ...] = ACTIVE_STATUSES

    def conflicts_for(self, task_id: str) -> list[Conflict]:
        key = str(task_id or "").strip()
        if not key or not self.db.exists():
            return []
        with self.db.reader() as conn:
            return detect_conflicts(conn, key, active_statuses=self.active_statuses)
