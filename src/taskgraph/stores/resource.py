from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from ..errors import NotFoundError, ValidationError
from .db import Database
from .state import new_id, now_ms


RESOURCE_KINDS = (
    "file",
    "component",
    "api",
    "model",
)
EDGE_ACTIONS = (
    "uses",
    "modifies",
    "creates",
)
WRITE_ACTIONS = frozenset({"modifies", "creates"})


def normalize_kind(kind: str) -> str:
    value = str(kind or "").strip().lower()
    if value not in RESOURCE_KINDS:
        raise ValidationError(f"invalid resource kind: {kind}")
    return value


def normalize_action(action: str) -> str:
    value = str(action or "").strip().lower()
    if value not in EDGE_ACTIONS:
        raise ValidationError(f"invalid resource action: {action}")
    return value


@dataclass(frozen=True)
class ResourceSpec:
    """One analysed resource reference for a task."""

    kind: str
    name: str
    action: str
    path: str | None = None
    confidence: float | None = None

    @classmethod
    def parse(cls, value: "ResourceSpec | Mapping[str, Any]") -> "ResourceSpec":
        if isinstance(value, ResourceSpec):
            raw: Mapping[str, Any] = {
                "kind": value.kind,
                "name": value.name,
                "action": value.action,
                "path": value.path,
                "confidence": value.confidence,
            }
        elif isinstance(value, Mapping):
            raw = value
        else:
            raise ValidationError(f"resource entry must be a mapping, got {type(value).__name__}")

        name = str(raw.get("name") or "").strip()
        if not name:
            raise ValidationError("resource name cannot be empty")
        path = raw.get("path")
        path_value = str(path).strip() if path is not None and str(path).strip() else None

        confidence = raw.get("confidence")
        if confidence is not None:
            try:
                confidence = float(confidence)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"invalid confidence for {name}: {confidence!r}") from exc
            if not 0.0 <= confidence <= 1.0:
                raise ValidationError(f"confidence for {name} must be between 0 and 1")

        return cls(
            kind=normalize_kind(raw.get("kind") or raw.get("type") or ""),
            name=name,
            action=normalize_action(raw.get("action") or ""),
            path=path_value,
            confidence=confidence,
        )


def _row_to_resource(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "kind": str(row["kind"]),
        "name": str(row["name"]),
        "path": (str(row["path"]) if row["path"] is not None else None),
        "created_at": int(row["created_at"]),
    }


def upsert_resource(conn: sqlite3.Connection, spec: ResourceSpec, *, now: int) -> str:
    # path is the only mutable column; an absent path never clears a known one
    conn.execute(
        """
        INSERT INTO resources(id, kind, name, path, created_at)
        VALUES(?, ?, ?, ?, ?)
        ON CONFLICT(kind, name) DO UPDATE
            SET path = COALESCE(excluded.path, resources.path)
        """,
        (new_id("res"), spec.kind, spec.name, spec.path, now),
    )
    row = conn.execute(
        "SELECT id FROM resources WHERE kind = ? AND name = ?",
        (spec.kind, spec.name),
    ).fetchone()
    return str(row["id"])


def upsert_edge(
    conn: sqlite3.Connection,
    task_id: str,
    resource_id: str,
    spec: ResourceSpec,
    *,
    now: int,
) -> None:
    conn.execute(
        """
        INSERT INTO resource_edges(id, task_id, resource_id, action, confidence, created_at)
        VALUES(?, ?, ?, ?, ?, ?)
        ON CONFLICT(task_id, resource_id, action) DO UPDATE
            SET confidence = COALESCE(excluded.confidence, resource_edges.confidence)
        """,
        (new_id("edge"), task_id, resource_id, spec.action, spec.confidence, now),
    )


@dataclass
class ResourceStore:
    db: Database

    def save(
        self,
        task_id: str,
        resources: Iterable[ResourceSpec | Mapping[str, Any]],
    ) -> list[str]:
        """Upsert every resource and its edge for ``task_id`` in one transaction.

        Returns the distinct resource ids in input order. Nothing is written
        if any entry is malformed or any write fails.
        """
        task_key = str(task_id or "").strip()
        if not task_key:
            raise ValidationError("task id cannot be empty")
        specs = [ResourceSpec.parse(entry) for entry in resources]

        now = now_ms()
        resource_ids: list[str] = []
        with self.db.transaction() as conn:
            exists = conn.execute("SELECT 1 FROM tasks WHERE id = ?", (task_key,)).fetchone()
            if exists is None:
                raise NotFoundError("task", task_key)
            for spec in specs:
                resource_id = upsert_resource(conn, spec, now=now)
                upsert_edge(conn, task_key, resource_id, spec, now=now)
                if resource_id not in resource_ids:
                    resource_ids.append(resource_id)
        return resource_ids

    def get(self, resource_id: str) -> dict[str, Any] | None:
        key = str(resource_id or "").strip()
        if not key or not self.db.exists():
            return None
        with self.db.reader() as conn:
            row = conn.execute(
                "SELECT id, kind, name, path, created_at FROM resources WHERE id = ?",
                (key,),
            ).fetchone()
        return _row_to_resource(row) if row is not None else None

    def find(self, kind: str, name: str) -> dict[str, Any] | None:
        if not self.db.exists():
            return None
        with self.db.reader() as conn:
            row = conn.execute(
                "SELECT id, kind, name, path, created_at FROM resources WHERE kind = ? AND name = ?",
                (normalize_kind(kind), str(name).strip()),
            ).fetchone()
        return _row_to_resource(row) if row is not None else None

    def dependency_graph(self, task_id: str) -> dict[str, list[dict[str, Any]]]:
        key = str(task_id or "").strip()
        graph: dict[str, list[dict[str, Any]]] = {"nodes": [], "edges": []}
        if not key or not self.db.exists():
            return graph

        with self.db.reader() as conn:
            rows = conn.execute(
                """
                SELECT
                    e.id AS edge_id,
                    e.task_id,
                    e.resource_id,
                    e.action,
                    e.confidence,
                    e.created_at AS edge_created_at,
                    r.kind,
                    r.name,
                    r.path,
                    r.created_at AS resource_created_at
                FROM resource_edges e
                JOIN resources r ON r.id = e.resource_id
                WHERE e.task_id = ?
                ORDER BY e.created_at ASC, e.rowid ASC
                """,
                (key,),
            ).fetchall()

        seen: set[str] = set()
        for row in rows:
            resource_id = str(row["resource_id"])
            if resource_id not in seen:
                seen.add(resource_id)
                graph["nodes"].append(
                    {
                        "id": resource_id,
                        "kind": str(row["kind"]),
                        "name": str(row["name"]),
                        "path": (str(row["path"]) if row["path"] is not None else None),
                        "created_at": int(row["resource_created_at"]),
                    }
                )
            graph["edges"].append(
                {
                    "id": str(row["edge_id"]),
                    "task_id": str(row["task_id"]),
                    "resource_id": resource_id,
                    "action": str(row["action"]),
                    "confidence": row["confidence"],
                    "created_at": int(row["edge_created_at"]),
                }
            )
        return graph

    def usage(self, resource_id: str) -> dict[str, Any]:
        key = str(resource_id or "").strip()
        result: dict[str, Any] = {"resource": None, "tasks": []}
        if not key or not self.db.exists():
            return result

        with self.db.reader() as conn:
            resource = conn.execute(
                "SELECT id, kind, name, path, created_at FROM resources WHERE id = ?",
                (key,),
            ).fetchone()
            rows = conn.execute(
                """
                SELECT e.task_id, e.action, t.title, t.status
                FROM resource_edges e
                JOIN tasks t ON t.id = e.task_id
                WHERE e.resource_id = ?
                ORDER BY t.seq ASC, e.action ASC
                """,
                (key,),
            ).fetchall()

        if resource is not None:
            result["resource"] = _row_to_resource(resource)
        result["tasks"] = [
            {
                "task_id": str(row["task_id"]),
                "task_title": str(row["title"]),
                "task_status": str(row["status"]),
                "action": str(row["action"]),
            }
            for row in rows
        ]
        return result
