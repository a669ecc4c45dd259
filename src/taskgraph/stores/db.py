from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .state import resolve_state_dir


_SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    priority TEXT,
    tags TEXT NOT NULL DEFAULT '',
    parent_story_id TEXT,
    is_story INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    seq INTEGER NOT NULL,
    CHECK (NOT (is_story = 1 AND parent_story_id IS NOT NULL)),
    FOREIGN KEY(parent_story_id) REFERENCES tasks(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS task_deps (
    task_id TEXT NOT NULL,
    depends_on_task_id TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY(task_id, depends_on_task_id),
    CHECK (task_id != depends_on_task_id),
    FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE CASCADE,
    FOREIGN KEY(depends_on_task_id) REFERENCES tasks(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS resources (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    name TEXT NOT NULL,
    path TEXT,
    created_at INTEGER NOT NULL,
    UNIQUE(kind, name)
);
CREATE TABLE IF NOT EXISTS resource_edges (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    resource_id TEXT NOT NULL,
    action TEXT NOT NULL,
    confidence REAL,
    created_at INTEGER NOT NULL,
    UNIQUE(task_id, resource_id, action),
    FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE CASCADE,
    FOREIGN KEY(resource_id) REFERENCES resources(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_tasks_status_created ON tasks(status, seq);
CREATE INDEX IF NOT EXISTS idx_tasks_parent_status ON tasks(parent_story_id, status);
CREATE INDEX IF NOT EXISTS idx_task_deps_dst ON task_deps(depends_on_task_id);
CREATE INDEX IF NOT EXISTS idx_resource_edges_resource ON resource_edges(resource_id);
"""


@dataclass
class Database:
    """One sqlite file shared by every store; writes go through ``transaction``."""

    root: Path
    create_on_connect: bool = True
    timeout_s: float = 30.0

    @classmethod
    def from_workdir(
        cls,
        cwd: Path | None = None,
        *,
        create: bool = True,
    ) -> "Database":
        return cls(
            resolve_state_dir(cwd, create=create),
            create_on_connect=create,
        )

    @property
    def db_path(self) -> Path:
        return self.root / "taskgraph.sqlite3"

    def exists(self) -> bool:
        return self.db_path.exists()

    def _connect(self) -> sqlite3.Connection:
        if self.create_on_connect:
            self.root.mkdir(parents=True, exist_ok=True)
        elif not self.db_path.exists():
            raise FileNotFoundError(str(self.db_path))
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout_s,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.executescript(_SCHEMA)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        # IMMEDIATE takes the write lock up front so validation reads and the
        # write they guard cannot interleave with another writer.
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()
