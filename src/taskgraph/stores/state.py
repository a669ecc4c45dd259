from __future__ import annotations

import os
import time
import uuid
from pathlib import Path


STATE_DIR_NAME = ".taskgraph"
STATE_DIR_ENV = "TASKGRAPH_STATE_DIR"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def resolve_state_dir(cwd: Path | None = None, *, create: bool = True) -> Path:
    """Return the taskgraph state directory, creating it if needed.

    Resolution order:
    1. TASKGRAPH_STATE_DIR
    2. nearest existing .taskgraph directory from cwd upward
    3. cwd/.taskgraph
    """
    raw = os.environ.get(STATE_DIR_ENV, "").strip()
    if raw:
        state_dir = Path(raw).expanduser().resolve()
    else:
        start = (cwd or Path.cwd()).resolve()
        state_dir = start / STATE_DIR_NAME
        for base in (start, *start.parents):
            candidate = base / STATE_DIR_NAME
            if candidate.exists() and candidate.is_dir():
                state_dir = candidate
                break

    if create:
        state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir
