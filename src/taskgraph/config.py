from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib

from .conflicts import ACTIVE_STATUSES


CONFIG_FILE_NAME = "taskgraph.toml"


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = True
    execution_order_ttl_s: float = 300.0
    dependency_graph_ttl_s: float = 900.0
    resource_usage_ttl_s: float = 900.0


@dataclass(frozen=True)
class ConflictConfig:
    active_statuses: tuple[str, ...] = ACTIVE_STATUSES


@dataclass(frozen=True)
class TaskGraphFileConfig:
    state_dir: Path
    path: Path
    cache: CacheConfig = field(default_factory=CacheConfig)
    conflicts: ConflictConfig = field(default_factory=ConflictConfig)
    error: str | None = None


class ConfigValidationError(ValueError):
    pass


def _as_table(value: object, *, name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigValidationError(f"[{name}] must be a table")
    return value


def _as_ttl(value: object, *, field: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigValidationError(f"{field} must be a number of seconds")
    if value < 0:
        raise ConfigValidationError(f"{field} cannot be negative")
    return float(value)


def _parse_cache(raw: object) -> CacheConfig:
    table = _as_table(raw, name="cache")
    defaults = CacheConfig()
    enabled = table.get("enabled", defaults.enabled)
    if not isinstance(enabled, bool):
        raise ConfigValidationError("[cache].enabled must be a boolean")
    return CacheConfig(
        enabled=enabled,
        execution_order_ttl_s=_as_ttl(
            table.get("execution_order_ttl_s"),
            field="[cache].execution_order_ttl_s",
            default=defaults.execution_order_ttl_s,
        ),
        dependency_graph_ttl_s=_as_ttl(
            table.get("dependency_graph_ttl_s"),
            field="[cache].dependency_graph_ttl_s",
            default=defaults.dependency_graph_ttl_s,
        ),
        resource_usage_ttl_s=_as_ttl(
            table.get("resource_usage_ttl_s"),
            field="[cache].resource_usage_ttl_s",
            default=defaults.resource_usage_ttl_s,
        ),
    )


def _parse_conflicts(raw: object) -> ConflictConfig:
    table = _as_table(raw, name="conflicts")
    value = table.get("active_statuses")
    if value is None:
        return ConflictConfig()
    if not isinstance(value, list):
        raise ConfigValidationError("[conflicts].active_statuses must be an array of strings")

    out: list[str] = []
    for idx, item in enumerate(value):
        text = str(item).strip().lower() if isinstance(item, str) else ""
        if text not in ACTIVE_STATUSES:
            raise ConfigValidationError(
                f"[conflicts].active_statuses[{idx}] must be one of: {', '.join(ACTIVE_STATUSES)}"
            )
        if text not in out:
            out.append(text)
    return ConflictConfig(active_statuses=tuple(out))


def load_config(state_dir: Path) -> TaskGraphFileConfig:
    """Read ``<state_dir>/taskgraph.toml``; problems are reported, not raised."""
    path = state_dir / CONFIG_FILE_NAME
    if not path.exists():
        return TaskGraphFileConfig(state_dir=state_dir, path=path)

    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        return TaskGraphFileConfig(
            state_dir=state_dir,
            path=path,
            error=f"invalid TOML in {path.name}: {exc}",
        )

    try:
        cache = _parse_cache(raw.get("cache"))
        conflicts = _parse_conflicts(raw.get("conflicts"))
    except ConfigValidationError as exc:
        return TaskGraphFileConfig(
            state_dir=state_dir,
            path=path,
            error=f"{path.name}: {exc}",
        )

    return TaskGraphFileConfig(
        state_dir=state_dir,
        path=path,
        cache=cache,
        conflicts=conflicts,
    )
