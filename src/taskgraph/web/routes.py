"""JSON API routes for the task graph."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from .. import __version__
from ..graph import TaskGraph

router = APIRouter()


def _graph(req: Request) -> TaskGraph:
    return req.app.state.graph


class TaskCreate(BaseModel):
    title: str
    description: str = ""
    status: str = "backlog"
    parent_story_id: str | None = None
    is_story: bool = False
    dependencies: list[str] = Field(default_factory=list)
    priority: str | None = None
    tags: list[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    tags: list[str] | None = None
    dependencies: list[str] | None = None
    add_dependencies: list[str] | None = None
    remove_dependencies: list[str] | None = None


class ResourceIn(BaseModel):
    kind: str
    name: str
    action: str
    path: str | None = None
    confidence: float | None = None


class ResourcesSave(BaseModel):
    resources: list[ResourceIn]


class PruneRequest(BaseModel):
    status: str


@router.get("/api/status")
async def api_status(request: Request):
    graph = _graph(request)
    tasks = graph.list_tasks()
    counts: dict[str, int] = {}
    for task in tasks:
        counts[task["status"]] = counts.get(task["status"], 0) + 1
    return {
        "version": __version__,
        "total": len(tasks),
        "stories": sum(1 for task in tasks if task["is_story"]),
        "by_status": counts,
    }


@router.get("/api/tasks")
async def api_tasks(
    request: Request,
    status: str | None = None,
    story_id: str | None = None,
    stories: bool | None = None,
    limit: int | None = None,
):
    return _graph(request).list_tasks(
        status=status,
        story_id=story_id,
        is_story=stories,
        limit=limit,
    )


@router.post("/api/tasks", status_code=201)
async def api_create_task(request: Request, body: TaskCreate):
    return _graph(request).create_task(
        body.title,
        description=body.description,
        status=body.status,
        parent_story_id=body.parent_story_id,
        is_story=body.is_story,
        dependencies=body.dependencies,
        priority=body.priority,
        tags=body.tags,
    )


@router.get("/api/tasks/{task_id}")
async def api_task(request: Request, task_id: str):
    return _graph(request).require_task(task_id)


@router.get("/api/tasks/{task_id}/children")
async def api_story_tasks(request: Request, task_id: str):
    graph = _graph(request)
    graph.require_task(task_id)
    return graph.list_story_tasks(task_id)


@router.patch("/api/tasks/{task_id}")
async def api_update_task(request: Request, task_id: str, body: TaskUpdate):
    fields: dict[str, Any] = body.model_dump(exclude_none=True)
    return _graph(request).update_task(task_id, **fields)


@router.delete("/api/tasks/{task_id}")
async def api_delete_task(request: Request, task_id: str, force: bool = False):
    graph = _graph(request)
    task = graph.require_task(task_id)
    if task["is_story"]:
        return graph.delete_story(task_id, force=force)
    return graph.delete_task(task_id)


@router.post("/api/tasks/{task_id}/resources")
async def api_save_resources(request: Request, task_id: str, body: ResourcesSave):
    return _graph(request).save_dependencies(
        task_id,
        [item.model_dump() for item in body.resources],
    )


@router.get("/api/tasks/{task_id}/graph")
async def api_dependency_graph(request: Request, task_id: str):
    return _graph(request).get_dependency_graph(task_id)


@router.get("/api/tasks/{task_id}/conflicts")
async def api_conflicts(request: Request, task_id: str):
    return _graph(request).get_conflicts(task_id)


@router.get("/api/resources/{resource_id}/usage")
async def api_resource_usage(request: Request, resource_id: str):
    return _graph(request).get_resource_usage(resource_id)


@router.get("/api/execution-order")
async def api_execution_order(
    request: Request,
    story_id: str | None = None,
    status: str | None = None,
):
    return _graph(request).get_execution_order(story_id=story_id, status=status).to_dict()


@router.get("/api/stories/health")
async def api_story_health(request: Request):
    return _graph(request).get_user_story_health()


@router.post("/api/prune")
async def api_prune(request: Request, body: PruneRequest):
    return _graph(request).safe_delete_by_status(body.status)
