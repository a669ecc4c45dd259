from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from . import __version__
from .events import TaskGraphEvent
from .graph import TaskGraph
from .ordering import ExecutionOrder
from .status import TASK_STATUSES
from .stores.resource import EDGE_ACTIONS, RESOURCE_KINDS
from .stores.task import TASK_PRIORITIES
from .ui import (
    SEVERITY_STYLES,
    STATUS_STYLES,
    OutputMode,
    add_json_argument,
    add_output_mode_argument,
    emit_json,
    format_time,
    make_console,
    render_panel,
    render_rich_help,
    render_rows,
    resolve_output_mode,
    styled,
    truncate,
)

_TASK_HEADERS = ("ID", "STATUS", "KIND", "STORY", "DEPS", "UPDATED", "TITLE")
_ORDER_HEADERS = ("POS", "ID", "TITLE", "DEPENDS ON")
_HEALTH_HEADERS = ("STORY", "STATUS", "SUGGESTED", "DONE", "TOTAL", "COMPLETE", "MISMATCH", "SAFE")
_CONFLICT_HEADERS = ("SEVERITY", "TYPE", "TASK", "RESOURCE", "DESCRIPTION")
_READ_ONLY = {
    ("task", "list"),
    ("task", "show"),
    ("deps", "graph"),
    ("deps", "usage"),
    ("deps", "conflicts"),
    ("order", None),
    ("health", None),
}


def parse_resource_arg(raw: str) -> dict[str, Any]:
    """Parse ``kind:name[@path]=action[:confidence]``."""
    text = str(raw or "").strip()
    target, sep, action_part = text.rpartition("=")
    if not sep or not target:
        raise ValueError(f"invalid resource {raw!r}; expected kind:name[@path]=action[:confidence]")
    kind, sep, rest = target.partition(":")
    if not sep or not rest:
        raise ValueError(f"invalid resource {raw!r}; missing kind prefix")
    name, _, path = rest.partition("@")
    action, _, confidence = action_part.partition(":")

    entry: dict[str, Any] = {"kind": kind, "name": name, "action": action}
    if path:
        entry["path"] = path
    if confidence:
        try:
            entry["confidence"] = float(confidence)
        except ValueError as exc:
            raise ValueError(f"invalid confidence in {raw!r}") from exc
    return entry


def _task_columns(task: dict[str, Any], *, rich: bool = False) -> tuple[str, ...]:
    status = str(task.get("status") or "")
    return (
        str(task.get("id") or ""),
        styled(status, STATUS_STYLES) if rich else status,
        "story" if task.get("is_story") else "task",
        str(task.get("parent_story_id") or "-"),
        str(len(task.get("dependencies") or [])),
        format_time(task.get("updated_at")),
        truncate(task.get("title"), 56),
    )


def _print_task(task: dict[str, Any]) -> None:
    print("  ".join(_task_columns(task)))


def _print_tasks(rows: list[dict[str, Any]], mode: OutputMode, *, title: str) -> None:
    render_rows(
        mode,
        headers=_TASK_HEADERS,
        rows=[_task_columns(row, rich=mode == "rich") for row in rows],
        title=title,
        empty="(no tasks)",
        no_wrap_columns=(0, 1, 2, 3),
    )


def _print_task_details(graph: TaskGraph, task: dict[str, Any], mode: OutputMode) -> None:
    lines = [
        f"id: {task['id']}",
        f"status: {task['status']}",
        f"kind: {'story' if task['is_story'] else 'task'}",
        f"story: {task.get('parent_story_id') or '-'}",
        f"priority: {task.get('priority') or '-'}",
        f"tags: {', '.join(task.get('tags') or []) or '-'}",
        f"dependencies: {', '.join(task.get('dependencies') or []) or '-'}",
        f"created: {format_time(task.get('created_at'))}",
        f"updated: {format_time(task.get('updated_at'))}",
    ]
    description = str(task.get("description") or "").strip()
    if mode == "rich":
        console = make_console("rich")
        render_panel(console, "\n".join(lines), title=task["title"])
        if description:
            render_panel(console, description, title="Description")
    else:
        print(task["title"])
        for line in lines:
            print(line)
        if description:
            print()
            print(description)

    if task["is_story"]:
        if mode != "rich":
            print()
        _print_tasks(graph.list_story_tasks(task["id"]), mode, title="Sub-tasks")


def _print_order(result: ExecutionOrder, mode: OutputMode, *, title: str) -> None:
    render_rows(
        mode,
        headers=_ORDER_HEADERS,
        rows=[
            (item.position, item.id, truncate(item.title, 56), ", ".join(item.dependencies) or "-")
            for item in result.order
        ],
        title=title,
        empty="(no tasks)",
        no_wrap_columns=(0, 1),
    )


def _print_health(rows: list[dict[str, Any]], mode: OutputMode) -> None:
    rich = mode == "rich"
    render_rows(
        mode,
        headers=_HEALTH_HEADERS,
        rows=[
            (
                row["story_id"],
                styled(row["status"], STATUS_STYLES) if rich else row["status"],
                row["suggested_status"],
                row["counts"]["done"],
                row["counts"]["total"],
                f"{row['completion_percentage']:.2f}%",
                "yes" if row["status_mismatch"] else "no",
                "yes" if row["safe_to_delete"] else "no",
            )
            for row in rows
        ],
        title="Story Health",
        empty="(no stories)",
        no_wrap_columns=(0, 1, 2),
    )


def _print_conflicts(rows: list[dict[str, Any]], mode: OutputMode, *, title: str) -> None:
    rich = mode == "rich"
    render_rows(
        mode,
        headers=_CONFLICT_HEADERS,
        rows=[
            (
                styled(row["severity"], SEVERITY_STYLES) if rich else row["severity"],
                row["conflict_type"],
                row["task_id"],
                row["resource_name"],
                row["description"],
            )
            for row in rows
        ],
        title=title,
        empty="(no conflicts)",
        no_wrap_columns=(0, 1, 2),
    )


def _print_graph(graph: dict[str, list[dict[str, Any]]], mode: OutputMode, *, title: str) -> None:
    names = {node["id"]: f"{node['kind']}:{node['name']}" for node in graph["nodes"]}
    render_rows(
        mode,
        headers=("RESOURCE", "ID", "ACTION", "CONFIDENCE"),
        rows=[
            (
                names.get(edge["resource_id"], edge["resource_id"]),
                edge["resource_id"],
                edge["action"],
                "-" if edge["confidence"] is None else f"{edge['confidence']:.2f}",
            )
            for edge in graph["edges"]
        ],
        title=title,
        empty="(no resources)",
        no_wrap_columns=(1, 2),
    )


def _print_usage(usage: dict[str, Any], mode: OutputMode, *, resource_id: str) -> None:
    resource = usage.get("resource")
    title = (
        f"{resource['kind']}:{resource['name']}" if resource else f"Resource {resource_id}"
    )
    render_rows(
        mode,
        headers=("TASK", "STATUS", "ACTION", "TITLE"),
        rows=[
            (row["task_id"], row["task_status"], row["action"], truncate(row["task_title"], 56))
            for row in usage.get("tasks") or []
        ],
        title=title,
        empty="(no tasks reference this resource)",
        no_wrap_columns=(0, 1, 2),
    )


def _print_prune(result: dict[str, Any]) -> None:
    for task_id in result["deleted_ids"]:
        print(f"deleted: {task_id}")
    for task_id in result.get("cascaded_ids") or []:
        print(f"deleted (with story): {task_id}")
    for entry in result["preserved"]:
        extra = ""
        if "completion_percentage" in entry:
            extra = (
                f" ({entry['done_tasks']}/{entry['total_tasks']} done,"
                f" {entry['completion_percentage']:.2f}%)"
            )
        print(f"preserved: {entry['id']}  {entry['reason']}{extra}")
    if not result["deleted_ids"] and not result["preserved"]:
        print(f"(no tasks at {result['status']})")


def _print_help_rich() -> None:
    render_rich_help(
        command="taskgraph",
        summary="dependency-aware task graph with resource conflict detection",
        usage=("taskgraph [--events] <command> [ARGS]",),
        sections=(
            (
                "Commands",
                (
                    ("task new <title>", "create a task or story (--story, --is-story)"),
                    ("task list", "list tasks with status/story filters"),
                    ("task show <id>", "show one task; stories include sub-tasks"),
                    ("task status <id> <value>", "move a task through its lifecycle"),
                    ("task edit <id> [flags]", "update fields and dependencies"),
                    ("task delete <id> --yes", "delete a task nothing depends on"),
                    ("story delete <id> --yes", "delete a story with its sub-tasks"),
                    ("deps save <id> <res...>", "record resources a task touches"),
                    ("deps graph <id>", "resources and edges for one task"),
                    ("deps usage <resource-id>", "tasks referencing a resource"),
                    ("deps conflicts <id>", "active tasks sharing resources"),
                    ("order", "execution order for a story or status subset"),
                    ("health", "per-story completion and status suggestions"),
                    ("prune <status> --yes", "delete by status, keeping completed work"),
                    ("serve", "run the HTTP API"),
                ),
            ),
            (
                "Options",
                (
                    ("--json", "emit machine-stable JSON payloads"),
                    ("--output MODE", "auto|plain|rich for read commands"),
                    ("--events", "echo mutation events to stderr"),
                    ("-h, --help", "show this help"),
                ),
            ),
        ),
        examples=(
            (
                "taskgraph deps save task-1a2b3c4d file:api.py@src/api.py=modifies:0.9",
                "record a write and list conflicts",
            ),
            ("taskgraph order --story task-9f8e7d6c", "plan a story's sub-tasks"),
            ("taskgraph prune backlog --yes", "clean up the backlog safely"),
        ),
    )


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="taskgraph",
        description="Manage a dependency-aware task graph.",
    )
    p.add_argument("--version", action="version", version=f"taskgraph {__version__}")
    p.add_argument("--events", action="store_true", help="Echo mutation events to stderr")
    sub = p.add_subparsers(dest="command", required=True, metavar="command")

    task = sub.add_parser("task", help="Task operations")
    task_sub = task.add_subparsers(dest="task_cmd", required=True, metavar="task_cmd")

    new = task_sub.add_parser("new", help="Create a task")
    new.add_argument("title", help="Task title")
    new.add_argument("-d", "--description", default="", help="Task description")
    new.add_argument(
        "-s",
        "--status",
        default="backlog",
        choices=TASK_STATUSES,
        help=f"Initial status ({', '.join(TASK_STATUSES)})",
    )
    new.add_argument("--story", dest="story_id", help="Parent story id")
    new.add_argument("--is-story", action="store_true", help="Create a story")
    new.add_argument("--dep", action="append", default=[], help="Dependency id (repeatable)")
    new.add_argument("-p", "--priority", choices=TASK_PRIORITIES, help="Priority")
    new.add_argument("-t", "--tag", action="append", default=[], help="Tag (repeatable)")
    add_json_argument(new)

    ls = task_sub.add_parser("list", help="List tasks")
    ls.add_argument("--status", choices=TASK_STATUSES, help="Filter by status")
    ls.add_argument("--story", dest="story_id", help="Only sub-tasks of this story")
    ls.add_argument("--stories", action="store_true", help="Only stories")
    ls.add_argument("--limit", type=int, help="Max rows")
    add_json_argument(ls)
    add_output_mode_argument(ls)

    show = task_sub.add_parser("show", help="Show one task")
    show.add_argument("id", help="Task id")
    add_json_argument(show)
    add_output_mode_argument(show)

    status = task_sub.add_parser("status", help="Set task status")
    status.add_argument("id", help="Task id")
    status.add_argument("value", choices=TASK_STATUSES, help="New status")
    add_json_argument(status)

    edit = task_sub.add_parser("edit", help="Edit task fields")
    edit.add_argument("id", help="Task id")
    edit.add_argument("--title", help="New title")
    edit.add_argument("-d", "--description", help="New description")
    edit.add_argument("-s", "--status", choices=TASK_STATUSES, help="New status")
    edit.add_argument("-p", "--priority", choices=TASK_PRIORITIES, help="New priority")
    edit.add_argument("-t", "--tag", action="append", help="Replace tags (repeatable)")
    edit.add_argument("--dep", action="append", help="Replace dependencies (repeatable)")
    edit.add_argument("--add-dep", help="Add one dependency")
    edit.add_argument("--remove-dep", help="Remove one dependency")
    add_json_argument(edit)

    delete = task_sub.add_parser("delete", help="Delete a task")
    delete.add_argument("id", help="Task id")
    delete.add_argument("--yes", action="store_true", help="Confirm delete operation")
    add_json_argument(delete)

    story = sub.add_parser("story", help="Story operations")
    story_sub = story.add_subparsers(dest="story_cmd", required=True, metavar="story_cmd")
    story_delete = story_sub.add_parser("delete", help="Delete a story and its sub-tasks")
    story_delete.add_argument("id", help="Story id")
    story_delete.add_argument(
        "--force",
        action="store_true",
        help="Delete even when sub-tasks are done",
    )
    story_delete.add_argument("--yes", action="store_true", help="Confirm delete operation")
    add_json_argument(story_delete)

    deps = sub.add_parser("deps", help="Resource dependency operations")
    deps_sub = deps.add_subparsers(dest="deps_cmd", required=True, metavar="deps_cmd")
    save = deps_sub.add_parser("save", help="Record resources a task touches")
    save.add_argument("id", help="Task id")
    save.add_argument(
        "resources",
        nargs="+",
        metavar="RESOURCE",
        help=(
            "kind:name[@path]=action[:confidence]; "
            f"kinds: {', '.join(RESOURCE_KINDS)}; actions: {', '.join(EDGE_ACTIONS)}"
        ),
    )
    add_json_argument(save)
    add_output_mode_argument(save)

    graph_cmd = deps_sub.add_parser("graph", help="Show a task's resource graph")
    graph_cmd.add_argument("id", help="Task id")
    add_json_argument(graph_cmd)
    add_output_mode_argument(graph_cmd)

    usage = deps_sub.add_parser("usage", help="Show tasks referencing a resource")
    usage.add_argument("id", help="Resource id")
    add_json_argument(usage)
    add_output_mode_argument(usage)

    conflicts = deps_sub.add_parser("conflicts", help="Show resource conflicts for a task")
    conflicts.add_argument("id", help="Task id")
    add_json_argument(conflicts)
    add_output_mode_argument(conflicts)

    order = sub.add_parser("order", help="Compute execution order")
    order.add_argument("--story", dest="story_id", help="Restrict to a story's sub-tasks")
    order.add_argument("--status", choices=TASK_STATUSES, help="Restrict to one status")
    add_json_argument(order)
    add_output_mode_argument(order)

    health = sub.add_parser("health", help="Show story health")
    add_json_argument(health)
    add_output_mode_argument(health)

    prune = sub.add_parser("prune", help="Delete tasks by status, preserving completed work")
    prune.add_argument("status", choices=TASK_STATUSES, help="Status to prune")
    prune.add_argument("--yes", action="store_true", help="Confirm delete operation")
    add_json_argument(prune)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve.add_argument("--port", type=int, default=8430, help="Bind port")
    serve.add_argument("--reload", action="store_true", help="Auto-reload for development")

    return p


def _subcommand(args: argparse.Namespace) -> tuple[str, str | None]:
    nested = {
        "task": "task_cmd",
        "story": "story_cmd",
        "deps": "deps_cmd",
    }.get(args.command)
    return args.command, (getattr(args, nested) if nested else None)


def _event_printer(event: TaskGraphEvent) -> None:
    print(f"event: {json.dumps(event.to_dict(), ensure_ascii=False)}", file=sys.stderr)


def _serve(args: argparse.Namespace) -> None:
    import uvicorn

    console = make_console(resolve_output_mode(None), stderr=True)
    render_panel(
        console,
        f"Starting API server at http://{args.host}:{args.port}",
        title="taskgraph serve",
    )
    uvicorn.run(
        "taskgraph.web:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


def main(argv: list[str] | None = None) -> None:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    if raw_argv in (["-h"], ["--help"]):
        if resolve_output_mode(is_tty=getattr(sys.stdout, "isatty", lambda: False)()) == "rich":
            _print_help_rich()
            raise SystemExit(0)

    args = _build_parser().parse_args(raw_argv)
    command = _subcommand(args)

    if args.command == "serve":
        _serve(args)
        return

    output_mode: OutputMode = "plain"
    if hasattr(args, "output"):
        try:
            output_mode = resolve_output_mode(getattr(args, "output", None))
        except ValueError as exc:
            print(f"error: {exc}", file=sys.stderr)
            raise SystemExit(2)

    graph = TaskGraph.from_workdir(
        Path.cwd(),
        create=command not in _READ_ONLY,
        event_sink=_event_printer if args.events else None,
    )
    if graph.config.error:
        print(f"warning: {graph.config.error}; using defaults", file=sys.stderr)

    try:
        if command == ("task", "new"):
            row = graph.create_task(
                args.title,
                description=args.description,
                status=args.status,
                parent_story_id=args.story_id,
                is_story=args.is_story,
                dependencies=args.dep,
                priority=args.priority,
                tags=args.tag,
            )
            if args.json:
                emit_json(row)
            else:
                print(row["id"])
            return

        if command == ("task", "list"):
            rows = graph.list_tasks(
                status=args.status,
                story_id=args.story_id,
                is_story=True if args.stories else None,
                limit=args.limit,
            )
            if args.json:
                emit_json(rows)
            else:
                _print_tasks(rows, output_mode, title="Tasks")
            return

        if command == ("task", "show"):
            row = graph.require_task(args.id)
            if args.json:
                if row["is_story"]:
                    row = {**row, "tasks": graph.list_story_tasks(row["id"])}
                emit_json(row)
            else:
                _print_task_details(graph, row, output_mode)
            return

        if command == ("task", "status"):
            row = graph.set_status(args.id, args.value)
            if args.json:
                emit_json(row)
            else:
                _print_task(row)
            return

        if command == ("task", "edit"):
            row = graph.update_task(
                args.id,
                title=args.title,
                description=args.description,
                status=args.status,
                priority=args.priority,
                tags=args.tag,
                dependencies=args.dep,
                add_dependencies=[args.add_dep] if args.add_dep else None,
                remove_dependencies=[args.remove_dep] if args.remove_dep else None,
            )
            if args.json:
                emit_json(row)
            else:
                _print_task(row)
            return

        if command == ("task", "delete"):
            if not args.yes:
                print("error: refusing to delete without --yes", file=sys.stderr)
                raise SystemExit(1)
            row = graph.delete_task(args.id)
            if args.json:
                emit_json(row)
            else:
                for task_id in row.get("deleted_ids") or [row.get("id")]:
                    print(f"deleted: {task_id}")
            return

        if command == ("story", "delete"):
            if not args.yes:
                print("error: refusing to delete without --yes", file=sys.stderr)
                raise SystemExit(1)
            row = graph.delete_story(args.id, force=args.force)
            if args.json:
                emit_json(row)
            else:
                for task_id in row["deleted_ids"]:
                    print(f"deleted: {task_id}")
            return

        if command == ("deps", "save"):
            entries = [parse_resource_arg(item) for item in args.resources]
            row = graph.save_dependencies(args.id, entries)
            if args.json:
                emit_json(row)
            else:
                for resource_id in row["resource_ids"]:
                    print(resource_id)
                if row["conflicts"]:
                    if output_mode != "rich":
                        print()
                    _print_conflicts(row["conflicts"], output_mode, title=f"Conflicts: {args.id}")
            return

        if command == ("deps", "graph"):
            row = graph.get_dependency_graph(args.id)
            if args.json:
                emit_json(row)
            else:
                _print_graph(row, output_mode, title=f"Resources: {args.id}")
            return

        if command == ("deps", "usage"):
            row = graph.get_resource_usage(args.id)
            if args.json:
                emit_json(row)
            else:
                _print_usage(row, output_mode, resource_id=args.id)
            return

        if command == ("deps", "conflicts"):
            rows = graph.get_conflicts(args.id)
            if args.json:
                emit_json(rows)
            else:
                _print_conflicts(rows, output_mode, title=f"Conflicts: {args.id}")
            return

        if command == ("order", None):
            result = graph.get_execution_order(story_id=args.story_id, status=args.status)
            if args.json:
                emit_json(result.to_dict())
            elif result.ok:
                _print_order(result, output_mode, title="Execution Order")
            if not result.ok:
                if not args.json:
                    print(f"error: {result.error}", file=sys.stderr)
                raise SystemExit(1)
            return

        if command == ("health", None):
            rows = graph.get_user_story_health()
            if args.json:
                emit_json(rows)
            else:
                _print_health(rows, output_mode)
            return

        if command == ("prune", None):
            if not args.yes:
                print("error: refusing to delete without --yes", file=sys.stderr)
                raise SystemExit(1)
            row = graph.safe_delete_by_status(args.status)
            if args.json:
                emit_json(row)
            else:
                _print_prune(row)
            return
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
