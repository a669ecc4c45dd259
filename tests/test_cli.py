from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskgraph import cli


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> str:
    cli.main(list(argv))
    return capsys.readouterr().out


def _run_json(capsys: pytest.CaptureFixture[str], *argv: str):
    return json.loads(_run(capsys, *argv, "--json"))


@pytest.fixture
def workdir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_list_on_empty_workdir_has_no_side_effects(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    out = _run(capsys, "task", "list")

    assert "(no tasks)" in out
    assert not (workdir / ".taskgraph").exists()


def test_show_missing_task_exits_with_error(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    with pytest.raises(SystemExit) as raised:
        cli.main(["task", "show", "task-missing"])

    assert raised.value.code == 1
    assert "error: unknown task: task-missing" in capsys.readouterr().err


def test_new_prints_id_and_show_renders_plain_details(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    task_id = _run(capsys, "task", "new", "Write docs", "-d", "usage guide", "-t", "docs").strip()

    assert task_id.startswith("task-")
    out = _run(capsys, "task", "show", task_id, "--output", "plain")
    assert "Write docs" in out
    assert f"id: {task_id}" in out
    assert "tags: docs" in out
    assert "usage guide" in out


def test_story_workflow_through_the_cli(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    story = _run_json(capsys, "task", "new", "Release", "--is-story")
    t1 = _run_json(capsys, "task", "new", "build", "--story", story["id"])
    t2 = _run_json(capsys, "task", "new", "ship", "--story", story["id"], "--dep", t1["id"])

    assert t2["dependencies"] == [t1["id"]]
    assert t1["created_at_iso"].endswith("Z")

    updated = _run_json(capsys, "task", "status", t1["id"], "done")
    assert updated["status"] == "done"

    order = _run_json(capsys, "order", "--story", story["id"])
    assert order["ok"] is True
    assert [(item["id"], item["position"]) for item in order["order"]] == [
        (t1["id"], 1),
        (t2["id"], 2),
    ]

    health = _run_json(capsys, "health")
    assert health[0]["story_id"] == story["id"]
    assert health[0]["status"] == "in_progress"
    assert health[0]["completion_percentage"] == 50.0

    out = _run(capsys, "order", "--story", story["id"], "--output", "plain")
    assert "POS" in out
    assert t2["id"] in out


def test_invalid_transition_is_reported(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    row = _run_json(capsys, "task", "new", "t", "--status", "done")

    with pytest.raises(SystemExit) as raised:
        cli.main(["task", "status", row["id"], "in_progress"])

    assert raised.value.code == 1
    assert "invalid transition" in capsys.readouterr().err


def test_deps_save_reports_conflicts(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    a = _run_json(capsys, "task", "new", "a", "--status", "todo")
    b = _run_json(capsys, "task", "new", "b", "--status", "todo")
    _run(capsys, "deps", "save", a["id"], "file:api.py@src/api.py=modifies:0.9")

    saved = _run_json(capsys, "deps", "save", b["id"], "file:api.py=modifies")

    assert len(saved["resource_ids"]) == 1
    assert saved["conflicts"][0]["task_id"] == a["id"]
    assert saved["conflicts"][0]["severity"] == "high"

    dep_graph = _run_json(capsys, "deps", "graph", a["id"])
    assert dep_graph["nodes"][0]["path"] == "src/api.py"
    assert dep_graph["edges"][0]["confidence"] == 0.9

    usage = _run(capsys, "deps", "usage", saved["resource_ids"][0], "--output", "plain")
    assert a["id"] in usage
    assert b["id"] in usage

    conflicts = _run(capsys, "deps", "conflicts", b["id"], "--output", "plain")
    assert "concurrent_write" in conflicts


def test_malformed_resource_argument_is_rejected(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    row = _run_json(capsys, "task", "new", "a")

    with pytest.raises(SystemExit) as raised:
        cli.main(["deps", "save", row["id"], "api.py=uses"])

    assert raised.value.code == 1
    assert "missing kind prefix" in capsys.readouterr().err


def test_parse_resource_arg() -> None:
    assert cli.parse_resource_arg("component:Cart=uses") == {
        "kind": "component",
        "name": "Cart",
        "action": "uses",
    }
    assert cli.parse_resource_arg("file:a.ts@web/a.ts=creates:0.25") == {
        "kind": "file",
        "name": "a.ts",
        "path": "web/a.ts",
        "action": "creates",
        "confidence": 0.25,
    }
    with pytest.raises(ValueError, match="invalid confidence"):
        cli.parse_resource_arg("file:a.ts=uses:high")


def test_prune_requires_confirmation(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    row = _run_json(capsys, "task", "new", "stale")

    with pytest.raises(SystemExit) as raised:
        cli.main(["prune", "backlog"])
    assert raised.value.code == 1
    assert "refusing to delete without --yes" in capsys.readouterr().err

    out = _run(capsys, "prune", "backlog", "--yes")
    assert f"deleted: {row['id']}" in out


def test_prune_rejects_unknown_status_as_usage_error(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    with pytest.raises(SystemExit) as raised:
        cli.main(["prune", "archived", "--yes"])

    assert raised.value.code == 2


def test_blocked_delete_reports_dependents(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    base = _run_json(capsys, "task", "new", "base")
    top = _run_json(capsys, "task", "new", "top", "--dep", base["id"])

    with pytest.raises(SystemExit) as raised:
        cli.main(["task", "delete", base["id"], "--yes"])

    assert raised.value.code == 1
    assert top["id"] in capsys.readouterr().err


def test_events_flag_echoes_events_to_stderr(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    cli.main(["--events", "task", "new", "a"])

    err = capsys.readouterr().err
    line = next(line for line in err.splitlines() if line.startswith("event: "))
    assert json.loads(line[len("event: "):])["type"] == "task_created"


def test_config_errors_are_warnings(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    state_dir = workdir / ".taskgraph"
    state_dir.mkdir()
    (state_dir / "taskgraph.toml").write_text("[cache\n", encoding="utf-8")

    cli.main(["task", "list"])

    captured = capsys.readouterr()
    assert "(no tasks)" in captured.out
    assert "warning: invalid TOML in taskgraph.toml" in captured.err


def test_edit_is_rejected_as_a_whole(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    base = _run_json(capsys, "task", "new", "base")
    top = _run_json(capsys, "task", "new", "top", "--dep", base["id"])

    with pytest.raises(SystemExit) as raised:
        cli.main(["task", "edit", base["id"], "--status", "todo", "--add-dep", top["id"]])

    assert raised.value.code == 1
    assert "circular dependency detected" in capsys.readouterr().err
    row = _run_json(capsys, "task", "show", base["id"])
    assert row["status"] == "backlog"
    assert row["dependencies"] == []
