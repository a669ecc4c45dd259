from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Literal

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

OUTPUT_CHOICES = ("auto", "plain", "rich")
OutputMode = Literal["plain", "rich"]

STATUS_STYLES = {
    "backlog": "dim",
    "todo": "cyan",
    "in_progress": "yellow",
    "done": "green",
}
SEVERITY_STYLES = {
    "high": "bold red",
    "medium": "yellow",
    "low": "dim",
}


def add_output_mode_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--output",
        choices=OUTPUT_CHOICES,
        help="Output mode: auto (default), plain, or rich.",
    )


def add_json_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", action="store_true", help="Output JSON")


def _normalize_choice(raw: str | None, *, source: str) -> str | None:
    if raw is None:
        return None
    value = raw.strip().lower()
    if not value:
        return None
    if value not in OUTPUT_CHOICES:
        expected = ", ".join(OUTPUT_CHOICES)
        raise ValueError(f"invalid {source} value {raw!r}; expected one of: {expected}")
    return value


def _stream_is_tty(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if not callable(isatty):
        return False
    try:
        return bool(isatty())
    except (OSError, ValueError):
        return False


def resolve_output_mode(
    requested: str | None = None,
    *,
    is_tty: bool | None = None,
) -> OutputMode:
    selected = _normalize_choice(requested, source="--output") or "auto"
    if selected == "auto":
        tty = _stream_is_tty(sys.stdout) if is_tty is None else bool(is_tty)
        return "rich" if tty else "plain"
    return "rich" if selected == "rich" else "plain"


def make_console(mode: OutputMode, *, stderr: bool = False) -> Console:
    return Console(
        file=sys.stderr if stderr else sys.stdout,
        force_terminal=mode == "rich",
        no_color=mode != "rich",
        highlight=False,
    )


def iso_from_epoch_ms(value: object) -> str | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    try:
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def with_iso_timestamps(payload: Any) -> Any:
    if isinstance(payload, dict):
        out: dict[str, Any] = {}
        for key, value in payload.items():
            out[key] = with_iso_timestamps(value)
            if key.endswith("_at") or key == "timestamp":
                iso = iso_from_epoch_ms(value)
                if iso:
                    out[f"{key}_iso"] = iso
        return out
    if isinstance(payload, list):
        return [with_iso_timestamps(item) for item in payload]
    return payload


def emit_json(payload: Any) -> None:
    print(json.dumps(with_iso_timestamps(payload), ensure_ascii=False, indent=2))


def format_time(value: object) -> str:
    return iso_from_epoch_ms(value) or "-"


def truncate(value: object, limit: int) -> str:
    text = str(value or "").strip()
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


def styled(value: str, styles: dict[str, str]) -> str:
    style = styles.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def print_plain_table(headers: Sequence[str], rows: Sequence[Sequence[object]]) -> None:
    values = [[str(col if col is not None else "") for col in row] for row in rows]
    widths = [len(str(item)) for item in headers]
    for row in values:
        for idx, col in enumerate(row):
            widths[idx] = max(widths[idx], len(col))

    print("  ".join(str(headers[idx]).ljust(widths[idx]) for idx in range(len(headers))).rstrip())
    print("  ".join("-" * widths[idx] for idx in range(len(headers))))
    for row in values:
        print("  ".join(row[idx].ljust(widths[idx]) for idx in range(len(headers))).rstrip())


def render_table(
    console: Console,
    *,
    headers: Sequence[str],
    rows: Sequence[Sequence[object]],
    title: str | None = None,
    no_wrap_columns: Sequence[int] = (),
) -> None:
    table = Table(title=title)
    no_wrap = set(no_wrap_columns)
    for idx, header in enumerate(headers):
        table.add_column(str(header), no_wrap=idx in no_wrap)
    for row in rows:
        table.add_row(*(str(value if value is not None else "") for value in row))
    console.print(table)


def render_panel(console: Console, body: str, *, title: str | None = None) -> None:
    console.print(Panel(body, title=title))


def render_rows(
    output_mode: OutputMode,
    *,
    headers: Sequence[str],
    rows: Sequence[Sequence[object]],
    title: str,
    empty: str,
    no_wrap_columns: Sequence[int] = (),
) -> None:
    """Print ``rows`` as a rich table or an aligned plain-text table."""
    if output_mode == "rich":
        console = make_console("rich")
        if not rows:
            render_panel(console, empty, title=title)
            return
        render_table(
            console,
            title=title,
            headers=headers,
            rows=rows,
            no_wrap_columns=no_wrap_columns,
        )
        return
    if not rows:
        print(empty)
        return
    print_plain_table(headers, rows)


def render_rich_help(
    *,
    command: str,
    summary: str,
    usage: Sequence[str],
    sections: Sequence[tuple[str, Sequence[tuple[str, str]]]],
    examples: Sequence[tuple[str, str]] = (),
) -> None:
    console = make_console("rich")
    render_panel(console, summary, title=f"[bold blue]{command}[/bold blue]")
    console.print()
    console.print("[bold]Usage[/bold]")
    for line in usage:
        console.print(f"  {line}", markup=False)

    for title, rows in sections:
        if not rows:
            continue
        console.print()
        render_table(
            console,
            title=title,
            headers=("Item", "Description"),
            rows=rows,
            no_wrap_columns=(0,),
        )

    if examples:
        console.print()
        render_table(
            console,
            title="Examples",
            headers=("Command", "Purpose"),
            rows=examples,
            no_wrap_columns=(0,),
        )
