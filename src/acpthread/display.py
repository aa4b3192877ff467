"""Rich console rendering for the command-line observer."""

from __future__ import annotations

from io import StringIO
from threading import Lock
from typing import Any, Iterable

from prompt_toolkit.formatted_text import ANSI  # type: ignore
from prompt_toolkit.shortcuts import print_formatted_text  # type: ignore
from rich.console import Console
from rich.table import Table
from rich.text import Text

from acpthread.changed_files import FileChangeStats
from acpthread.plan import TodoItem

_render_buffer = StringIO()
_render_console = Console(
    file=_render_buffer,
    force_terminal=True,
    color_system="standard",
    markup=False,
    highlight=False,
)
_render_lock = Lock()

_TODO_STYLES = {"done": "green", "doing": "orange1", "todo": "grey50"}
_TODO_MARKS = {"done": "✓", "doing": "•", "todo": "○"}


def _render_and_print(*args: Any, **kwargs: Any) -> bool:
    kwargs.setdefault("end", "\n")
    with _render_lock:
        _render_buffer.seek(0)
        _render_buffer.truncate(0)
        _render_console.print(*args, **kwargs)
        output = _render_buffer.getvalue()
    if output:
        print_formatted_text(ANSI(output), end="")
        return output.endswith("\n")
    return False


def print_agent_text(text: str) -> None:
    _render_and_print(Text(text), end="")


def print_thought(text: str) -> None:
    _render_and_print(Text(text, style="#aaaaaa"), end="")


def print_mode_update(mode_id: str, name: str) -> None:
    label = mode_id if name == mode_id else f"{name} ({mode_id})"
    _render_and_print(Text(f"[mode -> {label}]", style="magenta"))


def print_notice(level: str, message: str) -> None:
    style = "yellow" if level == "warning" else "cyan"
    _render_and_print(Text(f"[{message}]", style=style))


def print_error(message: str) -> None:
    _render_and_print(Text(f"[error: {message}]", style="red"))


def print_tool(status: str, title: str) -> None:
    normalized = status.lower()
    if normalized == "completed":
        style = "green"
    elif normalized in {"pending", "in_progress"}:
        style = "yellow"
    else:
        style = "red"
    _render_and_print(Text(f"Tool[{status}]: {title}", style=style))


def print_plan(todos: Iterable[TodoItem], progress: str | None = None) -> None:
    table = Table(show_header=False, box=None, title=progress, title_style="cyan")
    table.add_column("", width=2)
    table.add_column("Item", style="white")
    for item in todos:
        style = _TODO_STYLES.get(item.status, "grey50")
        table.add_row(Text(_TODO_MARKS.get(item.status, "•"), style=style), item.content)
    _render_and_print(table)


def print_file_changes(stats: Iterable[FileChangeStats]) -> None:
    table = Table(show_header=False, box=None)
    table.add_column("File")
    table.add_column("Changes", justify="right")
    rows = 0
    for entry in stats:
        table.add_row(str(entry.path), Text(entry.label, style="cyan"))
        rows += 1
    if rows:
        _render_and_print(table)
    else:
        _render_and_print(Text("[no files changed]", style="grey50"))


def print_permission_options(title: str, options: Iterable[Any]) -> None:
    _render_and_print(Text(f"[permission] {title}", style="yellow"))
    for index, option in enumerate(options, start=1):
        _render_and_print(Text(f"{index}) {option.name or option.option_id}"))
