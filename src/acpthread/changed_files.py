"""Track files touched by write-like tool calls and summarise their diffs."""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Mapping

from acpthread.config import ToolMatcher
from acpthread.tool_calls import ACTIVE_STATUSES, ToolCallRecord

if TYPE_CHECKING:
    from acpthread.engine import SessionEngine, ToolCallEvent

logger = logging.getLogger(__name__)

_PATH_KEYS = ("file_path", "path", "rel_path", "filepath")
_TITLE_PATH = re.compile(r"^\w+\((.+)\)$")


@dataclass(frozen=True)
class WriteEvent:
    path: Path
    tool_call_id: str
    title: str


@dataclass(frozen=True)
class FileChangeStats:
    path: Path
    additions: int
    deletions: int

    @property
    def label(self) -> str:
        return f"+{self.additions} -{self.deletions}"


def extract_path(record: ToolCallRecord) -> str | None:
    """Best-effort target path: raw input keys, then the first location, then ``Tool(path)`` titles."""

    raw = record.raw_input if isinstance(record.raw_input, Mapping) else {}
    for key in _PATH_KEYS:
        value = raw.get(key)
        if isinstance(value, str) and value:
            return value
    location = record.first_location()
    if location is not None:
        return str(location["path"])
    match = _TITLE_PATH.match(record.title or "")
    if match:
        return match.group(1)
    return None


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError):
        return ""
    except UnicodeDecodeError:
        logger.debug("Skipping binary file path=%s", path)
        return ""


def diff_stats(before: str, after: str) -> tuple[int, int]:
    additions = deletions = 0
    for line in difflib.unified_diff(before.splitlines(), after.splitlines(), lineterm="", n=0):
        if line.startswith(("+++", "---")):
            continue
        if line.startswith("+"):
            additions += 1
        elif line.startswith("-"):
            deletions += 1
    return additions, deletions


class ChangedFilesTracker:
    """Snapshots a file before a write tool runs and records it once the tool completes."""

    def __init__(self, root: Path | str | None = None, matcher: ToolMatcher | None = None) -> None:
        self.root = Path(root) if root is not None else None
        self.matcher = matcher or ToolMatcher()
        self.snapshots: dict[Path, str] = {}
        self.events: list[WriteEvent] = []

    def attach(self, engine: "SessionEngine") -> Callable[[], None]:
        if self.root is None and engine.cwd:
            self.root = Path(engine.cwd)
        self.matcher = engine.config.tools
        return engine.add_tool_call_listener(self.observe)

    def resolve(self, raw_path: str) -> Path:
        path = Path(raw_path).expanduser()
        if not path.is_absolute() and self.root is not None:
            path = self.root / path
        return path

    def observe(self, event: "ToolCallEvent") -> None:
        record = event.record
        if not self.matcher.is_write_tool(title=record.title, kind=record.kind):
            return
        raw_path = extract_path(record)
        if raw_path is None:
            logger.debug("Write tool without a path tool_call_id=%s", record.tool_call_id)
            return
        path = self.resolve(raw_path)
        status: Any = event.update.get("status")
        if status in ACTIVE_STATUSES:
            self.snapshot(path)
        elif status == "completed":
            self.track(path, record)

    def snapshot(self, path: Path) -> None:
        if path not in self.snapshots:
            self.snapshots[path] = _read_text(path)

    def track(self, path: Path, record: ToolCallRecord) -> None:
        if any(event.tool_call_id == record.tool_call_id and event.path == path for event in self.events):
            return
        self.events.append(WriteEvent(path=path, tool_call_id=record.tool_call_id, title=record.title))
        logger.info("File changed path=%s tool=%s", path, record.title)

    @property
    def paths(self) -> list[Path]:
        seen: list[Path] = []
        for event in self.events:
            if event.path not in seen:
                seen.append(event.path)
        return seen

    def stats(self) -> list[FileChangeStats]:
        results: list[FileChangeStats] = []
        for path in self.paths:
            additions, deletions = diff_stats(self.snapshots.get(path, ""), _read_text(path))
            results.append(FileChangeStats(path=path, additions=additions, deletions=deletions))
        return results

    def clear(self) -> None:
        self.snapshots.clear()
        self.events.clear()
