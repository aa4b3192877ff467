"""Plan entries reported by the agent, their todo view and progress helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Literal

from pydantic import BaseModel, model_validator

from acpthread.updates import to_plain

logger = logging.getLogger(__name__)

PlanStatus = Literal["pending", "in_progress", "completed"]
TodoStatus = Literal["todo", "doing", "done"]

_TODO_STATUS: dict[str, TodoStatus] = {"pending": "todo", "in_progress": "doing", "completed": "done"}
_CHECKBOX = {"pending": "- [ ]", "in_progress": "- [~]", "completed": "- [x]"}

PLAN_FILE_HEADER = "# Agent Plan"


class PlanEntry(BaseModel):
    content: str = ""
    status: PlanStatus = "pending"
    priority: Literal["high", "medium", "low"] | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_loose_shapes(cls, value: Any) -> Any:
        """Accept protocol models, todo-tool items and bare strings."""
        value = to_plain(value)
        if isinstance(value, str):
            return {"content": value}
        if not isinstance(value, dict):
            return value
        data = dict(value)
        if not data.get("content"):
            data["content"] = data.get("active_form") or data.get("activeForm") or ""
        if data.get("status") not in _TODO_STATUS:
            data["status"] = "pending"
        if data.get("priority") not in ("high", "medium", "low"):
            data.pop("priority", None)
        return data


@dataclass(frozen=True)
class TodoItem:
    id: str
    content: str
    status: TodoStatus
    priority: str | None = None


@dataclass(frozen=True)
class PlanStats:
    total: int
    completed: int
    in_progress: int
    pending: int
    in_progress_content: str | None = None


class PlanTracker:
    """Holds the latest plan; each report replaces the previous one wholesale."""

    def __init__(self, label_width: int = 40) -> None:
        self.entries: List[PlanEntry] = []
        self.label_width = label_width

    def replace(self, entries: Iterable[Any]) -> list[TodoItem]:
        self.entries = [PlanEntry.model_validate(entry) for entry in entries]
        logger.debug("Plan replaced entries=%d", len(self.entries))
        return self.todos()

    def replace_from_todos(self, todos: Iterable[Any]) -> list[TodoItem]:
        """Replace the plan from a todo-tool payload; priorities are not carried."""

        entries = [PlanEntry.model_validate(item) for item in todos]
        self.entries = [entry.model_copy(update={"priority": None}) for entry in entries]
        return self.todos()

    def clear(self) -> None:
        self.entries = []

    def todos(self) -> list[TodoItem]:
        return [
            TodoItem(
                id=str(index),
                content=entry.content,
                status=_TODO_STATUS[entry.status],
                priority=entry.priority,
            )
            for index, entry in enumerate(self.entries, start=1)
        ]

    def stats(self) -> PlanStats:
        completed = sum(1 for e in self.entries if e.status == "completed")
        in_progress = [e for e in self.entries if e.status == "in_progress"]
        return PlanStats(
            total=len(self.entries),
            completed=completed,
            in_progress=len(in_progress),
            pending=len(self.entries) - completed - len(in_progress),
            in_progress_content=in_progress[0].content if in_progress else None,
        )

    def progress_string(self) -> str | None:
        """``Plan: 2/5 | <current step>``, or None when there is no plan."""

        stats = self.stats()
        if stats.total == 0:
            return None
        text = f"Plan: {stats.completed}/{stats.total}"
        name = stats.in_progress_content
        if name:
            width = self.label_width
            if len(name) > width:
                name = name[: width - 3] + "..."
            text = f"{text} | {name}"
        return text

    def to_markdown(self) -> str:
        lines = [PLAN_FILE_HEADER, ""]
        lines.extend(f"{_CHECKBOX[entry.status]} {entry.content}" for entry in self.entries)
        return "\n".join(lines) + "\n"

    def write_file(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_markdown(), encoding="utf-8")
        logger.info("Plan written path=%s entries=%d", path, len(self.entries))
        return path
