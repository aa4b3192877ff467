"""Engine configuration and tool identification allow-lists."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Literal, Mapping

from dotenv import load_dotenv

from acpthread.paths import env_file

ToolCategory = Literal["plan_write", "enter_plan_mode", "exit_plan_mode"]

DEFAULT_PLAN_WRITE_TOOLS = ("TodoWrite", "write_todos")
DEFAULT_ENTER_PLAN_MODE_TOOLS = ("EnterPlanMode", "enter_plan_mode")
DEFAULT_EXIT_PLAN_MODE_TOOLS = ("ExitPlanMode", "exit_plan_mode")
DEFAULT_WRITE_TOOL_TITLES = (
    "Write",
    "Edit",
    "Create",
    "write_to_file",
    "str_replace",
    "replace_in_file",
    "insert",
    "create",
    "edit_file",
)
DEFAULT_WRITE_TOOL_KINDS = ("edit", "delete", "move")

_ENTER_PLAN_MODE_TITLE = re.compile(r"enter.*plan.*mode")
_EXIT_PLAN_MODE_TITLE = re.compile(r"exit.*plan.*mode")


def matches_identifier(title: str, name: str) -> bool:
    """True when ``title`` is ``name`` or starts with it followed by a non-word char.

    ``Edit(src/a.py)`` matches ``Edit``; ``Editor`` does not.
    """

    if not title or not name:
        return False
    if title == name:
        return True
    return title.startswith(name) and not title[len(name)].isalnum()


@dataclass(frozen=True)
class ToolMatcher:
    """Allow-lists used to recognise semantically special tool calls.

    Identification prefers an explicit ``_meta.category`` tag, then the tool
    kind or the ``tool`` key of the raw input, and falls back to the title.
    """

    plan_write_tools: tuple[str, ...] = DEFAULT_PLAN_WRITE_TOOLS
    enter_plan_mode_tools: tuple[str, ...] = DEFAULT_ENTER_PLAN_MODE_TOOLS
    exit_plan_mode_tools: tuple[str, ...] = DEFAULT_EXIT_PLAN_MODE_TOOLS
    write_tool_titles: tuple[str, ...] = DEFAULT_WRITE_TOOL_TITLES
    write_tool_kinds: tuple[str, ...] = DEFAULT_WRITE_TOOL_KINDS
    legacy_title_patterns: bool = True

    def categorize(
        self,
        *,
        title: str | None,
        kind: str | None = None,
        raw_input: Mapping[str, Any] | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> ToolCategory | None:
        tagged = (meta or {}).get("category")
        if tagged in ("plan_write", "enter_plan_mode", "exit_plan_mode"):
            return tagged
        names = [n for n in (kind, _raw_tool_name(raw_input), title or "") if n]
        lists: tuple[tuple[ToolCategory, tuple[str, ...]], ...] = (
            ("plan_write", self.plan_write_tools),
            ("enter_plan_mode", self.enter_plan_mode_tools),
            ("exit_plan_mode", self.exit_plan_mode_tools),
        )
        for category, allowed in lists:
            if any(matches_identifier(name, ident) for name in names for ident in allowed):
                return category
        if self.legacy_title_patterns and title:
            lowered = title.lower()
            if _ENTER_PLAN_MODE_TITLE.search(lowered):
                return "enter_plan_mode"
            if _EXIT_PLAN_MODE_TITLE.search(lowered):
                return "exit_plan_mode"
        return None

    def is_write_tool(self, *, title: str | None, kind: str | None) -> bool:
        if kind and kind in self.write_tool_kinds:
            return True
        return any(matches_identifier(title or "", name) for name in self.write_tool_titles)


def _raw_tool_name(raw_input: Mapping[str, Any] | None) -> str | None:
    if not isinstance(raw_input, Mapping):
        return None
    name = raw_input.get("tool")
    return name if isinstance(name, str) else None


@dataclass(frozen=True)
class EngineConfig:
    default_mode: str | None = None
    title_max_length: int = 80
    progress_label_width: int = 40
    tools: ToolMatcher = field(default_factory=ToolMatcher)


def _split_csv(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _extend(base: Iterable[str], extra: Iterable[str]) -> tuple[str, ...]:
    merged = list(base)
    merged.extend(item for item in extra if item not in merged)
    return tuple(merged)


def load_engine_config(**overrides: Any) -> EngineConfig:
    """Load configuration from dotenv files and ``ACPTHREAD_*`` variables.

    The user config ``.env`` never overrides variables already set; a local
    ``.env`` in the working directory is consulted afterwards.
    """

    load_dotenv(env_file(), override=False)
    load_dotenv()
    tools = ToolMatcher()
    tools = replace(
        tools,
        plan_write_tools=_extend(tools.plan_write_tools, _split_csv(os.getenv("ACPTHREAD_PLAN_TOOLS"))),
        write_tool_titles=_extend(tools.write_tool_titles, _split_csv(os.getenv("ACPTHREAD_WRITE_TOOLS"))),
    )
    config = EngineConfig(default_mode=os.getenv("ACPTHREAD_DEFAULT_MODE") or None, tools=tools)
    return apply_overrides(config, **overrides)


def apply_overrides(config: EngineConfig, **overrides: Any) -> EngineConfig:
    """Return a copy of ``config`` with non-None overrides applied."""

    values = {key: value for key, value in overrides.items() if value is not None}
    if not values:
        return config
    return replace(config, **values)
