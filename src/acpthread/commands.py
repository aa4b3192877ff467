"""Slash command registry shared by local commands and agent-advertised ones."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Iterator, Mapping

from acpthread.updates import to_plain

logger = logging.getLogger(__name__)

SlashHandler = Callable[..., Awaitable[bool] | bool]


@dataclass
class SlashCommandDef:
    name: str
    description: str = ""
    hint: str = ""
    source: str = "local"
    handler: SlashHandler | None = None


@dataclass(frozen=True)
class AgentCommand:
    name: str
    description: str = ""
    hint: str | None = None

    @classmethod
    def from_protocol(cls, command: Any) -> "AgentCommand":
        data = to_plain(command)
        if not isinstance(data, Mapping):
            return cls(name=str(command))
        hint = None
        command_input = to_plain(data.get("input"))
        if isinstance(command_input, Mapping):
            root = to_plain(command_input.get("root", command_input))
            if isinstance(root, Mapping):
                hint = root.get("hint")
        return cls(
            name=str(data.get("name", "")).lstrip("/"),
            description=str(data.get("description") or ""),
            hint=hint,
        )


class CommandRegistry:
    """Name -> command map. Agent reports update matching entries in place."""

    def __init__(self) -> None:
        self._commands: dict[str, SlashCommandDef] = {}

    def register(
        self,
        name: str,
        description: str = "",
        hint: str = "",
        *,
        source: str = "local",
        handler: SlashHandler | None = None,
    ) -> SlashCommandDef:
        key = name.lstrip("/")
        entry = SlashCommandDef(name=key, description=description, hint=hint or f"/{key}", source=source, handler=handler)
        self._commands[key] = entry
        return entry

    def command(self, name: str, description: str, hint: str = "") -> Callable[[SlashHandler], SlashHandler]:
        """Decorator to register a local slash command handler."""

        def _decorator(func: SlashHandler) -> SlashHandler:
            self.register(name, description, hint, handler=func)
            return func

        return _decorator

    def publish(self, commands: Iterable[AgentCommand], source: str = "acp") -> None:
        for command in commands:
            if not command.name:
                continue
            hint = f"/{command.name} {command.hint}" if command.hint else f"/{command.name}"
            existing = self._commands.get(command.name)
            if existing is not None:
                existing.description = command.description
                existing.hint = hint
                existing.source = source
            else:
                self._commands[command.name] = SlashCommandDef(
                    name=command.name, description=command.description, hint=hint, source=source
                )
        logger.debug("Agent commands published count=%d", len(self._commands))

    def get(self, name: str) -> SlashCommandDef | None:
        return self._commands.get(name.lstrip("/"))

    def by_source(self, source: str) -> list[SlashCommandDef]:
        return [entry for entry in self._commands.values() if entry.source == source]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lstrip("/") in self._commands

    def __iter__(self) -> Iterator[SlashCommandDef]:
        return iter(list(self._commands.values()))

    def __len__(self) -> int:
        return len(self._commands)
