"""Follow the agent around the workspace using tool-call location hints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from acpthread.engine import SessionEngine, ToolCallEvent

logger = logging.getLogger(__name__)

FollowListener = Callable[["FollowLocation"], None]


@dataclass(frozen=True)
class FollowLocation:
    path: Path
    line: int | None = None


class FollowTracker:
    def __init__(self, root: Path | str | None = None, *, enabled: bool = True) -> None:
        self.root = Path(root) if root is not None else None
        self.enabled = enabled
        self.current: FollowLocation | None = None
        self._listeners: list[FollowListener] = []

    def attach(self, engine: "SessionEngine") -> Callable[[], None]:
        if self.root is None and engine.cwd:
            self.root = Path(engine.cwd)
        return engine.add_tool_call_listener(self.observe)

    def subscribe(self, listener: FollowListener) -> None:
        self._listeners.append(listener)

    def observe(self, event: "ToolCallEvent") -> None:
        if not self.enabled or event.kind != "tool_call_update":
            return
        location = event.record.first_location()
        if location is None:
            return
        path = Path(str(location["path"]))
        if not path.is_absolute() and self.root is not None:
            path = self.root / path
        line = location.get("line")
        target = FollowLocation(path=path, line=int(line) if isinstance(line, int) else None)
        if target == self.current:
            return
        self.current = target
        logger.debug("Following path=%s line=%s", target.path, target.line)
        for listener in list(self._listeners):
            listener(target)
