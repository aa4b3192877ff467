"""Pending permission requests and their resolution."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping

from acpthread.updates import to_plain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionChoice:
    option_id: str
    name: str = ""
    kind: str | None = None

    @classmethod
    def from_protocol(cls, option: Any) -> "PermissionChoice":
        data = to_plain(option)
        if not isinstance(data, Mapping):
            return cls(option_id=str(option))
        return cls(option_id=str(data.get("option_id", "")), name=str(data.get("name") or ""), kind=data.get("kind"))


@dataclass(frozen=True)
class PermissionOutcome:
    outcome: Literal["selected", "cancelled"]
    option_id: str | None = None

    @classmethod
    def selected(cls, option_id: str) -> "PermissionOutcome":
        return cls(outcome="selected", option_id=option_id)

    @classmethod
    def cancelled(cls) -> "PermissionOutcome":
        return cls(outcome="cancelled")


@dataclass
class PendingPermission:
    """A request waiting for the observer's decision; answered at most once."""

    request_id: int
    session_id: str
    tool_call: dict[str, Any]
    options: list[PermissionChoice]
    future: asyncio.Future[PermissionOutcome] = field(repr=False)

    @property
    def title(self) -> str:
        return str(self.tool_call.get("title") or self.tool_call.get("tool_call_id") or "tool call")

    @property
    def done(self) -> bool:
        return self.future.done()

    def respond(self, option_id: str) -> bool:
        if self.future.done():
            return False
        if option_id not in {choice.option_id for choice in self.options}:
            raise ValueError(f"unknown permission option {option_id!r}")
        self.future.set_result(PermissionOutcome.selected(option_id))
        return True

    def cancel(self) -> bool:
        if self.future.done():
            return False
        self.future.set_result(PermissionOutcome.cancelled())
        return True


class PermissionBroker:
    def __init__(self) -> None:
        self._pending: dict[int, PendingPermission] = {}
        self._ids = itertools.count(1)

    def open(self, session_id: str, tool_call: Any, options: Iterable[Any]) -> PendingPermission:
        loop = asyncio.get_running_loop()
        data = to_plain(tool_call)
        pending = PendingPermission(
            request_id=next(self._ids),
            session_id=session_id,
            tool_call=dict(data) if isinstance(data, Mapping) else {},
            options=[PermissionChoice.from_protocol(option) for option in options],
            future=loop.create_future(),
        )
        self._pending[pending.request_id] = pending
        logger.debug("Permission requested id=%s title=%s", pending.request_id, pending.title)
        return pending

    async def wait(self, pending: PendingPermission) -> PermissionOutcome:
        try:
            return await pending.future
        finally:
            self._pending.pop(pending.request_id, None)

    def cancel_all(self, reason: str) -> int:
        count = 0
        for pending in list(self._pending.values()):
            if pending.cancel():
                count += 1
        if count:
            logger.info("Cancelled pending permissions count=%d reason=%s", count, reason)
        return count

    @property
    def pending(self) -> list[PendingPermission]:
        return [p for p in self._pending.values() if not p.done]

    def __len__(self) -> int:
        return len(self.pending)
