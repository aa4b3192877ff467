from __future__ import annotations

import asyncio
import dataclasses
from collections import deque
from typing import Any, Awaitable, Callable

from acpthread.config import EngineConfig
from acpthread.connection import SessionNegotiation
from acpthread.engine import SessionEngine, ThreadCallbacks
from acpthread.permissions import PermissionOutcome


class ManualScheduler:
    """Queue observer callbacks until the test drains them."""

    def __init__(self) -> None:
        self.queue: deque[Callable[[], None]] = deque()

    def __call__(self, callback: Callable[[], None]) -> None:
        self.queue.append(callback)

    def run(self) -> int:
        count = 0
        while self.queue:
            self.queue.popleft()()
            count += 1
        return count


class Recorder:
    """Records every observer callback as ``(name, args)``."""

    def __init__(self) -> None:
        self.events: list[tuple[str, tuple[Any, ...]]] = []

    def _hook(self, name: str) -> Callable[..., None]:
        def _record(*args: Any) -> None:
            self.events.append((name, args))

        return _record

    def callbacks(self, **overrides: Any) -> ThreadCallbacks:
        hooks = {f.name: self._hook(f.name) for f in dataclasses.fields(ThreadCallbacks)}
        hooks.update(overrides)
        return ThreadCallbacks(**hooks)

    def of(self, name: str) -> list[tuple[Any, ...]]:
        return [args for event, args in self.events if event == name]

    def names(self) -> list[str]:
        return [event for event, _ in self.events]


class FakeConnection(SessionNegotiation):
    """In-memory connection; tests push agent traffic with ``emit``."""

    def __init__(
        self,
        *,
        session_id: str = "sess-1",
        modes: list[tuple[str, str]] | None = None,
        current_mode: str | None = None,
        config_options: list[dict[str, Any]] | None = None,
        load_session: bool = True,
    ) -> None:
        super().__init__()
        self.session_id = session_id
        self.connected = False
        self.load_support = load_session
        self.calls: list[tuple[Any, ...]] = []
        self.initial_modes = modes or []
        self.initial_current_mode = current_mode or (self.initial_modes[0][0] if self.initial_modes else None)
        self.initial_config_options = config_options
        self.create_error: BaseException | None = None
        self.load_error: BaseException | None = None
        self.prompt_error: BaseException | None = None
        self.set_mode_error: BaseException | None = None
        self.create_gate: asyncio.Event | None = None
        self.prompt_gate: asyncio.Event | None = None
        self.prompt_result: Any = {"stopReason": "end_turn"}
        self.on_prompt: Callable[["FakeConnection"], Awaitable[None] | None] | None = None
        self.sessions: list[Any] = []

    def _negotiation(self) -> dict[str, Any]:
        response: dict[str, Any] = {}
        if self.initial_modes:
            response["modes"] = {
                "available_modes": [{"id": mode_id, "name": name} for mode_id, name in self.initial_modes],
                "current_mode_id": self.initial_current_mode,
            }
        if self.initial_config_options is not None:
            response["config_options"] = self.initial_config_options
        return response

    async def connect(self) -> None:
        self.calls.append(("connect",))
        self.connected = True

    async def disconnect(self) -> None:
        self.calls.append(("disconnect",))
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def is_ready(self) -> bool:
        return self.connected

    def supports_load_session(self) -> bool:
        return self.load_support

    async def create_session(self, cwd: str, mcp_servers: Any) -> str:
        self.calls.append(("create_session", cwd))
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_error is not None:
            raise self.create_error
        self.load_negotiation(self._negotiation())
        return self.session_id

    async def load_session(self, session_id: str, cwd: str, mcp_servers: Any) -> Any:
        self.calls.append(("load_session", session_id))
        if self.load_error is not None:
            raise self.load_error
        self.load_negotiation(self._negotiation())
        return {"loaded": session_id}

    async def send_prompt(self, session_id: str, content: Any, mode_id: str | None = None) -> Any:
        self.calls.append(("send_prompt", session_id, list(content)))
        if self.on_prompt is not None:
            result = self.on_prompt(self)
            if asyncio.iscoroutine(result):
                await result
        if self.prompt_gate is not None:
            await self.prompt_gate.wait()
        if self.prompt_error is not None:
            raise self.prompt_error
        return self.prompt_result

    async def cancel_session(self, session_id: str) -> None:
        self.calls.append(("cancel_session", session_id))

    async def list_sessions(self) -> list[Any]:
        self.calls.append(("list_sessions",))
        return list(self.sessions)

    async def set_mode(self, session_id: str, mode_id: str) -> Any:
        self.calls.append(("set_mode", session_id, mode_id))
        if self.set_mode_error is not None:
            raise self.set_mode_error
        self.record_mode(mode_id)
        return {}

    async def set_config_option(self, session_id: str, config_id: str, value: Any) -> list[dict[str, Any]] | None:
        self.calls.append(("set_config_option", session_id, config_id, value))
        options = self.all_config_options()
        for option in options:
            if option.get("id") == config_id:
                option["current_value"] = value
        self.replace_config_options(options, notify=False)
        return self.all_config_options()

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    # agent -> client traffic

    def emit(self, update: Any, session_id: str | None = None) -> None:
        self.apply_update(update)
        handler = self.handlers.on_update
        assert handler is not None
        handler(session_id or self.session_id, update)

    async def request_permission(self, tool_call: Any, options: list[Any]) -> PermissionOutcome:
        handler = self.handlers.on_permission_request
        assert handler is not None
        return await handler(self.session_id, tool_call, options)

    def drop(self, exc: BaseException) -> None:
        handler = self.handlers.on_closed
        assert handler is not None
        handler(exc)


def make_engine(
    connection: FakeConnection | None = None,
    *,
    config: EngineConfig | None = None,
    recorder: Recorder | None = None,
    **kwargs: Any,
) -> tuple[SessionEngine, FakeConnection, ManualScheduler, Recorder]:
    scheduler = ManualScheduler()
    recorder = recorder or Recorder()
    connection = connection or FakeConnection()
    engine = SessionEngine(
        config=config,
        callbacks=recorder.callbacks(),
        connection=connection,
        scheduler=scheduler,
        **kwargs,
    )
    return engine, connection, scheduler, recorder


# wire-format session/update payloads


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def message_chunk(text: str) -> dict[str, Any]:
    return {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": text}}


def thought_chunk(text: str) -> dict[str, Any]:
    return {"sessionUpdate": "agent_thought_chunk", "content": {"type": "text", "text": text}}


def tool_call(tool_call_id: str, title: str, **fields: Any) -> dict[str, Any]:
    update = {"sessionUpdate": "tool_call", "toolCallId": tool_call_id, "title": title}
    update.update({_camel(key): value for key, value in fields.items()})
    return update


def tool_call_update(tool_call_id: str, **fields: Any) -> dict[str, Any]:
    update = {"sessionUpdate": "tool_call_update", "toolCallId": tool_call_id}
    update.update({_camel(key): value for key, value in fields.items()})
    return update


def plan_update(*entries: tuple[str, str]) -> dict[str, Any]:
    return {
        "sessionUpdate": "plan",
        "entries": [{"content": content, "status": status, "priority": "medium"} for content, status in entries],
    }


def mode_update(mode_id: str) -> dict[str, Any]:
    return {"sessionUpdate": "current_mode_update", "currentModeId": mode_id}


def text_content(text: str) -> dict[str, Any]:
    return {"type": "content", "content": {"type": "text", "text": text}}
