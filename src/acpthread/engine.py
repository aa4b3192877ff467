"""Per-conversation session engine.

The engine owns one ACP session: it drives the lifecycle over a
:class:`~acpthread.connection.Connection`, folds streamed session updates
into the message history, plan and tool-call registry, and reports every
change to an observer through :class:`ThreadCallbacks`.

Observer callbacks are never invoked synchronously from inside update
dispatch; they go through the engine's scheduler (``loop.call_soon`` by
default). Callbacks bound to a connection carry the epoch they were created
in and are dropped once the epoch moves on.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Literal, Mapping, Sequence

from acp import text_block

from acpthread.commands import AgentCommand, CommandRegistry
from acpthread.config import EngineConfig
from acpthread.connection import Connection, ConnectionHandlers, SessionMode
from acpthread.errors import OperatorError, RequestFailed, SessionNotFound, ThreadError, TransportError
from acpthread.log_utils import log_chunks_enabled, log_context, log_event
from acpthread.messages import Message, MessageStore, ThinkingContent
from acpthread.paths import plans_dir
from acpthread.permissions import PendingPermission, PermissionBroker, PermissionOutcome
from acpthread.plan import PlanEntry, PlanStats, PlanTracker, TodoItem
from acpthread.tool_calls import ToolCallRecord, ToolCallRegistry
from acpthread.updates import CONFIG_OPTION_KINDS, chunk_text, normalize_update, to_plain

logger = logging.getLogger(__name__)

ThreadState = Literal["idle", "connecting", "session_creating", "prompting", "generating", "cancelled", "error"]
Completion = Callable[[Any, "BaseException | None"], None]
Scheduler = Callable[[Callable[[], None]], None]

PROMPT_READY_STATES = frozenset({"idle", "cancelled", "error"})
_BUSY_STATES = frozenset({"connecting", "session_creating", "prompting", "generating"})
_AGENT_OUTPUT_KINDS = frozenset(
    {"agent_message_chunk", "agent_thought_chunk", "tool_call", "tool_call_update", "plan"}
)
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class StopInfo:
    reason: Literal["complete", "cancelled", "error"]
    stop_reason: str | None = None
    error: BaseException | None = None


@dataclass(frozen=True)
class ToolCallEvent:
    """A tool-call announcement or update, with the merged record after applying it."""

    kind: Literal["tool_call", "tool_call_update"]
    tool_call_id: str
    update: dict[str, Any]
    record: ToolCallRecord


ToolCallListener = Callable[[ToolCallEvent], None]


@dataclass
class ThreadCallbacks:
    on_messages_add: Callable[[list[Message]], None] | None = None
    on_chunk: Callable[[str], None] | None = None
    on_plan_update: Callable[[list[TodoItem]], None] | None = None
    on_state_change: Callable[[str, str], None] | None = None
    on_mode_change: Callable[[str, str], None] | None = None
    on_config_options_change: Callable[[list[dict[str, Any]]], None] | None = None
    on_available_commands: Callable[[list[AgentCommand]], None] | None = None
    on_permission_request: Callable[[PendingPermission], None] | None = None
    on_session_created: Callable[[str], None] | None = None
    on_session_loaded: Callable[[str, Any], None] | None = None
    on_session_expired: Callable[[str], None] | None = None
    on_stop: Callable[[StopInfo], None] | None = None
    on_error: Callable[[BaseException], None] | None = None
    on_notice: Callable[[str, str], None] | None = None


def call_soon(callback: Callable[[], None]) -> None:
    """Default scheduler: run on the next event-loop iteration."""
    asyncio.get_running_loop().call_soon(callback)


def _prompt_blocks(prompt: str | Sequence[Any]) -> list[Any]:
    if isinstance(prompt, str):
        return [text_block(prompt)]
    return list(prompt)


def _prompt_text(blocks: Iterable[Any]) -> str:
    parts: list[str] = []
    for block in blocks:
        data = to_plain(block)
        if isinstance(data, Mapping) and data.get("type") == "text" and data.get("text"):
            parts.append(str(data["text"]))
    return "\n".join(parts)


def _stop_reason(result: Any) -> str | None:
    data = to_plain(result)
    if isinstance(data, Mapping):
        value = data.get("stop_reason")
        return str(value) if value is not None else None
    return None


def _as_error(exc: BaseException) -> ThreadError:
    if isinstance(exc, ThreadError):
        return exc
    return RequestFailed.from_exception(exc)


class SessionEngine:
    """One conversation thread bound to (at most) one agent session."""

    _UPDATE_HANDLERS = {
        "plan": "_handle_plan",
        "agent_message_chunk": "_handle_message_chunk",
        "agent_thought_chunk": "_handle_thought_chunk",
        "user_message_chunk": "_handle_user_chunk",
        "tool_call": "_handle_tool_call",
        "tool_call_update": "_handle_tool_call_update",
        "available_commands_update": "_handle_available_commands",
        "current_mode_update": "_handle_current_mode",
        **{kind: "_handle_config_options" for kind in CONFIG_OPTION_KINDS},
    }

    def __init__(
        self,
        *,
        config: EngineConfig | None = None,
        callbacks: ThreadCallbacks | None = None,
        connection: Connection | None = None,
        scheduler: Scheduler | None = None,
        command_registry: CommandRegistry | None = None,
        title: str | None = None,
        tags: list[str] | None = None,
        parent_thread_id: str | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.callbacks = callbacks or ThreadCallbacks()
        self.commands = command_registry
        self.title = title
        self.tags: list[str] = list(tags or [])
        self.parent_thread_id = parent_thread_id

        self.session_id: str | None = None
        self.state: ThreadState = "idle"
        self.epoch = 0
        self.cwd: str | None = None
        self.mcp_servers: list[Any] = []

        self.history = MessageStore()
        self.tool_calls = ToolCallRegistry(self.history)
        self.plan = PlanTracker(label_width=self.config.progress_label_width)
        self.permissions = PermissionBroker()
        self.available_modes: list[SessionMode] = []
        self.current_mode_id: str | None = None
        self.config_options: list[dict[str, Any]] = []
        self.available_commands: list[AgentCommand] = []
        self.in_plan_mode = False
        self.plan_presented = False

        self._scheduler: Scheduler = scheduler if scheduler is not None else call_soon
        self._prev_text_len = 0
        self._loading_session_id: str | None = None
        self._turn = 0
        self._tool_call_listeners: list[ToolCallListener] = []
        self._background: set[asyncio.Task[Any]] = set()

        self.connection: Connection | None = None
        if connection is not None:
            self._bind_connection(connection)

    # -- observer plumbing -------------------------------------------------

    def set_callbacks(self, callbacks: ThreadCallbacks | None) -> None:
        """Swap the observer; pending permission prompts die with an observer that cannot answer them."""

        self.callbacks = callbacks or ThreadCallbacks()
        if self.callbacks.on_permission_request is None:
            self.permissions.cancel_all("observer detached")

    def add_tool_call_listener(self, listener: ToolCallListener) -> Callable[[], None]:
        self._tool_call_listeners.append(listener)

        def _remove() -> None:
            if listener in self._tool_call_listeners:
                self._tool_call_listeners.remove(listener)

        return _remove

    def _schedule(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return

        def _invoke() -> None:
            try:
                callback(*args)
            except Exception:
                logger.exception("Observer callback failed callback=%s", getattr(callback, "__name__", callback))

        self._scheduler(_invoke)

    def _set_state(self, new_state: ThreadState) -> None:
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        logger.debug("State %s -> %s session=%s", old_state, new_state, self.session_id)
        self._schedule(self.callbacks.on_state_change, new_state, old_state)

    def _refresh(self) -> None:
        self._schedule(self.callbacks.on_state_change, self.state, self.state)

    def _notice(self, level: str, message: str) -> None:
        logger.log(logging.WARNING if level == "warning" else logging.INFO, message)
        self._schedule(self.callbacks.on_notice, level, message)

    def _fail(self, err: BaseException) -> None:
        if self.state == "error":
            logger.debug("Already in error state; dropping %r", err)
            return
        log_event(logger, "thread.error", level=logging.ERROR, session=self.session_id, error=str(err))
        self._set_state("error")
        self._schedule(self.callbacks.on_error, err)

    @staticmethod
    def _finish(callback: Completion | None, result: Any, err: BaseException | None) -> Any:
        if callback is not None:
            callback(result, err)
            return result if err is None else None
        if err is not None:
            raise err
        return result

    def _is_stale(self, epoch: int) -> bool:
        if epoch != self.epoch:
            logger.debug("Dropping stale completion epoch=%d current=%d", epoch, self.epoch)
            return True
        return False

    def _is_superseded(self, turn: int) -> bool:
        # A cancelled turn may still be in flight when the next prompt starts.
        if turn != self._turn:
            logger.debug("Superseded prompt turn finished turn=%d current=%d", turn, self._turn)
            return True
        return False

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -- connection binding ------------------------------------------------

    def _guard(self, epoch: int, func: Callable[..., Any]) -> Callable[..., Any]:
        def _guarded(*args: Any) -> Any:
            if epoch != self.epoch:
                logger.debug("Dropping stale callback %s epoch=%d", func.__name__, epoch)
                return None
            return func(*args)

        return _guarded

    def _bind_connection(self, connection: Connection) -> None:
        epoch = self.epoch

        async def _permission(session_id: str, tool_call: Any, options: Sequence[Any]) -> PermissionOutcome:
            if epoch != self.epoch:
                return PermissionOutcome.cancelled()
            return await self.handle_permission_request(session_id, tool_call, options)

        self.connection = connection
        connection.set_handlers(
            ConnectionHandlers(
                on_update=self._guard(epoch, self._on_connection_update),
                on_permission_request=_permission,
                on_closed=self._guard(epoch, self._on_transport_closed),
            )
        )

    async def attach_connection(self, connection: Connection) -> None:
        """Bind a (new) connection; callbacks from the previous one become stale."""

        previous = self.connection
        self.epoch += 1
        self.permissions.cancel_all("connection replaced")
        if previous is not None and previous is not connection:
            try:
                await previous.disconnect()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to disconnect previous connection: %s", exc)
        self._bind_connection(connection)

    async def close(self) -> None:
        self.epoch += 1
        self.permissions.cancel_all("thread closed")
        for task in list(self._background):
            task.cancel()
        connection, self.connection = self.connection, None
        if connection is not None:
            await connection.disconnect()
        log_event(logger, "thread.closed", session=self.session_id)

    def _on_connection_update(self, session_id: str | None, update: Any) -> None:
        expected = self.session_id or self._loading_session_id
        if session_id and expected and session_id != expected:
            logger.debug("Ignoring update for other session=%s", session_id)
            return
        self.handle_session_update(update)

    def _on_transport_closed(self, exc: BaseException) -> None:
        err = exc if isinstance(exc, TransportError) else TransportError(str(exc))
        self.permissions.cancel_all("transport closed")
        self._fail(err)

    # -- session update dispatch -------------------------------------------

    def handle_session_update(self, update: Any) -> None:
        normalized = normalize_update(update)
        handler_name = self._UPDATE_HANDLERS.get(normalized.kind or "")
        if handler_name is None:
            logger.debug("Ignoring session update kind=%s", normalized.kind)
            return
        if self.state == "prompting" and normalized.kind in _AGENT_OUTPUT_KINDS:
            self._set_state("generating")
        with log_context(session=self.session_id):
            getattr(self, handler_name)(normalized.fields)

    def _emit_messages(self, messages: Sequence[Message]) -> None:
        for message in messages:
            if message.role == "assistant" and isinstance(message.content, str):
                delta = message.content[self._prev_text_len :]
                self._prev_text_len = len(message.content)
                if delta:
                    if log_chunks_enabled():
                        logger.debug("chunk %r", delta)
                    self._schedule(self.callbacks.on_chunk, delta)
        self._schedule(self.callbacks.on_messages_add, [message.snapshot() for message in messages])

    def _accumulate(self, role: Literal["user", "assistant"], slot: Literal["text", "thinking"], text: str) -> None:
        last = self.history.last()
        if last is not None and last.role == role and last.tool_call is None and last.append_to_slot(slot, text):
            self._emit_messages([last])
            return
        message = Message(role=role, content=text if slot == "text" else [ThinkingContent(thinking=text)])
        if role == "assistant" and slot == "text":
            self._prev_text_len = 0
        self.history.append(message)
        self._emit_messages([message])

    def _handle_message_chunk(self, fields: dict[str, Any]) -> None:
        text = chunk_text(fields)
        if text:
            self._accumulate("assistant", "text", text)

    def _handle_thought_chunk(self, fields: dict[str, Any]) -> None:
        text = chunk_text(fields)
        if text:
            self._accumulate("assistant", "thinking", text)

    def _handle_user_chunk(self, fields: dict[str, Any]) -> None:
        # Only replayed during session/load; live prompts are recorded by send_prompt.
        text = chunk_text(fields)
        if text:
            self._accumulate("user", "text", text)

    def _handle_plan(self, fields: dict[str, Any]) -> None:
        todos = self.plan.replace(fields.get("entries") or [])
        log_event(logger, "plan.update", entries=len(todos))
        self._schedule(self.callbacks.on_plan_update, todos)

    def _categorize(self, record: ToolCallRecord) -> str | None:
        return self.config.tools.categorize(
            title=record.title,
            kind=record.kind,
            raw_input=record.raw_input,
            meta=record.meta,
        )

    def _intercept_plan_tool(self, raw_input: Any) -> None:
        todos = raw_input.get("todos") if isinstance(raw_input, Mapping) else None
        if not isinstance(todos, list) or not todos:
            return
        items = self.plan.replace_from_todos(todos)
        log_event(logger, "plan.from_tool", entries=len(items))
        self._schedule(self.callbacks.on_plan_update, items)

    def _publish_tool_call(self, kind: Literal["tool_call", "tool_call_update"], fields: dict[str, Any], record: ToolCallRecord) -> None:
        if not self._tool_call_listeners:
            return
        event = ToolCallEvent(
            kind=kind,
            tool_call_id=record.tool_call_id,
            update=copy.deepcopy(fields),
            record=copy.deepcopy(record),
        )
        for listener in list(self._tool_call_listeners):
            self._schedule(listener, event)

    def _handle_tool_call(self, fields: dict[str, Any]) -> None:
        change = self.tool_calls.start(fields)
        record = change.record
        self._emit_messages([change.message])
        log_event(logger, "tool.start", tool_call_id=record.tool_call_id, title=record.title, status=record.status)

        refresh = self.state == "generating"
        category = self._categorize(record)
        if category == "enter_plan_mode":
            self.in_plan_mode = True
            refresh = True
            logger.info("Agent entered plan mode")
        elif category == "exit_plan_mode":
            self.plan_presented = True
            logger.info("Agent presented plan for approval")
        elif category == "plan_write":
            self._intercept_plan_tool(record.raw_input)
        if refresh:
            self._refresh()
        self._publish_tool_call("tool_call", fields, record)

    def _handle_tool_call_update(self, fields: dict[str, Any]) -> None:
        change = self.tool_calls.update(fields)
        record = change.record
        batch = [change.message] if change.result is None else [change.message, change.result]
        self._emit_messages(batch)
        if change.result is not None:
            log_event(logger, "tool.finish", tool_call_id=record.tool_call_id, status=record.status)
        if "raw_input" in fields and self._categorize(record) == "plan_write":
            self._intercept_plan_tool(fields.get("raw_input"))
        self._publish_tool_call("tool_call_update", fields, record)

    def _handle_available_commands(self, fields: dict[str, Any]) -> None:
        commands = [AgentCommand.from_protocol(command) for command in fields.get("available_commands") or []]
        self.available_commands = commands
        if self.commands is not None:
            self.commands.publish(commands)
        self._schedule(self.callbacks.on_available_commands, list(commands))

    def _handle_current_mode(self, fields: dict[str, Any]) -> None:
        mode_id = fields.get("current_mode_id")
        if mode_id:
            self.current_mode_id = str(mode_id)

    def _handle_config_options(self, fields: dict[str, Any]) -> None:
        options = fields.get("config_options")
        if options is not None:
            self.config_options = [dict(to_plain(option)) for option in options]

    # -- modes and config options ------------------------------------------

    @property
    def uses_config_options(self) -> bool:
        return bool(self.connection is not None and self.connection.has_config_options())

    def mode_by_id(self, mode_id: str) -> SessionMode | None:
        if self.connection is not None:
            mode = self.connection.mode_by_id(mode_id)
            if mode is not None:
                return mode
        return next((mode for mode in self.available_modes if mode.id == mode_id), None)

    def _mode_name(self, mode_id: str) -> str:
        mode = self.mode_by_id(mode_id)
        return mode.name if mode is not None and mode.name else mode_id

    def _on_remote_mode_changed(self, mode_id: str) -> None:
        self.current_mode_id = mode_id
        name = self._mode_name(mode_id)
        logger.info("Mode: %s", name)
        self._schedule(self.callbacks.on_mode_change, mode_id, name)

    def _on_remote_config_options_changed(self, options: list[dict[str, Any]]) -> None:
        self.config_options = list(options)
        self._schedule(self.callbacks.on_config_options_change, list(options))

    async def initialize_modes(self) -> None:
        """Mirror the connection's modes/config options and subscribe to changes."""

        connection = self.connection
        if connection is None:
            return
        if connection.has_config_options():
            self.config_options = connection.all_config_options()
            connection.set_on_config_options_changed(self._guard(self.epoch, self._on_remote_config_options_changed))
            self._schedule(self.callbacks.on_config_options_change, list(self.config_options))
        if not connection.has_modes():
            self.available_modes = []
            logger.debug("Agent reports no session modes")
            return
        self.available_modes = connection.all_modes()
        self.current_mode_id = connection.current_mode()
        connection.set_on_mode_changed(self._guard(self.epoch, self._on_remote_mode_changed))
        logger.debug(
            "Modes initialized count=%d current=%s", len(self.available_modes), self.current_mode_id
        )
        if not self.uses_config_options:
            await self._apply_default_mode()

    async def _apply_default_mode(self) -> None:
        default = self.config.default_mode
        if not default or not self.session_id:
            return
        ids = [mode.id for mode in self.available_modes]
        if default not in ids:
            self._notice("warning", f"Default mode '{default}' not available. Available modes: {', '.join(ids)}")
            return
        if default == self.current_mode_id:
            return

        def _warn(_result: Any, err: BaseException | None) -> None:
            if err is not None:
                self._notice("warning", f"Failed to set default mode '{default}': {err}")

        await self.set_mode(default, callback=_warn)

    async def set_mode(self, mode_id: str, callback: Completion | None = None) -> Any:
        connection = self.connection
        if connection is None or not self.session_id:
            return self._finish(callback, None, OperatorError("No connection or session"))
        epoch = self.epoch
        try:
            result = await connection.set_mode(self.session_id, mode_id)
        except Exception as exc:  # noqa: BLE001
            if self._is_stale(epoch):
                return None
            return self._finish(callback, None, _as_error(exc))
        if self._is_stale(epoch):
            return None
        self.current_mode_id = mode_id
        name = self._mode_name(mode_id)
        log_event(logger, "mode.set", session=self.session_id, mode=mode_id)
        self._schedule(self.callbacks.on_mode_change, mode_id, name)
        return self._finish(callback, result, None)

    async def cycle_mode(self) -> str | None:
        """Switch to the next advertised mode, wrapping around."""

        connection = self.connection
        modes = connection.all_modes() if connection is not None and connection.has_modes() else []
        if not modes:
            self._notice("info", "Mode cycling not supported by this agent")
            return None
        index = next((i for i, mode in enumerate(modes) if mode.id == self.current_mode_id), 0)
        target = modes[(index + 1) % len(modes)]

        def _warn(_result: Any, err: BaseException | None) -> None:
            if err is not None:
                self._notice("warning", f"Failed to set mode: {err}")

        await self.set_mode(target.id, callback=_warn)
        return target.id

    async def set_config_option(self, config_id: str, value: Any, callback: Completion | None = None) -> Any:
        connection = self.connection
        if connection is None or not self.session_id:
            return self._finish(callback, None, OperatorError("No connection or session"))
        epoch = self.epoch
        try:
            options = await connection.set_config_option(self.session_id, config_id, value)
        except Exception as exc:  # noqa: BLE001
            if self._is_stale(epoch):
                return None
            return self._finish(callback, None, _as_error(exc))
        if self._is_stale(epoch):
            return None
        if options is not None:
            self.config_options = list(options)
            self._schedule(self.callbacks.on_config_options_change, list(self.config_options))
        log_event(logger, "config_option.set", session=self.session_id, config_id=config_id)
        return self._finish(callback, options, None)

    def config_options_by_category(self) -> dict[str, list[dict[str, Any]]]:
        grouped: dict[str, list[dict[str, Any]]] = {}
        for option in self.config_options:
            grouped.setdefault(str(option.get("category") or "other"), []).append(option)
        return grouped

    # -- session lifecycle -------------------------------------------------

    def has_session(self) -> bool:
        return self.session_id is not None

    def is_generating(self) -> bool:
        return self.state in ("prompting", "generating")

    async def _ensure_connected(self, connection: Connection) -> None:
        if connection.is_connected():
            return
        self._set_state("connecting")
        await connection.connect()

    async def connect(self, callback: Completion | None = None) -> Any:
        connection = self.connection
        if connection is None:
            return self._finish(callback, None, OperatorError("No connection"))
        epoch = self.epoch
        try:
            await self._ensure_connected(connection)
        except Exception as exc:  # noqa: BLE001
            if self._is_stale(epoch):
                return None
            err = _as_error(exc)
            self._fail(err)
            return self._finish(callback, None, err)
        if self._is_stale(epoch):
            return None
        self._set_state("idle")
        return self._finish(callback, True, None)

    def _session_connection(self) -> Connection:
        if self.connection is None:
            raise OperatorError("No connection")
        if self.has_session():
            raise OperatorError("Thread already has a session; start a new chat first")
        if self.state in _BUSY_STATES:
            raise OperatorError(f"Cannot open a session while {self.state}")
        return self.connection

    async def create_session(
        self,
        cwd: str | None = None,
        mcp_servers: Sequence[Any] | None = None,
        callback: Completion | None = None,
    ) -> Any:
        try:
            connection = self._session_connection()
        except OperatorError as err:
            return self._finish(callback, None, err)
        epoch = self.epoch
        self.cwd = cwd or self.cwd or os.getcwd()
        self.mcp_servers = list(mcp_servers if mcp_servers is not None else self.mcp_servers)
        try:
            await self._ensure_connected(connection)
            self._set_state("session_creating")
            session_id = await connection.create_session(self.cwd, self.mcp_servers)
        except Exception as exc:  # noqa: BLE001
            if self._is_stale(epoch):
                return None
            err = _as_error(exc)
            self._fail(err)
            return self._finish(callback, None, err)
        if self._is_stale(epoch):
            return None
        self.session_id = session_id
        log_event(logger, "session.created", session=session_id, cwd=self.cwd)
        self._set_state("idle")
        self._schedule(self.callbacks.on_session_created, session_id)
        await self.initialize_modes()
        return self._finish(callback, session_id, None)

    async def load_session(
        self,
        session_id: str,
        cwd: str | None = None,
        mcp_servers: Sequence[Any] | None = None,
        callback: Completion | None = None,
    ) -> Any:
        """Resume ``session_id``; falls back to a fresh session when the agent forgot it."""

        try:
            connection = self._session_connection()
        except OperatorError as err:
            return self._finish(callback, None, err)
        epoch = self.epoch
        try:
            await self._ensure_connected(connection)
        except Exception as exc:  # noqa: BLE001
            if self._is_stale(epoch):
                return None
            err = _as_error(exc)
            self._fail(err)
            return self._finish(callback, None, err)
        if self._is_stale(epoch):
            return None
        if not connection.supports_load_session():
            if self.state == "connecting":
                self._set_state("idle")
            return self._finish(callback, None, OperatorError("Agent does not support loading sessions"))

        self.cwd = cwd or self.cwd or os.getcwd()
        self.mcp_servers = list(mcp_servers if mcp_servers is not None else self.mcp_servers)
        self._loading_session_id = session_id
        try:
            self._set_state("session_creating")
            result = await connection.load_session(session_id, self.cwd, self.mcp_servers)
        except Exception as exc:  # noqa: BLE001
            if self._is_stale(epoch):
                return None
            self._loading_session_id = None
            err = _as_error(exc)
            if isinstance(err, SessionNotFound):
                log_event(logger, "session.expired", level=logging.WARNING, session=session_id)
                self._schedule(self.callbacks.on_session_expired, session_id)
                self._set_state("idle")
                return await self.create_session(self.cwd, self.mcp_servers, callback=callback)
            self._fail(err)
            return self._finish(callback, None, err)
        if self._is_stale(epoch):
            return None
        self._loading_session_id = None
        self.session_id = session_id
        log_event(logger, "session.loaded", session=session_id)
        self._set_state("idle")
        self._schedule(self.callbacks.on_session_loaded, session_id, result)
        await self.initialize_modes()
        return self._finish(callback, result, None)

    async def list_sessions(self, callback: Completion | None = None) -> Any:
        connection = self.connection
        if connection is None:
            return self._finish(callback, None, OperatorError("No connection"))
        try:
            sessions = await connection.list_sessions()
        except Exception as exc:  # noqa: BLE001
            return self._finish(callback, None, _as_error(exc))
        return self._finish(callback, sessions, None)

    def auto_title(self, content: str) -> None:
        if self.title:
            return
        limit = self.config.title_max_length
        title = _WHITESPACE.sub(" ", content[:limit].replace("\n", " "))
        if len(content) > limit:
            title += "..."
        self.title = title

    async def send_prompt(self, prompt: str | Sequence[Any], callback: Completion | None = None) -> Any:
        """Send one prompt turn and wait for its stop reason."""

        connection = self.connection
        if connection is None or not self.session_id:
            return self._finish(callback, None, OperatorError("No active session"))
        if self.state not in PROMPT_READY_STATES:
            return self._finish(callback, None, OperatorError(f"Cannot send a prompt while {self.state}"))

        blocks = _prompt_blocks(prompt)
        text = _prompt_text(blocks)
        if text:
            self.auto_title(text)
            message = self.history.append(Message(role="user", content=text))
            self._emit_messages([message])
        self._prev_text_len = 0
        epoch = self.epoch
        self._turn += 1
        turn = self._turn
        session_id = self.session_id
        self._set_state("prompting")
        log_event(logger, "prompt.send", session=session_id, blocks=len(blocks), turn=turn)
        try:
            result = await connection.send_prompt(session_id, blocks, self.current_mode_id)
        except Exception as exc:  # noqa: BLE001
            if self._is_stale(epoch):
                return None
            err = _as_error(exc)
            if self._is_superseded(turn):
                return self._finish(callback, None, err)
            self.permissions.cancel_all("prompt failed")
            if isinstance(err, TransportError):
                self._fail(err)
            elif self.state != "cancelled":
                self._set_state("idle")
            self._schedule(self.callbacks.on_stop, StopInfo(reason="error", error=err))
            return self._finish(callback, None, err)
        if self._is_stale(epoch):
            return None
        stop_reason = _stop_reason(result)
        if self._is_superseded(turn):
            return self._finish(callback, result, None)
        self.permissions.cancel_all("prompt turn ended")
        if stop_reason == "cancelled" or self.state == "cancelled":
            self._set_state("cancelled")
            info = StopInfo(reason="cancelled", stop_reason=stop_reason)
        else:
            self._set_state("idle")
            info = StopInfo(reason="complete", stop_reason=stop_reason)
        log_event(logger, "prompt.stop", session=session_id, stop_reason=stop_reason)
        self._schedule(self.callbacks.on_stop, info)
        return self._finish(callback, result, None)

    def cancel(self, callback: Completion | None = None) -> bool:
        """Cancel the in-flight turn; outstanding permission prompts resolve as cancelled."""

        connection = self.connection
        session_id = self.session_id
        if connection is None or session_id is None:
            self._finish(callback, None, OperatorError("No active session to cancel"))
            return False
        self._set_state("cancelled")
        self.permissions.cancel_all("turn cancelled")
        epoch = self.epoch

        async def _send_cancel() -> None:
            try:
                await connection.cancel_session(session_id)
            except Exception as exc:  # noqa: BLE001
                if not self._is_stale(epoch):
                    self._notice("warning", f"Failed to cancel session: {exc}")

        self._spawn(_send_cancel())
        log_event(logger, "prompt.cancel", session=session_id)
        if callback is not None:
            callback(True, None)
        return True

    async def handle_permission_request(
        self, session_id: str, tool_call: Any, options: Sequence[Any]
    ) -> PermissionOutcome:
        if self.state == "cancelled":
            logger.info("Permission request auto-cancelled after cancel session=%s", session_id)
            return PermissionOutcome.cancelled()
        if self.callbacks.on_permission_request is None:
            logger.warning("No observer to answer permission request session=%s", session_id)
            return PermissionOutcome.cancelled()
        pending = self.permissions.open(session_id, tool_call, options)
        self._schedule(self.callbacks.on_permission_request, pending)
        return await self.permissions.wait(pending)

    # -- thread-level operations ---------------------------------------------

    def fork(self, history_up_to_index: int | None = None) -> "SessionEngine":
        """Copy this thread's history into an independent thread with no session."""

        forked = SessionEngine(
            config=self.config,
            scheduler=self._scheduler,
            command_registry=self.commands,
            title=f"{self.title or 'Untitled'} (fork)",
            tags=copy.deepcopy(self.tags),
            parent_thread_id=self.session_id,
        )
        forked.history.extend(self.history.copy_upto(history_up_to_index))
        forked.tool_calls.rebuild()
        log_event(logger, "thread.fork", parent=self.session_id, messages=len(forked.history))
        return forked

    def new_chat(self) -> None:
        """Forget the session and all conversation state, keeping the connection."""

        self.epoch += 1
        self.permissions.cancel_all("new chat")
        self.session_id = None
        self._loading_session_id = None
        self.title = None
        self.history.clear()
        self.tool_calls.clear()
        self.plan.clear()
        self.available_modes = []
        self.current_mode_id = None
        self.config_options = []
        self.available_commands = []
        self.reset_plan_mode()
        self._prev_text_len = 0
        if self.connection is not None:
            self._bind_connection(self.connection)
        self._set_state("idle")

    def reset_plan_mode(self) -> None:
        """Leave plan mode and drop the plan that was presented in it."""

        self.in_plan_mode = False
        self.plan_presented = False
        if self.plan.entries:
            self.plan.clear()
            self._schedule(self.callbacks.on_plan_update, [])

    # -- plan helpers --------------------------------------------------------

    @property
    def plan_entries(self) -> list[PlanEntry]:
        return list(self.plan.entries)

    def plan_stats(self) -> PlanStats:
        return self.plan.stats()

    def plan_progress(self) -> str | None:
        return self.plan.progress_string()

    def plan_markdown(self) -> str:
        return self.plan.to_markdown()

    def write_plan_file(self, path: Path | None = None) -> Path:
        if path is None:
            path = plans_dir() / f"{self.session_id or 'thread'}.md"
        return self.plan.write_file(path)

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.history.snapshot()


__all__ = [
    "SessionEngine",
    "StopInfo",
    "ThreadCallbacks",
    "ThreadState",
    "ToolCallEvent",
    "call_soon",
]
