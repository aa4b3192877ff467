"""Interactive terminal front-end: one session engine driven from a prompt_toolkit REPL."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from acp import text_block
from acp.schema import EmbeddedResourceContentBlock, ResourceContentBlock, TextResourceContents
from prompt_toolkit import PromptSession  # type: ignore
from prompt_toolkit.key_binding import KeyBindings  # type: ignore

from acpthread import display
from acpthread.acp_connection import AcpConnection
from acpthread.changed_files import ChangedFilesTracker
from acpthread.commands import CommandRegistry
from acpthread.config import load_engine_config
from acpthread.engine import SessionEngine, StopInfo, ThreadCallbacks, ToolCallEvent
from acpthread.errors import ThreadError
from acpthread.log_utils import build_log_config, configure_logging
from acpthread.mcp_config import load_mcp_config
from acpthread.messages import Message
from acpthread.permissions import PendingPermission

logger = logging.getLogger(__name__)

EMBED_LIMIT = 20_000
CYCLE_TOKEN = "__CYCLE_MODE__"

LocalHandler = Callable[["CliApp", str], Awaitable[bool] | bool]
LOCAL_COMMANDS = CommandRegistry()


def local_command(name: str, description: str, hint: str = "") -> Callable[[LocalHandler], LocalHandler]:
    return LOCAL_COMMANDS.command(name, description, hint)


def build_command_registry() -> CommandRegistry:
    registry = CommandRegistry()
    for entry in LOCAL_COMMANDS:
        registry.register(entry.name, entry.description, entry.hint, handler=entry.handler)
    return registry


def build_prompt_blocks(line: str, cwd: str | None = None) -> list[Any]:
    """Text block for ``line`` plus one resource block per existing ``@file`` reference."""

    blocks: list[Any] = [text_block(line)]
    base = Path(cwd or os.getcwd())
    refs = [word[1:] for word in line.split() if word.startswith("@") and len(word) > 1]
    for ref in refs:
        path = Path(ref)
        if not path.is_absolute():
            path = base / path
        if not path.is_file():
            continue
        size = path.stat().st_size
        uri = path.resolve().as_uri()
        if size <= EMBED_LIMIT:
            text = path.read_text(encoding="utf-8", errors="replace")
            resource = TextResourceContents(text=text, uri=uri, mime_type="text/plain")
            blocks.append(EmbeddedResourceContentBlock(resource=resource, type="resource"))
        else:
            blocks.append(
                ResourceContentBlock(name=path.name, uri=uri, size=size, mime_type="text/plain", type="resource_link")
            )
    return blocks


class CliApp:
    """Console observer for a :class:`SessionEngine`."""

    def __init__(self, engine: SessionEngine, *, cwd: str | None = None, show_thinking: bool = True) -> None:
        self.engine = engine
        self.show_thinking = show_thinking
        self.files = ChangedFilesTracker(root=cwd)
        self.prompt_session: PromptSession | None = None
        self._thought_lengths: dict[str, int] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        engine.set_callbacks(self.callbacks())
        self.files.attach(engine)
        engine.add_tool_call_listener(self._on_tool_call)

    def callbacks(self) -> ThreadCallbacks:
        return ThreadCallbacks(
            on_messages_add=self._on_messages,
            on_chunk=display.print_agent_text,
            on_plan_update=self._on_plan,
            on_mode_change=display.print_mode_update,
            on_permission_request=self._on_permission_request,
            on_session_expired=lambda sid: display.print_notice("warning", f"session {sid} expired; starting a new one"),
            on_stop=self._on_stop,
            on_error=lambda err: display.print_error(str(err)),
            on_notice=display.print_notice,
        )

    def _on_messages(self, messages: list[Message]) -> None:
        if not self.show_thinking:
            return
        for message in messages:
            thought = message.thinking()
            if not thought:
                continue
            seen = self._thought_lengths.get(message.uuid, 0)
            if len(thought) > seen:
                display.print_thought(thought[seen:])
                self._thought_lengths[message.uuid] = len(thought)

    def _on_plan(self, todos: list[Any]) -> None:
        display.print_plan(todos, self.engine.plan_progress())

    def _on_tool_call(self, event: ToolCallEvent) -> None:
        status = event.update.get("status")
        if status:
            display.print_tool(str(status), event.record.title or event.tool_call_id)

    def _on_stop(self, info: StopInfo) -> None:
        print()
        if info.reason == "cancelled":
            display.print_notice("info", "cancelled")
        elif info.reason == "error" and info.error is not None:
            display.print_error(str(info.error))

    def _on_permission_request(self, pending: PendingPermission) -> None:
        task = asyncio.get_running_loop().create_task(self._ask_permission(pending))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _ask_permission(self, pending: PendingPermission) -> None:
        display.print_permission_options(pending.title, pending.options)
        session: PromptSession = PromptSession()
        try:
            answer = (await session.prompt_async("Permission choice (number): ")).strip()
        except (EOFError, KeyboardInterrupt):
            pending.cancel()
            return
        if answer.isdigit() and 1 <= int(answer) <= len(pending.options):
            pending.respond(pending.options[int(answer) - 1].option_id)
        else:
            pending.cancel()

    def _interrupt(self) -> None:
        if self.engine.is_generating():
            self.engine.cancel(callback=lambda _result, err: err and display.print_error(str(err)))

    async def run_turn(self, line: str) -> None:
        blocks = build_prompt_blocks(line, self.engine.cwd)
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, self._interrupt)
        try:
            await self.engine.send_prompt(blocks, callback=lambda _result, _err: None)
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)

    async def handle_slash(self, line: str) -> bool:
        name, _, argument = line[1:].partition(" ")
        entry = self.engine.commands.get(name) if self.engine.commands is not None else None
        if entry is None or entry.source != "local" or entry.handler is None:
            return False
        result = entry.handler(self, argument.strip())
        if asyncio.iscoroutine(result):
            result = await result
        return bool(result)

    def _prompt_text(self) -> str:
        mode = self.engine.current_mode_id or "-"
        progress = self.engine.plan_progress()
        suffix = f" [{progress}]" if progress else ""
        return f"{mode}{suffix}> "

    async def interactive_loop(self) -> None:
        kb = KeyBindings()

        @kb.add("s-tab")
        def _(event):  # type: ignore
            if not event.app.is_done:
                event.app.exit(result=CYCLE_TOKEN)

        self.prompt_session = PromptSession(key_bindings=kb)
        while True:
            try:
                line = await self.prompt_session.prompt_async(self._prompt_text)
            except EOFError:
                break
            except KeyboardInterrupt:
                continue
            if line == CYCLE_TOKEN:
                await self.engine.cycle_mode()
                continue
            line = line.strip()
            if not line:
                continue
            if line.startswith("/") and await self.handle_slash(line):
                continue
            await self.run_turn(line)


@local_command("/help", "Show available slash commands.")
def _handle_help(app: CliApp, _argument: str) -> bool:
    for entry in app.engine.commands or []:
        label = entry.description or "Handled by agent"
        print(f"{entry.hint:<20} - {label}")
    return True


@local_command("/mode", "Switch to the given mode, or list modes.", "/mode [id]")
async def _handle_mode(app: CliApp, argument: str) -> bool:
    if not argument:
        for mode in app.engine.available_modes:
            marker = "*" if mode.id == app.engine.current_mode_id else " "
            print(f"{marker} {mode.id:<16} {mode.name}")
        if not app.engine.available_modes:
            print("[agent reports no modes]")
        return True
    await app.engine.set_mode(argument.split()[0], callback=lambda _r, err: err and display.print_error(str(err)))
    return True


@local_command("/config", "Show or set a session config option.", "/config [id value]")
async def _handle_config(app: CliApp, argument: str) -> bool:
    parts = argument.split(maxsplit=1)
    if len(parts) == 2:
        await app.engine.set_config_option(
            parts[0], parts[1], callback=lambda _r, err: err and display.print_error(str(err))
        )
        return True
    for category, options in sorted(app.engine.config_options_by_category().items()):
        print(f"{category}:")
        for option in options:
            value = option.get("current_value", option.get("value"))
            print(f"  {option.get('id')} = {value}")
    return True


@local_command("/plan", "Show the current plan, or write it to a file.", "/plan [write [path]]")
def _handle_plan(app: CliApp, argument: str) -> bool:
    parts = argument.split(maxsplit=1)
    if parts and parts[0] == "write":
        target = Path(parts[1]) if len(parts) > 1 else None
        path = app.engine.write_plan_file(target)
        display.print_notice("info", f"plan written to {path}")
        return True
    display.print_plan(app.engine.plan.todos(), app.engine.plan_progress())
    return True


@local_command("/files", "Show files changed by the agent.")
def _handle_files(app: CliApp, _argument: str) -> bool:
    display.print_file_changes(app.files.stats())
    return True


@local_command("/sessions", "List sessions known to the agent.")
async def _handle_sessions(app: CliApp, _argument: str) -> bool:
    def _show(sessions: Any, err: BaseException | None) -> None:
        if err is not None:
            display.print_error(str(err))
            return
        for info in sessions or []:
            print(f"{getattr(info, 'session_id', info)}  {getattr(info, 'title', '') or ''}")

    await app.engine.list_sessions(callback=_show)
    return True


@local_command("/new", "Start a new chat on the same agent.")
async def _handle_new(app: CliApp, _argument: str) -> bool:
    app.engine.new_chat()
    app.files.clear()
    await app.engine.create_session(callback=lambda _r, err: err and display.print_error(str(err)))
    return True


@local_command("/exit", "Exit the client.")
@local_command("/quit", "Exit the client.")
def _handle_exit(_app: CliApp, _argument: str) -> bool:
    raise SystemExit(0)


def _setup_logging() -> None:
    configure_logging(build_log_config())


async def run_client(
    program: str,
    args: Sequence[str],
    *,
    mcp_servers: list[Any],
    cwd: str,
    load_session_id: str | None = None,
    default_mode: str | None = None,
) -> int:
    config = load_engine_config(default_mode=default_mode)
    engine = SessionEngine(config=config, command_registry=build_command_registry())
    await engine.attach_connection(AcpConnection(program, args, cwd=cwd))
    app = CliApp(engine, cwd=cwd)
    try:
        if load_session_id:
            await engine.load_session(load_session_id, cwd, mcp_servers)
        else:
            await engine.create_session(cwd, mcp_servers)
    except ThreadError as exc:
        print(f"Failed to start session: {exc}", file=sys.stderr)
        await engine.close()
        return 1
    try:
        await app.interactive_loop()
        return 0
    finally:
        await engine.close()


async def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Run an ACP session against an agent program.")
    parser.add_argument(
        "--mcp-config",
        type=str,
        help="Path to JSON file containing ACP mcpServers array (stdio/http/sse entries).",
    )
    parser.add_argument("--cwd", type=str, default=None, help="Working directory for the session.")
    parser.add_argument("--load", dest="load_session", type=str, default=None, help="Resume an existing session id.")
    parser.add_argument("--mode", dest="default_mode", type=str, default=None, help="Mode to switch to at start.")
    parser.add_argument("agent_program", help="Path to the agent program to launch")
    parser.add_argument("agent_args", nargs=argparse.REMAINDER, help="Arguments for the agent")
    args = parser.parse_args(argv[1:])

    _setup_logging()
    mcp_servers: list[Any] = []
    if args.mcp_config:
        try:
            mcp_servers = load_mcp_config(args.mcp_config)
        except (OSError, ValueError) as exc:
            print(f"[failed to read mcp-config: {exc}]", file=sys.stderr)
            return 2

    return await run_client(
        args.agent_program,
        args.agent_args,
        mcp_servers=mcp_servers,
        cwd=str(Path(args.cwd or os.getcwd()).resolve()),
        load_session_id=args.load_session,
        default_mode=args.default_mode,
    )


def entrypoint() -> None:
    try:
        raise SystemExit(asyncio.run(main(sys.argv)))
    except KeyboardInterrupt:
        raise SystemExit(130)
