"""Connection implementation over an ACP agent subprocess speaking stdio JSON-RPC."""

from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import contextlib
import logging
import os
import sys
from pathlib import Path
from typing import Any, Awaitable, Iterable, Literal, Sequence, TypeVar

from acp import PROTOCOL_VERSION, Client, RequestError, RequestPermissionResponse, SessionNotification
from acp.core import connect_to_agent
from acp.schema import AllowedOutcome, ClientCapabilities, DeniedOutcome, FileSystemCapabilities, Implementation

from acpthread import __version__
from acpthread.connection import ConnectionInfo, SessionNegotiation
from acpthread.errors import RequestFailed, TransportError
from acpthread.log_utils import log_event
from acpthread.permissions import PermissionOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")
ConnectionState = Literal["disconnected", "connecting", "ready", "closed", "failed"]

_LOST_CONNECTION = (ConnectionError, EOFError, asyncio.IncompleteReadError, BrokenPipeError)


class _ClientBridge(Client):
    """ACP client surface; forwards agent requests and notifications to the connection."""

    def __init__(self, owner: "AcpConnection") -> None:
        self._owner = owner

    async def request_permission(
        self,
        options,
        session_id: str,
        tool_call: Any,
        **_: Any,
    ) -> RequestPermissionResponse:
        outcome = await self._owner.ask_permission(session_id, tool_call, list(options or []))
        log_event(
            logger,
            "permission.response",
            session=session_id,
            outcome=outcome.outcome,
            option=outcome.option_id,
        )
        if outcome.outcome == "selected" and outcome.option_id:
            return RequestPermissionResponse(outcome=AllowedOutcome(option_id=outcome.option_id, outcome="selected"))
        return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))

    async def session_update(self, session_id: str, update: SessionNotification | Any, **_: Any) -> None:
        self._owner.receive_update(session_id, update)

    async def ext_method(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        return {}

    async def ext_notification(self, method: str, params: dict[str, Any]) -> None:
        return None

    def on_connect(self, *_: Any, **__: Any) -> None:
        return None

    async def write_text_file(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("fs/write_text_file")

    async def read_text_file(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("fs/read_text_file")

    async def create_terminal(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/create")

    async def terminal_output(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/output")

    async def release_terminal(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/release")

    async def wait_for_terminal_exit(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/wait_for_exit")

    async def kill_terminal(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/kill")


class AcpConnection(SessionNegotiation):
    """Spawns the agent program and exposes the engine-facing connection surface."""

    def __init__(
        self,
        program: str,
        args: Iterable[str] = (),
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        client_name: str = "acpthread",
    ) -> None:
        super().__init__()
        self.program = program
        self.args = list(args)
        self.env = env
        self.cwd = cwd
        self.client_name = client_name
        self.state: ConnectionState = "disconnected"
        self.info = ConnectionInfo()
        self._proc: aio_subprocess.Process | None = None
        self._conn: Any = None
        self._watcher: asyncio.Task[None] | None = None
        self._closing = False

    def _spawn_command(self) -> tuple[str, list[str]]:
        program_path = Path(self.program)
        if program_path.exists() and not os.access(program_path, os.X_OK):
            return sys.executable, [str(program_path), *self.args]
        return self.program, list(self.args)

    async def connect(self) -> None:
        if self.is_connected():
            return
        self.state = "connecting"
        self._closing = False
        program, args = self._spawn_command()
        env = {**os.environ, **self.env} if self.env else None
        try:
            proc = await asyncio.create_subprocess_exec(
                program,
                *args,
                stdin=aio_subprocess.PIPE,
                stdout=aio_subprocess.PIPE,
                env=env,
                cwd=self.cwd,
            )
        except OSError as exc:
            self.state = "failed"
            raise TransportError(f"Failed to start agent {self.program}: {exc}") from exc
        if proc.stdin is None or proc.stdout is None:
            self.state = "failed"
            raise TransportError("Agent process does not expose stdio pipes")
        self._proc = proc
        self._conn = connect_to_agent(_ClientBridge(self), proc.stdin, proc.stdout)

        init_resp = await self._request(
            self._conn.initialize(
                protocol_version=PROTOCOL_VERSION,
                client_capabilities=ClientCapabilities(
                    fs=FileSystemCapabilities(read_text_file=False, write_text_file=False),
                    terminal=False,
                ),
                client_info=Implementation(name=self.client_name, title="ACP Thread", version=__version__),
            )
        )
        if init_resp.protocol_version != PROTOCOL_VERSION:
            await self.disconnect()
            self.state = "failed"
            raise TransportError(f"Incompatible ACP protocol version from agent: {init_resp.protocol_version}")

        agent_caps = getattr(init_resp, "agent_capabilities", None)
        agent_info = getattr(init_resp, "agent_info", None)
        self.info = ConnectionInfo(
            protocol_version=init_resp.protocol_version,
            agent_name=getattr(agent_info, "name", None),
            agent_version=getattr(agent_info, "version", None),
            load_session=bool(getattr(agent_caps, "load_session", False)),
        )
        self._watcher = asyncio.create_task(self._watch_process(proc))
        self.state = "ready"
        log_event(logger, "connection.ready", agent=self.info.agent_name, load_session=self.info.load_session)

    async def _watch_process(self, proc: aio_subprocess.Process) -> None:
        returncode = await proc.wait()
        if self._closing:
            return
        self.state = "failed"
        log_event(logger, "connection.lost", level=logging.WARNING, returncode=returncode)
        handler = self.handlers.on_closed
        if handler is not None:
            handler(TransportError(f"Agent process exited with code {returncode}"))

    async def disconnect(self) -> None:
        self._closing = True
        watcher, self._watcher = self._watcher, None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
        conn, self._conn = self._conn, None
        if conn is not None:
            with contextlib.suppress(Exception):
                await conn.close()
        proc, self._proc = self._proc, None
        if proc is not None and proc.returncode is None:
            proc.terminate()
            with contextlib.suppress(ProcessLookupError):
                await proc.wait()
        self.state = "closed"

    def is_connected(self) -> bool:
        return self._conn is not None and self._proc is not None and self._proc.returncode is None

    def is_ready(self) -> bool:
        return self.state == "ready" and self.is_connected()

    def supports_load_session(self) -> bool:
        return self.info.load_session

    def _require(self) -> Any:
        if self._conn is None:
            raise TransportError("Not connected to an agent")
        return self._conn

    async def _request(self, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RequestError as exc:
            raise RequestFailed.from_exception(exc) from exc
        except _LOST_CONNECTION as exc:
            raise TransportError(f"Agent connection lost: {exc}") from exc

    async def create_session(self, cwd: str, mcp_servers: Sequence[Any]) -> str:
        resp = await self._request(self._require().new_session(cwd=cwd, mcp_servers=list(mcp_servers)))
        self.load_negotiation(resp)
        return resp.session_id

    async def load_session(self, session_id: str, cwd: str, mcp_servers: Sequence[Any]) -> Any:
        resp = await self._request(
            self._require().load_session(cwd=cwd, mcp_servers=list(mcp_servers), session_id=session_id)
        )
        if resp is not None:
            self.load_negotiation(resp)
        return resp

    async def send_prompt(self, session_id: str, content: Sequence[Any], mode_id: str | None = None) -> Any:
        return await self._request(self._require().prompt(prompt=list(content), session_id=session_id))

    async def cancel_session(self, session_id: str) -> None:
        await self._request(self._require().cancel(session_id=session_id))

    async def list_sessions(self) -> list[Any]:
        conn = self._require()
        lister = getattr(conn, "list_sessions", None)
        if lister is None:
            raise RequestFailed("Agent connection does not support session/list", code=-32601)
        resp = await self._request(lister())
        return list(getattr(resp, "sessions", None) or [])

    async def set_mode(self, session_id: str, mode_id: str) -> Any:
        resp = await self._request(self._require().set_session_mode(mode_id=mode_id, session_id=session_id))
        self.record_mode(mode_id)
        return resp

    async def set_config_option(self, session_id: str, config_id: str, value: Any) -> list[dict[str, Any]] | None:
        conn = self._require()
        setter = getattr(conn, "set_config_option", None) or getattr(conn, "set_session_config_option", None)
        if setter is None:
            raise RequestFailed("Agent connection does not support session/set_config_option", code=-32601)
        resp = await self._request(setter(config_id=config_id, session_id=session_id, value=value))
        options = getattr(resp, "config_options", None)
        if options is not None:
            self.replace_config_options(options, notify=False)
        return self.all_config_options()

    def receive_update(self, session_id: str, update: Any) -> None:
        self.apply_update(update)
        handler = self.handlers.on_update
        if handler is not None:
            handler(session_id, update)

    async def ask_permission(self, session_id: str, tool_call: Any, options: Sequence[Any]) -> PermissionOutcome:
        handler = self.handlers.on_permission_request
        if handler is None:
            return PermissionOutcome.cancelled()
        return await handler(session_id, tool_call, options)
