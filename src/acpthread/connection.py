"""The agent connection contract the engine drives, plus shared mode bookkeeping."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Sequence

from acpthread.permissions import PermissionOutcome
from acpthread.updates import CONFIG_OPTION_KINDS, normalize_update, to_plain

logger = logging.getLogger(__name__)

UpdateHandler = Callable[[str, Any], None]
PermissionHandler = Callable[[str, Any, Sequence[Any]], Awaitable[PermissionOutcome]]
ClosedHandler = Callable[[BaseException], None]
ModeChangedHandler = Callable[[str], None]
ConfigOptionsChangedHandler = Callable[[list[dict[str, Any]]], None]


@dataclass
class ConnectionHandlers:
    """Agent-to-client traffic the engine subscribes to."""

    on_update: UpdateHandler | None = None
    on_permission_request: PermissionHandler | None = None
    on_closed: ClosedHandler | None = None


@dataclass(frozen=True)
class SessionMode:
    id: str
    name: str = ""
    description: str | None = None

    @classmethod
    def from_protocol(cls, mode: Any) -> "SessionMode":
        data = to_plain(mode)
        return cls(id=str(data.get("id", "")), name=str(data.get("name") or data.get("id") or ""), description=data.get("description"))


def _get(obj: Any, name: str) -> Any:
    data = to_plain(obj)
    if isinstance(data, Mapping):
        return data.get(name)
    return None


def config_option_id(option: Mapping[str, Any]) -> str | None:
    value = option.get("id") or option.get("config_id")
    return str(value) if value is not None else None


class Connection(Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    def is_ready(self) -> bool: ...

    def supports_load_session(self) -> bool: ...

    async def create_session(self, cwd: str, mcp_servers: Sequence[Any]) -> str: ...

    async def load_session(self, session_id: str, cwd: str, mcp_servers: Sequence[Any]) -> Any: ...

    async def send_prompt(self, session_id: str, content: Sequence[Any], mode_id: str | None = None) -> Any: ...

    async def cancel_session(self, session_id: str) -> None: ...

    async def list_sessions(self) -> list[Any]: ...

    async def set_mode(self, session_id: str, mode_id: str) -> Any: ...

    async def set_config_option(self, session_id: str, config_id: str, value: Any) -> list[dict[str, Any]] | None: ...

    def has_modes(self) -> bool: ...

    def all_modes(self) -> list[SessionMode]: ...

    def current_mode(self) -> str | None: ...

    def mode_by_id(self, mode_id: str) -> SessionMode | None: ...

    def has_config_options(self) -> bool: ...

    def all_config_options(self) -> list[dict[str, Any]]: ...

    def config_option_by_id(self, config_id: str) -> dict[str, Any] | None: ...

    def set_handlers(self, handlers: ConnectionHandlers) -> None: ...

    def set_on_mode_changed(self, callback: ModeChangedHandler | None) -> None: ...

    def set_on_config_options_changed(self, callback: ConfigOptionsChangedHandler | None) -> None: ...


class SessionNegotiation:
    """Mode and config-option state reported by the agent for the active session.

    Concrete connections mix this in and feed it session responses and
    updates before forwarding them to the engine.
    """

    def __init__(self) -> None:
        self._modes: list[SessionMode] = []
        self._current_mode_id: str | None = None
        self._config_options: list[dict[str, Any]] = []
        self._on_mode_changed: ModeChangedHandler | None = None
        self._on_config_options_changed: ConfigOptionsChangedHandler | None = None
        self._handlers = ConnectionHandlers()

    @property
    def handlers(self) -> ConnectionHandlers:
        return self._handlers

    def set_handlers(self, handlers: ConnectionHandlers) -> None:
        self._handlers = handlers

    def set_on_mode_changed(self, callback: ModeChangedHandler | None) -> None:
        self._on_mode_changed = callback

    def set_on_config_options_changed(self, callback: ConfigOptionsChangedHandler | None) -> None:
        self._on_config_options_changed = callback

    def load_negotiation(self, response: Any) -> None:
        """Pick up ``modes`` and ``config_options`` from a session/new or session/load response."""

        modes = _get(response, "modes")
        if modes is not None:
            available = _get(modes, "available_modes") or []
            self._modes = [SessionMode.from_protocol(mode) for mode in available]
            self._current_mode_id = _get(modes, "current_mode_id")
        options = _get(response, "config_options")
        if options is not None:
            self._config_options = [dict(to_plain(option)) for option in options]

    def record_mode(self, mode_id: str) -> None:
        self._current_mode_id = mode_id

    def replace_config_options(self, options: Iterable[Any], *, notify: bool = True) -> None:
        self._config_options = [dict(to_plain(option)) for option in options]
        if notify and self._on_config_options_changed is not None:
            self._on_config_options_changed(self.all_config_options())

    def apply_update(self, update: Any) -> None:
        normalized = normalize_update(update)
        if normalized.kind == "current_mode_update":
            mode_id = normalized.fields.get("current_mode_id")
            if mode_id and mode_id != self._current_mode_id:
                self._current_mode_id = mode_id
                logger.info("Agent switched mode mode=%s", mode_id)
                if self._on_mode_changed is not None:
                    self._on_mode_changed(mode_id)
        elif normalized.kind in CONFIG_OPTION_KINDS:
            options = normalized.fields.get("config_options")
            if options is not None:
                self.replace_config_options(options)

    def has_modes(self) -> bool:
        return bool(self._modes)

    def all_modes(self) -> list[SessionMode]:
        return list(self._modes)

    def current_mode(self) -> str | None:
        return self._current_mode_id

    def mode_by_id(self, mode_id: str) -> SessionMode | None:
        return next((mode for mode in self._modes if mode.id == mode_id), None)

    def has_config_options(self) -> bool:
        return bool(self._config_options)

    def all_config_options(self) -> list[dict[str, Any]]:
        return [dict(option) for option in self._config_options]

    def config_option_by_id(self, config_id: str) -> dict[str, Any] | None:
        for option in self._config_options:
            if config_option_id(option) == config_id:
                return dict(option)
        return None


@dataclass
class ConnectionInfo:
    """What ``initialize`` told us about the agent."""

    protocol_version: int | None = None
    agent_name: str | None = None
    agent_version: str | None = None
    load_session: bool = False
    extra: dict[str, Any] = field(default_factory=dict)
