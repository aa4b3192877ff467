"""Tool-call records, the field merge policy and the per-thread registry."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field, fields as dataclass_fields
from typing import Any, Iterator, Mapping

from pydantic import BaseModel

from acpthread.messages import Message, MessageStore, ToolResultContent, ToolUseContent
from acpthread.updates import to_plain

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"pending", "in_progress"})
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


def _is_absent(key: str, value: Any) -> bool:
    if value is None:
        return True
    # Agents send ``content: []`` or ``{}`` on status-only updates.
    return key == "content" and isinstance(value, (Mapping, list, tuple)) and not value


def merge_tool_call_fields(current: Mapping[str, Any], incoming: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay ``incoming`` on ``current``.

    Absent values (None, empty ``content``) never erase what is already
    known. Nested mappings merge key by key; lists and scalars are replaced.
    """

    merged = dict(current)
    for key, value in incoming.items():
        if _is_absent(key, value):
            continue
        if isinstance(value, BaseModel):
            value = value.model_dump(exclude_none=True)
        existing = merged.get(key)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_tool_call_fields(existing, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class ToolCallRecord:
    tool_call_id: str
    title: str = ""
    kind: str | None = None
    status: str | None = None
    raw_input: dict[str, Any] = field(default_factory=dict)
    raw_output: Any = None
    content: list[Any] = field(default_factory=list)
    locations: list[Any] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in dataclass_fields(self) if f.name != "extra"}
        data.update(self.extra)
        return data

    def merge(self, incoming: Mapping[str, Any]) -> None:
        known = {f.name for f in dataclass_fields(self)} - {"extra", "tool_call_id"}
        merged = merge_tool_call_fields(self.as_dict(), incoming)
        for key, value in merged.items():
            if key == "tool_call_id":
                continue
            if key in known:
                setattr(self, key, value)
            else:
                self.extra[key] = value
        if not isinstance(self.raw_input, dict):
            self.raw_input = {"value": self.raw_input}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def first_location(self) -> dict[str, Any] | None:
        for location in self.locations or []:
            location = to_plain(location)
            if isinstance(location, Mapping) and location.get("path"):
                return dict(location)
        return None


@dataclass
class ToolCallChange:
    message: Message
    record: ToolCallRecord
    result: Message | None = None
    created: bool = False
    previous_status: str | None = None


def _content_logs(content: Any) -> list[str]:
    logs: list[str] = []
    for block in content or []:
        block = to_plain(block)
        if not isinstance(block, Mapping):
            continue
        inner = to_plain(block.get("content"))
        if block.get("type") == "content" and isinstance(inner, Mapping) and inner.get("type") == "text":
            text = inner.get("text")
            if text:
                logs.append(str(text))
    return logs


class ToolCallRegistry:
    """Index of tool-call messages by id, sharing message objects with the history."""

    def __init__(self, store: MessageStore) -> None:
        self._store = store
        self._messages: dict[str, Message] = {}
        self._results: dict[str, Message] = {}

    def get(self, tool_call_id: str) -> Message | None:
        return self._messages.get(tool_call_id)

    def record(self, tool_call_id: str) -> ToolCallRecord | None:
        message = self._messages.get(tool_call_id)
        return message.tool_call if message is not None else None

    def result_for(self, tool_call_id: str) -> Message | None:
        return self._results.get(tool_call_id)

    def __contains__(self, tool_call_id: object) -> bool:
        return tool_call_id in self._messages

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._messages))

    def clear(self) -> None:
        self._messages.clear()
        self._results.clear()

    def rebuild(self) -> None:
        """Re-index from the store (used after copying history into a fork)."""

        self.clear()
        for message in self._store:
            if message.tool_call is not None:
                self._messages[message.tool_call.tool_call_id] = message
                continue
            result = message.tool_result()
            if result is not None:
                self._results[result.tool_use_id] = message

    def _lookup(self, tool_call_id: str) -> tuple[Message, ToolCallRecord] | None:
        message = self._messages.get(tool_call_id)
        if message is None or message.tool_call is None:
            return None
        return message, message.tool_call

    def _placeholder(self, tool_call_id: str) -> tuple[Message, ToolCallRecord]:
        record = ToolCallRecord(tool_call_id=tool_call_id)
        message = Message(
            role="assistant",
            content=[ToolUseContent(id=tool_call_id)],
            uuid=tool_call_id,
            tool_call=record,
        )
        self._store.append(message)
        self._messages[tool_call_id] = message
        return message, record

    def start(self, incoming: Mapping[str, Any]) -> ToolCallChange:
        """Register a ``tool_call`` announcement; repeats merge into the existing record."""

        tool_call_id = str(incoming.get("tool_call_id") or "")
        found = self._lookup(tool_call_id)
        created = found is None
        message, record = found if found is not None else self._placeholder(tool_call_id)
        previous = record.status
        fields = dict(incoming)
        if record.is_terminal:
            # A late announcement must not reopen a finished call.
            fields.pop("status", None)
        record.merge(fields)
        self._sync(message)
        description = record.raw_input.get("description")
        if created and description:
            message.tool_use_logs.append(str(description))
        if record.is_active:
            message.is_calling = True
        return ToolCallChange(message=message, record=record, created=created, previous_status=previous)

    def update(self, incoming: Mapping[str, Any]) -> ToolCallChange:
        """Apply a ``tool_call_update``, synthesising the record when it was never announced."""

        tool_call_id = str(incoming.get("tool_call_id") or "")
        found = self._lookup(tool_call_id)
        created = found is None
        if found is None:
            logger.debug("Tool call update before announcement id=%s", tool_call_id)
            found = self._placeholder(tool_call_id)
        message, record = found
        previous = record.status
        record.merge(incoming)
        self._sync(message)
        for line in _content_logs(incoming.get("content")):
            if not message.tool_use_logs or message.tool_use_logs[-1] != line:
                message.tool_use_logs.append(line)

        status = incoming.get("status")
        result: Message | None = None
        if status in ACTIVE_STATUSES:
            message.is_calling = True
            message.state = "generating"
        elif status in TERMINAL_STATUSES:
            message.is_calling = False
            message.state = "generated"
            if tool_call_id not in self._results:
                result = Message(
                    role="assistant",
                    content=[
                        ToolResultContent(
                            tool_use_id=tool_call_id,
                            content=copy.deepcopy(record.content),
                            is_error=status == "failed",
                            is_user_declined=status == "cancelled",
                        )
                    ],
                )
                self._store.append(result)
                self._results[tool_call_id] = result
        return ToolCallChange(message=message, record=record, result=result, created=created, previous_status=previous)

    @staticmethod
    def _sync(message: Message) -> None:
        record = message.tool_call
        use = message.tool_use()
        if record is None or use is None:
            return
        use.name = record.kind or record.title or use.name
        use.input = copy.deepcopy(record.raw_input)
