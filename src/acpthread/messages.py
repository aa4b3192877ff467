"""Conversation history: messages, typed content items and the append-only store."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Annotated, Any, Iterable, Iterator, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from acpthread.tool_calls import ToolCallRecord

Role = Literal["user", "assistant"]
MessageState = Literal["generating", "generated"]


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ThinkingContent(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str = ""


class ToolUseContent(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultContent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Any = None
    is_error: bool = False
    is_user_declined: bool = False


ContentItem = Annotated[
    Union[TextContent, ThinkingContent, ToolUseContent, ToolResultContent],
    Field(discriminator="type"),
]


def _new_uuid() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """One history entry.

    ``content`` is either plain text or a list of typed items. Streaming
    chunks only ever grow a single slot of the last message.
    """

    role: Role
    content: str | list[ContentItem]
    uuid: str = field(default_factory=_new_uuid)
    created_at: datetime = field(default_factory=_now)
    is_calling: bool = False
    state: MessageState | None = None
    tool_call: "ToolCallRecord | None" = None
    tool_use_logs: list[str] = field(default_factory=list)

    def items(self) -> list[ContentItem]:
        if isinstance(self.content, str):
            return [TextContent(text=self.content)]
        return list(self.content)

    def append_to_slot(self, slot: Literal["text", "thinking"], text: str) -> bool:
        """Grow the last ``slot`` of this message; False when it has none."""

        if isinstance(self.content, str):
            if slot != "text":
                return False
            self.content += text
            return True
        for item in reversed(self.content):
            if slot == "text" and isinstance(item, TextContent):
                item.text += text
                return True
            if slot == "thinking" and isinstance(item, ThinkingContent):
                item.thinking += text
                return True
        return False

    def text(self) -> str:
        return "".join(item.text for item in self.items() if isinstance(item, TextContent))

    def thinking(self) -> str:
        return "".join(item.thinking for item in self.items() if isinstance(item, ThinkingContent))

    def tool_use(self) -> ToolUseContent | None:
        return next((item for item in self.items() if isinstance(item, ToolUseContent)), None)

    def tool_result(self) -> ToolResultContent | None:
        return next((item for item in self.items() if isinstance(item, ToolResultContent)), None)

    def snapshot(self) -> "Message":
        return copy.deepcopy(self)


class MessageStore:
    """Ordered, append-only message history with lookup by uuid."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = []
        self._by_uuid: dict[str, Message] = {}
        self.extend(messages)

    def append(self, message: Message) -> Message:
        if message.uuid in self._by_uuid:
            raise ValueError(f"duplicate message uuid {message.uuid}")
        self._messages.append(message)
        self._by_uuid[message.uuid] = message
        return message

    def extend(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self.append(message)

    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def get(self, uuid: str) -> Message | None:
        return self._by_uuid.get(uuid)

    def clear(self) -> None:
        self._messages.clear()
        self._by_uuid.clear()

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def copy_upto(self, end: int | None = None) -> list[Message]:
        """Deep copies of messages ``[0:end]`` (all of them when ``end`` is None)."""

        selected = self._messages if end is None else self._messages[:end]
        return copy.deepcopy(selected)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]
