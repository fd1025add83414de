"""Chat conversation types consumed by the prompt builder."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator, Mapping, Sequence, overload

from mlx_textgen.errors import TemplateError


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise TemplateError(f"unsupported message role: {value!r}") from exc


@dataclass(frozen=True)
class Message:
    """One chat turn. Immutable once created."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class Conversation(Sequence[Message]):
    """
    Chronologically ordered chat messages.

    Messages can only be appended; existing turns are never edited or
    reordered. The prompt builder reads a conversation without changing it.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = []
        for message in messages:
            self.append(message)

    @classmethod
    def from_dicts(cls, messages: Iterable[Mapping[str, Any]]) -> "Conversation":
        conversation = cls()
        for entry in messages:
            conversation.add(entry.get("role", "user"), str(entry.get("content", "")))
        return conversation

    def append(self, message: Message) -> None:
        if not isinstance(message, Message):
            raise TypeError(f"expected Message, got {type(message).__name__}")
        self._messages.append(message)

    def add(self, role: "str | Role", content: str) -> Message:
        message = Message(role=Role.parse(role), content=content)
        self._messages.append(message)
        return message

    def to_dicts(self) -> list[dict[str, str]]:
        return [message.to_dict() for message in self._messages]

    @overload
    def __getitem__(self, index: int) -> Message: ...

    @overload
    def __getitem__(self, index: slice) -> list[Message]: ...

    def __getitem__(self, index):
        return self._messages[index]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Conversation):
            return self._messages == other._messages
        return NotImplemented

    def __repr__(self) -> str:
        return f"Conversation({self._messages!r})"
