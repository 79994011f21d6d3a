"""Chat session state."""

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

from chat_pipeline.messages import Message, message_from_dict


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class Chat:
    """A conversation: message history plus bookkeeping."""

    id: str
    messages: list[Message] = field(default_factory=list)
    sidebars: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    user: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    def add_message(self, message: Message) -> Message:
        """Append a message to the history."""
        self.messages.append(message)
        self.updated_at = _utcnow_iso()
        return message

    def last_message(self, message_type: str | None = None) -> Message | None:
        """Return the most recent message, optionally of a given type."""
        for message in reversed(self.messages):
            if message_type is None or message.type == message_type:
                return message
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "messages": [m.to_dict() for m in self.messages],
            "sidebars": list(self.sidebars),
            "metadata": self.metadata,
            "user": self.user,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Chat":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            messages=[message_from_dict(m) for m in data.get("messages", [])],
            sidebars=list(data.get("sidebars", [])),
            metadata=data.get("metadata") or {},
            user=data.get("user"),
            input_tokens=int(data.get("input_tokens", 0) or 0),
            output_tokens=int(data.get("output_tokens", 0) or 0),
            created_at=data.get("created_at", _utcnow_iso()),
            updated_at=data.get("updated_at", _utcnow_iso()),
        )

    def clone(self, new_id: Callable[[], str]) -> tuple["Chat", dict[str, str]]:
        """Deep copy with a fresh chat id and fresh message ids.

        Returns the clone and the old-to-new message id mapping so callers
        can remap any references they hold.
        """
        id_map: dict[str, str] = {}
        messages: list[Message] = []
        for message in self.messages:
            copied = message.clone(new_id())
            id_map[message.id] = copied.id
            messages.append(copied)
        # references between messages follow the remapped ids
        for message in messages:
            if message.prompt in id_map:
                message.prompt = id_map[message.prompt]
            message.window = [id_map.get(i, i) for i in message.window]
        clone = Chat(
            id=new_id(),
            messages=messages,
            sidebars=list(self.sidebars),
            metadata=copy.deepcopy(self.metadata),
            user=self.user,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )
        return clone, id_map
