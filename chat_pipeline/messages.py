"""Conversation message types.

Messages form an append-only, insertion-ordered history. Each concrete
message is tagged by its ``type`` so the history can be serialized and
restored without losing the distinction between prompts, responses, tool
traffic and standing rules.
"""

import copy
import json
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


class Visibility(str, Enum):
    """Eligibility of a message for inclusion in a context window."""

    SYSTEM = "system"
    OPTIONAL = "optional"
    REQUIRED = "required"
    EXCLUDE = "exclude"


@dataclass
class TokenUsage:
    """Token cost record of a message."""

    message: int = 0
    input: int = 0


@dataclass(kw_only=True)
class Message:
    """Fields shared by every message."""

    type: ClassVar[str] = ""

    id: str
    visibility: Visibility = Visibility.OPTIONAL
    created_at: str = field(default_factory=_utcnow_iso)
    tokens: TokenUsage = field(default_factory=TokenUsage)
    key: str | None = None
    user: str | None = None
    # id of the message that caused this one (prompt, error, tool result...)
    prompt: str | None = None
    window: list[str] = field(default_factory=list)
    tools: list[str] | None = None

    def as_text(self) -> str:
        """Plain-text rendering used for token estimates and transcripts."""
        return ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["type"] = self.type
        data["visibility"] = self.visibility.value
        return data

    def clone(self, new_id: str) -> "Message":
        """Structural copy of this message carrying a new id."""
        return replace(copy.deepcopy(self), id=new_id)


@dataclass(kw_only=True)
class ContextMessage(Message):
    """Side content pushed or appended without prompting the backend."""

    type: ClassVar[str] = "context"

    content: str = ""
    role: str = "user"

    def as_text(self) -> str:
        return self.content


@dataclass(kw_only=True)
class PromptMessage(Message):
    """A user-directed turn sent to the backend."""

    type: ClassVar[str] = "prompt"

    content: Any = ""
    role: str = "user"
    options: dict[str, Any] = field(default_factory=dict)

    def as_text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, default=str)


@dataclass(kw_only=True)
class ResponseMessage(Message):
    """Backend text reply."""

    type: ClassVar[str] = "response"

    text: str = ""
    code_blocks: list[dict[str, str]] = field(default_factory=list)

    def as_text(self) -> str:
        return self.text


@dataclass(kw_only=True)
class FunctionMessage(Message):
    """Backend-requested tool invocation."""

    type: ClassVar[str] = "function"

    visibility: Visibility = Visibility.SYSTEM
    name: str = ""
    arguments: str = ""
    call_id: str | None = None

    def as_text(self) -> str:
        return f"{self.name}{self.arguments}"


@dataclass(kw_only=True)
class ToolResultMessage(Message):
    """Output of executing a tool."""

    type: ClassVar[str] = "tool"

    visibility: Visibility = Visibility.SYSTEM
    name: str = ""
    call_id: str | None = None
    result: Any = None

    def as_text(self) -> str:
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, default=str)


@dataclass(kw_only=True)
class RuleMessage(Message):
    """Standing requirement that travels with every prompt."""

    type: ClassVar[str] = "rule"

    visibility: Visibility = Visibility.REQUIRED
    name: str = ""
    rule: str = ""

    def as_text(self) -> str:
        return self.rule


@dataclass(kw_only=True)
class InstructionMessage(Message):
    """System instruction for the conversation."""

    type: ClassVar[str] = "instruction"

    visibility: Visibility = Visibility.REQUIRED
    instruction: str = ""

    def as_text(self) -> str:
        return self.instruction


@dataclass(kw_only=True)
class ErrorMessage(Message):
    """A recorded failure; also fed back to the backend as context."""

    type: ClassVar[str] = "error"

    visibility: Visibility = Visibility.SYSTEM
    error: str = ""

    def as_text(self) -> str:
        return self.error


MESSAGE_TYPES: dict[str, type[Message]] = {
    cls.type: cls
    for cls in (
        ContextMessage,
        PromptMessage,
        ResponseMessage,
        FunctionMessage,
        ToolResultMessage,
        RuleMessage,
        InstructionMessage,
        ErrorMessage,
    )
}


def message_from_dict(data: dict[str, Any]) -> Message:
    """Restore a message from its ``to_dict()`` form."""
    message_type = data.get("type", "")
    cls = MESSAGE_TYPES.get(message_type)
    if cls is None:
        raise ValueError(f"Unsupported message type: {message_type!r}")

    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in known}
    if "visibility" in kwargs:
        kwargs["visibility"] = Visibility(kwargs["visibility"])
    tokens = kwargs.get("tokens")
    if isinstance(tokens, dict):
        kwargs["tokens"] = TokenUsage(
            message=int(tokens.get("message", 0) or 0),
            input=int(tokens.get("input", 0) or 0),
        )
    return cls(**kwargs)
