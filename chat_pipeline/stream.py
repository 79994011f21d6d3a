"""Observability stream: chunk type and ready-made handlers."""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, TextIO

from rich.console import Console

from chat_pipeline.messages import Message

if TYPE_CHECKING:
    from chat_pipeline.chat import Chat


@dataclass
class Chunk:
    """One observability event emitted by a running pipeline.

    ``type`` is one of ``chat``, ``sidebar``, ``stage``, ``message``,
    ``stream``, ``metadata`` or ``error``; the other fields are filled
    depending on the type.
    """

    type: str
    id: str
    chat: str
    state: str | None = None
    stage: str | None = None
    message: Message | None = None
    text: str | None = None
    metadata: dict[str, Any] | None = None
    error: BaseException | str | None = None


StreamHandler = Callable[[Chunk], None]


def _describe_message(message: Message) -> str:
    if message.type == "prompt":
        return f" [PROMPT] {message.as_text()}\n"
    if message.type in ("response", "function"):
        # already seen through stream chunks
        return ""
    if message.type == "tool":
        return f" [TOOL RESULT] {json.dumps(getattr(message, 'result', None), indent=2, default=str)}\n"
    return f" [{message.type.upper()}] {message.as_text()}\n"


def transcript(pipe: Callable[[str], None]) -> StreamHandler:
    """Render chunks as a readable text transcript written through ``pipe``."""
    last_type: str | None = None

    def handler(chunk: Chunk) -> None:
        nonlocal last_type
        if chunk.type != last_type:
            pipe(f"\n[{chunk.type.upper()}] ")
            last_type = chunk.type

        if chunk.type in ("chat", "sidebar"):
            pipe(f"ID: {chunk.id}, State: {chunk.state}\n")
        elif chunk.type == "stage":
            pipe(f"{chunk.stage} ({chunk.state})\n")
        elif chunk.type == "stream":
            pipe(chunk.text or "")
        elif chunk.type == "message" and chunk.message is not None:
            pipe(_describe_message(chunk.message))
        elif chunk.type == "metadata":
            pipe(f"{json.dumps(chunk.metadata, default=str)}\n")
        elif chunk.type == "error":
            pipe(f"{chunk.error}\n")

    return handler


def stdout(console: Console | None = None) -> StreamHandler:
    """Transcript handler printing to the terminal."""
    target = console or Console()
    return transcript(lambda text: target.print(text, end="", markup=False, highlight=False))


def local_file_stream(directory: Path | str, filename: str, append: bool = True) -> StreamHandler:
    """Transcript handler writing to ``<directory>/<filename>.log``.

    The directory is not created. The file is opened lazily on the first
    chunk and closed when the chat that opened it reports ``closed``.
    """
    path = Path(directory) / f"{filename}.log"
    handle: TextIO | None = None
    owner: str | None = None

    def pipe(text: str) -> None:
        nonlocal handle
        if handle is None:
            handle = open(path, "a" if append else "w", encoding="utf-8")
        handle.write(text)

    render = transcript(pipe)

    def handler(chunk: Chunk) -> None:
        nonlocal handle, owner
        if owner is None and chunk.type in ("chat", "sidebar"):
            owner = chunk.id
        render(chunk)
        if chunk.type in ("chat", "sidebar") and chunk.state == "closed" and chunk.id == owner:
            if handle is not None:
                handle.close()
                handle = None
            owner = None

    return handler


def local_file_storage(
    directory: Path | str,
    chat: "Chat",
    filename: str | None = None,
    indent: int = 2,
) -> Path:
    """Write ``chat`` as JSON to ``<directory>/<filename or chat id>.json``."""
    path = Path(directory) / f"{filename or chat.id}.json"
    path.write_text(json.dumps(chat.to_dict(), indent=indent, default=str), encoding="utf-8")
    return path
