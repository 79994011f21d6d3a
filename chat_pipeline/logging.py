"""Structured logging for chat-pipeline.

Records logged while a pipeline runs carry the chat they belong to and the
stage that was running. ``Agent.execute`` binds both through
``structlog.contextvars``; ``merge_contextvars`` copies them into each record,
so engine code never passes them by hand.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import structlog

from chat_pipeline.config import LoggingConfig, get_config

_line_sink: Callable[[str], None] | None = None


class _LineWriter:
    """Hands each complete rendered record to a callback."""

    def __init__(self, sink: Callable[[str], None]):
        self._sink = sink
        self._pending = ""

    def write(self, text: str) -> int:
        lines = (self._pending + text).split("\n")
        self._pending = lines.pop()
        for line in lines:
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            self._sink(self._pending)
            self._pending = ""


def set_log_sink(sink: Callable[[str], None] | None) -> None:
    """Send rendered records to ``sink`` instead of stderr from the next ``configure_logging``."""
    global _line_sink
    _line_sink = sink


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure structlog from the logging section (or ``config``)."""
    config = config or get_config().logging
    level = getattr(logging, config.level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if config.format == "json":
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.processors.format_exc_info, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(
            file=_LineWriter(_line_sink) if _line_sink else sys.stderr
        ),
        cache_logger_on_first_use=True,
    )


@contextmanager
def pipeline_context(chat_id: str, chat_type: str) -> Iterator[None]:
    """Tag every record logged inside the block with the running chat."""
    with structlog.contextvars.bound_contextvars(chat_id=chat_id, chat_type=chat_type):
        yield


@contextmanager
def stage_context(stage_id: str, stage: str) -> Iterator[None]:
    with structlog.contextvars.bound_contextvars(stage_id=stage_id, stage=stage):
        yield


def rebind_chat(chat_id: str) -> None:
    """Point the current pipeline context at a different chat (after ``load``)."""
    structlog.contextvars.bind_contextvars(chat_id=chat_id)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
