"""Context window selection.

A window is the subset of prior messages that accompanies the next request
to the backend. ``main`` is budget-aware; ``latest`` simply keeps the tail.
"""

from typing import TYPE_CHECKING, Callable

from chat_pipeline.logging import get_logger
from chat_pipeline.messages import Message, Visibility

if TYPE_CHECKING:
    from chat_pipeline.llm import ModelBackend

log = get_logger(__name__)

Window = Callable[[list[Message], int, "ModelBackend"], list[Message]]


def latest_by_key(messages: list[Message]) -> list[Message]:
    """Drop messages superseded by a later message with the same key."""
    last_index: dict[str, int] = {}
    for index, message in enumerate(messages):
        if message.key is not None:
            last_index[message.key] = index
    return [
        message
        for index, message in enumerate(messages)
        if message.key is None or last_index[message.key] == index
    ]


def main(messages: list[Message], token_limit: int, backend: "ModelBackend") -> list[Message]:
    """Select the budget-constrained window for the next request.

    REQUIRED messages are always included and consume budget first; EXCLUDE
    messages never are. The remaining messages fill what is left of the
    budget most recent first, priced by the backend's cumulative window cost
    so per-message overhead is accounted for. The result is chronological.
    """
    if not messages:
        return []

    candidates = [m for m in latest_by_key(messages) if m.visibility != Visibility.EXCLUDE]
    required = [m for m in candidates if m.visibility == Visibility.REQUIRED]
    optional = [m for m in candidates if m.visibility != Visibility.REQUIRED]

    required_cost = backend.window_cost(required) if required else 0
    remaining = token_limit - required_cost
    if remaining < 0:
        log.warning(
            "Required messages exceed window budget",
            required=len(required),
            required_cost=required_cost,
            token_limit=token_limit,
        )

    accepted: list[Message] = []
    for message in reversed(optional):
        cost = backend.window_cost([*required, *accepted, message]) - required_cost
        if cost > remaining:
            break
        accepted.append(message)

    selected = {id(m) for m in required} | {id(m) for m in accepted}
    return [m for m in candidates if id(m) in selected]


def latest(max_messages: int) -> Window:
    """Build a window that returns the last ``max_messages`` messages verbatim."""
    if max_messages <= 0:
        raise ValueError(f"max must be greater than 0, received {max_messages}")

    def select(messages: list[Message], token_limit: int, backend: "ModelBackend") -> list[Message]:
        return list(messages[-max_messages:])

    return select
