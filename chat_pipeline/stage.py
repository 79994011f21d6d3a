"""Pipeline stage record."""

import inspect
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:
    from chat_pipeline.agent import Agent


@dataclass
class Stage:
    """One unit of pipeline work.

    ``procedure`` receives the engine executing it, never the engine that
    built it, so a cloned pipeline runs against its own state. ``kind`` is
    the builder that queued the stage (``join``, ``rule``, ``call``...);
    ``name`` is what observers see and may be a tool name.
    """

    id: str
    name: str
    procedure: Callable[["Agent"], Awaitable[None]]
    kind: str = ""

    def __post_init__(self) -> None:
        if not self.kind:
            self.kind = self.name

    def clone(self, new_id: str) -> "Stage":
        return replace(self, id=new_id)


async def maybe_await(value: Any) -> Any:
    """Await ``value`` when a callback handed back an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value
