"""Builder stages for Agent."""

from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Mapping

from chat_pipeline.exceptions import BranchWithoutJoinError, ToolNotFoundError
from chat_pipeline.logging import get_logger, rebind_chat
from chat_pipeline.messages import (
    ContextMessage,
    InstructionMessage,
    PromptMessage,
    RuleMessage,
    ToolResultMessage,
    Visibility,
)
from chat_pipeline.rules import Rule
from chat_pipeline.stage import Stage, maybe_await
from chat_pipeline.stream import Chunk
from chat_pipeline.tools import Tool, ToolHandler

if TYPE_CHECKING:
    from chat_pipeline.agent import Agent

log = get_logger(__name__)

# a value, or a callable of (locals, chat) returning one (possibly awaitable)
Deferred = Any


async def _resolve(agent: "Agent", value: Deferred) -> Any:
    if callable(value):
        return await maybe_await(value(locals=agent.locals, chat=agent))
    return value


def _as_args(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        return {"content": value}
    if isinstance(value, Mapping):
        return dict(value)
    raise TypeError(f"expected a string or a mapping, got {type(value).__name__}")


def _visibility(value: Any, default: Visibility) -> Visibility:
    if value is None:
        return default
    return Visibility(value)


class AgentStagesMixin:
    """Stages that add messages, run caller code or reshape the pipeline."""

    def _context_stage(self, name: str, args: Deferred, id: str | None) -> "Agent":
        async def procedure(agent: "Agent") -> None:
            values = _as_args(await _resolve(agent, args))
            agent._record(ContextMessage(
                id=agent.new_id(),
                content=str(values.get("content", "")),
                role=values.get("role", "user"),
                key=values.get("key"),
                visibility=_visibility(values.get("visibility"), Visibility.OPTIONAL),
                user=agent.user,
            ))

        self._add_stage(Stage(id=id or self.new_id(), name=name, procedure=procedure))
        return self

    def push(self, args: Deferred, id: str | None = None) -> "Agent":
        """Add a context message without prompting the backend."""
        return self._context_stage("push", args, id)

    def append(self, args: Deferred, id: str | None = None) -> "Agent":
        """Add a context message to the end of the chat without prompting."""
        return self._context_stage("append", args, id)

    def _prompt_stage(self, args: Deferred, id: str | None = None) -> Stage:
        async def procedure(agent: "Agent") -> None:
            values = _as_args(await _resolve(agent, args))
            options = {**agent.options, **(values.get("options") or {})}
            message = agent._record(PromptMessage(
                id=agent.new_id(),
                content=values.get("content", ""),
                role=values.get("role", "user"),
                key=values.get("key"),
                options=options,
                visibility=_visibility(values.get("visibility"), Visibility.OPTIONAL),
                user=agent.user,
            ))
            await agent._send(functions=True, caller=message.id, options=options)

        return Stage(id=id or self.new_id(), name="prompt", procedure=procedure)

    def prompt(self, args: Deferred, id: str | None = None) -> "Agent":
        """Add a prompt message and send the chat to the backend."""
        self._add_stage(self._prompt_stage(args, id))
        return self

    def prompt_for_each(self, func: Callable[..., Any], id: str | None = None) -> "Agent":
        """Queue one prompt stage per prompt returned by ``func(locals, chat)``."""

        async def procedure(agent: "Agent") -> None:
            for args in await maybe_await(func(locals=agent.locals, chat=agent)) or []:
                agent.prompt(args)

        self._add_stage(Stage(id=id or self.new_id(), name="promptForEach", procedure=procedure))
        return self

    def for_each(self, items: list[Any], func: Callable[..., Any], id: str | None = None) -> "Agent":
        """Call ``func(item, index, locals, chat)`` per item.

        Stages ``func`` adds run next, in item order.
        """

        async def procedure(agent: "Agent") -> None:
            for index, item in enumerate(items):
                await maybe_await(func(item=item, index=index, locals=agent.locals, chat=agent))

        self._add_stage(Stage(id=id or self.new_id(), name="forEach", procedure=procedure))
        return self

    def branch_for_each(self, func: Callable[..., Any], id: str | None = None) -> "Agent":
        """Repeat the stages up to the next ``join()`` once per returned prompt.

        ``func(locals, chat)`` returns prompt arguments. Each becomes a
        prompt stage followed by a fresh copy of the stages between this
        stage and the join.

        Raises:
            BranchWithoutJoinError: when executed with no join ahead of it
        """

        async def procedure(agent: "Agent") -> None:
            running = agent._running if agent._running is not None else agent.cursor + 1
            join_index = next(
                (i for i in range(running + 1, len(agent.pipeline)) if agent.pipeline[i].kind == "join"),
                -1,
            )
            if join_index == -1:
                raise BranchWithoutJoinError()

            prompts = await maybe_await(func(locals=agent.locals, chat=agent)) or []
            body = agent.pipeline[running + 1:join_index]
            branches: list[Stage] = []
            for args in prompts:
                branches.append(agent._prompt_stage(args))
                branches.extend(stage.clone(agent.new_id()) for stage in body)
            agent.pipeline = [
                *agent.pipeline[:running + 1],
                *branches,
                *agent.pipeline[join_index + 1:],
            ]
            log.debug("Branched pipeline", branches=len(prompts), stages=len(body))

        self._add_stage(Stage(id=id or self.new_id(), name="branchForEach", procedure=procedure))
        return self

    def join(self, id: str | None = None) -> "Agent":
        """Mark where the stages repeated by ``branch_for_each`` end."""

        async def procedure(agent: "Agent") -> None:
            return None

        self._add_stage(Stage(id=id or self.new_id(), name="join", procedure=procedure))
        return self

    def rule(self, rule: Rule | Mapping[str, Any] | Callable[..., Any], id: str | None = None) -> "Agent":
        """Add a standing REQUIRED rule keyed by ``key`` or ``name``."""

        async def procedure(agent: "Agent") -> None:
            value = await _resolve(agent, rule)
            if not isinstance(value, Rule):
                value = Rule(**dict(value))
            message = agent._record(RuleMessage(
                id=id or agent.new_id(),
                key=value.key or value.name,
                name=value.name,
                rule=value.requirement,
            ))
            agent.rules.append(message.id)

        self._add_stage(Stage(id=self.new_id(), name="rule", procedure=procedure))
        return self

    def instruction(self, instruction: str | Mapping[str, Any], id: str | None = None) -> "Agent":
        """Add the REQUIRED system instruction, given as text or ``{"filepath": ...}``."""

        async def procedure(agent: "Agent") -> None:
            if isinstance(instruction, str):
                text = instruction
            elif isinstance(instruction, Mapping) and instruction.get("filepath"):
                text = Path(instruction["filepath"]).read_text(encoding="utf-8")
            else:
                raise ValueError("instruction must be a string or a mapping with a filepath")
            agent._record(InstructionMessage(
                id=agent.new_id(),
                key="instruction",
                instruction=text,
            ))

        self._add_stage(Stage(id=id or self.new_id(), name="instruction", procedure=procedure))
        return self

    def tool(
        self,
        name: str | Tool,
        handler: ToolHandler | None = None,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> "Agent":
        """Register a tool the backend may call; this is not a stage.

        ``handler(args, locals=..., chat=...)`` may return a value or an
        awaitable.
        """
        if isinstance(name, Tool):
            self.tools.register(name)
            return self
        if handler is None:
            raise ValueError(f"Tool '{name}' needs a handler")
        self.tools.register(Tool(
            name=name,
            handler=handler,
            description=description,
            parameters=parameters or {},
        ))
        return self

    function = tool

    def call(
        self,
        name: str,
        args: dict[str, Any] | None = None,
        generate_response: bool = False,
        id: str | None = None,
    ) -> "Agent":
        """Run a registered tool directly and record its result.

        With ``generate_response`` the chat is then sent to the backend.
        """

        async def procedure(agent: "Agent") -> None:
            if not agent.tools.has_tool(name):
                raise ToolNotFoundError(name)
            result = await agent._invoke_tool(agent.tools.get(name), dict(args or {}))
            message = agent._record(ToolResultMessage(
                id=agent.new_id(),
                name=name,
                result=result,
            ))
            if generate_response:
                await agent._send(functions=True, caller=message.id)

        # named after the tool so the self-loop guard covers responses to it
        self._add_stage(Stage(id=id or self.new_id(), name=name, procedure=procedure, kind="call"))
        return self

    def response(self, func: Callable[..., Any], id: str | None = None) -> "Agent":
        """Hand the latest message to ``func(response, locals, chat)``."""

        async def procedure(agent: "Agent") -> None:
            await maybe_await(func(response=agent.chat.last_message(), locals=agent.locals, chat=agent))

        self._add_stage(Stage(id=id or self.new_id(), name="response", procedure=procedure))
        return self

    def pause(self, func: Callable[..., Any], id: str | None = None) -> "Agent":
        """Run caller code between stages."""

        async def procedure(agent: "Agent") -> None:
            await maybe_await(func(locals=agent.locals, chat=agent))

        self._add_stage(Stage(id=id or self.new_id(), name="pause", procedure=procedure))
        return self

    def set_user(self, user_id: str, id: str | None = None) -> "Agent":
        """Attribute subsequent messages to ``user_id``."""

        async def procedure(agent: "Agent") -> None:
            agent.user = user_id
            if agent.chat.user is None:
                agent.chat.user = user_id

        self._add_stage(Stage(id=id or self.new_id(), name="user", procedure=procedure))
        return self

    def set_locals(self, value: Deferred, id: str | None = None) -> "Agent":
        """Merge values into ``locals``."""

        async def procedure(agent: "Agent") -> None:
            agent.locals = {**agent.locals, **(await _resolve(agent, value) or {})}

        self._add_stage(Stage(id=id or self.new_id(), name="locals", procedure=procedure))
        return self

    def set_metadata(self, value: Deferred, id: str | None = None) -> "Agent":
        """Merge values into the chat metadata and publish the result."""

        async def procedure(agent: "Agent") -> None:
            agent.chat.metadata = {**agent.chat.metadata, **(await _resolve(agent, value) or {})}
            agent._out(Chunk(
                type="metadata",
                id=agent.new_id(),
                chat=agent.chat.id,
                metadata=agent.chat.metadata,
            ))

        self._add_stage(Stage(id=id or self.new_id(), name="metadata", procedure=procedure))
        return self

    def load(self, chat_id: str, id: str | None = None) -> "Agent":
        """Continue a stored chat.

        REQUIRED and keyed messages produced before this stage are kept
        unless the stored chat carries a message with the same id or key.
        """

        async def procedure(agent: "Agent") -> None:
            loaded = await maybe_await(agent.storage.get_by_id(chat_id))
            merged = [
                m for m in agent.chat.messages
                if m.visibility == Visibility.REQUIRED or m.key is not None
            ]
            for incoming in loaded.messages:
                index = next(
                    (
                        i for i, m in enumerate(merged)
                        if m.id == incoming.id or (m.key and incoming.key and m.key == incoming.key)
                    ),
                    -1,
                )
                if index == -1:
                    merged.append(incoming)
                else:
                    merged[index] = incoming
            loaded.messages = merged
            agent.chat = loaded
            rebind_chat(loaded.id)
            log.info("Loaded chat", messages=len(merged))

        self._add_stage(Stage(id=id or self.new_id(), name="load", procedure=procedure))
        return self
