"""Pipeline engine for multi-turn exchanges with a model backend."""

import copy
from typing import Any, Callable

from pydantic import BaseModel, Field, ValidationError

from chat_pipeline import __version__
from chat_pipeline.agent_expect_mixin import AgentExpectMixin
from chat_pipeline.agent_stages_mixin import AgentStagesMixin
from chat_pipeline.agent_tool_loop_mixin import AgentToolLoopMixin
from chat_pipeline.chat import Chat
from chat_pipeline.config import get_config
from chat_pipeline.exceptions import ConfigurationError, LoopError, MoveTargetNotFoundError, PipelineError
from chat_pipeline.llm import ModelBackend, close_backend
from chat_pipeline.logging import get_logger, pipeline_context, stage_context
from chat_pipeline.loop_detection import detect_loop
from chat_pipeline.messages import ErrorMessage, Message
from chat_pipeline.stage import Stage, maybe_await
from chat_pipeline.storage import ChatStorage, NoStorage
from chat_pipeline.stream import Chunk, StreamHandler
from chat_pipeline.tools import ToolRegistry
from chat_pipeline.window import Window, main

log = get_logger(__name__)

# exit() without an error
EXIT_OK = "ok"


class Settings(BaseModel):
    """Per-engine limits."""

    window_size: int = 4000
    min_response_size: int = 400
    max_call_stack: int = Field(default=10, ge=1)

    @classmethod
    def from_config(cls) -> "Settings":
        pipeline = get_config().pipeline
        return cls(
            window_size=pipeline.window_size,
            min_response_size=pipeline.min_response_size,
            max_call_stack=pipeline.max_call_stack,
        )


def _coerce_settings(settings: "Settings | dict[str, Any] | None") -> Settings:
    if isinstance(settings, Settings):
        return settings.model_copy()
    base = Settings.from_config()
    if not settings:
        return base
    unknown = set(settings) - set(Settings.model_fields)
    if unknown:
        raise ConfigurationError(f"Unknown pipeline settings: {', '.join(sorted(unknown))}")
    try:
        return Settings(**{**base.model_dump(), **settings})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid pipeline settings: {e}") from e


class Agent(AgentStagesMixin, AgentExpectMixin, AgentToolLoopMixin):
    """Ordered, self-extending list of stages executed against one chat.

    Builder methods only queue stages and return the agent, so calls chain.
    Nothing reaches the backend until ``execute()`` runs the queue. A running
    stage may queue more stages; they are spliced in right after it, in the
    order they were added.
    """

    def __init__(
        self,
        backend: ModelBackend,
        options: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        storage: ChatStorage | None = None,
        settings: Settings | dict[str, Any] | None = None,
        window: Window | None = None,
    ):
        """Initialize the engine.

        Args:
            backend: Model backend used for every SEND
            options: Default per-request options handed to the backend
            locals: Caller-owned scratch values visible to every stage
            metadata: Chat metadata; ``$`` is reserved for engine bookkeeping
            storage: Id source and persistence (defaults to NoStorage)
            settings: Window size, response size and call stack limits
            window: Context window selector (defaults to ``window.main``)
        """
        self.backend = backend
        self.options: dict[str, Any] = dict(options or {})
        self.locals: dict[str, Any] = dict(locals or {})
        self.storage = storage or NoStorage()
        self.settings = _coerce_settings(settings)
        self.window: Window = window or main

        metadata = dict(metadata or {})
        metadata["$"] = {**(metadata.get("$") or {}), "version": __version__}
        self.chat = Chat(id=self.storage.new_id(), metadata=metadata)

        self.tools = ToolRegistry()
        self.rules: list[str] = []
        self.type = "chat"
        self.user: str | None = None

        self.pipeline: list[Stage] = []
        self.cursor = -1
        self.insertion_point = 0
        self.exit_code: BaseException | str | None = None
        self.stage_trace: list[str] = []

        self._running: int | None = None
        self._handlers: list[StreamHandler] = []
        # stage ids as the caller knew them -> ids after cloning
        self._stage_aliases: dict[str, str] = {}

    @property
    def messages(self) -> list[Message]:
        return self.chat.messages

    def new_id(self) -> str:
        return self.storage.new_id()

    def _add_stage(self, stage: Stage) -> None:
        """Queue a stage.

        Outside a running stage it goes to the end. From inside a running
        stage it goes right after that stage and after anything the same
        stage already added.
        """
        if self._running is None:
            self.pipeline.append(stage)
            return
        self.pipeline.insert(self.insertion_point + 1, stage)
        self.insertion_point += 1

    def _out(self, chunk: Chunk) -> None:
        for handler in self._handlers:
            handler(chunk)

    def _record(self, message: Message, price: bool = True) -> Message:
        """Append ``message`` to the chat and publish it."""
        if price:
            message.tokens.message = self.backend.token_cost(message)
        self.chat.add_message(message)
        self._out(Chunk(type="message", id=message.id, chat=self.chat.id, message=message))
        return message

    def _record_error(self, error: BaseException | str, prompt: str | None = None) -> ErrorMessage:
        message = ErrorMessage(id=self.new_id(), error=str(error), prompt=prompt)
        self._record(message)
        return message

    def pipe(self, *handlers: StreamHandler) -> "Agent":
        """Attach observability handlers; each receives every chunk in order."""
        self._handlers.extend(handlers)
        return self

    def exit(self, error: BaseException | str | None = None) -> None:
        """Stop after the current stage; a given error is raised from ``execute``."""
        self.exit_code = EXIT_OK if error is None else error

    def _find_stage(self, stage_id: str) -> int:
        for candidate in (stage_id, self._stage_aliases.get(stage_id)):
            if candidate is None:
                continue
            for index, stage in enumerate(self.pipeline):
                if stage.id == candidate:
                    return index
        return -1

    def move_to(self, target: dict[str, str] | str | Callable[..., Any], id: str | None = None) -> "Agent":
        """Queue a stage that makes ``target`` the next stage to run.

        ``target`` is a stage id, ``{"id": ...}`` or a callable of
        ``(locals, chat)`` returning either, possibly awaitable.
        """

        async def procedure(agent: "Agent") -> None:
            resolved = target
            if callable(resolved):
                resolved = await maybe_await(resolved(locals=agent.locals, chat=agent))
            stage_id = resolved["id"] if isinstance(resolved, dict) else str(resolved)
            index = agent._find_stage(stage_id)
            if index == -1:
                raise MoveTargetNotFoundError(stage_id)
            # the run loop advances the cursor once for this stage and once before dispatch
            agent.cursor = index - 2

        self._add_stage(Stage(id=id or self.new_id(), name="moveTo", procedure=procedure))
        return self

    async def save(self) -> None:
        await self.storage.save(self.chat)

    def _total_tokens(self) -> tuple[int, int]:
        inputs = 0
        outputs = 0
        for message in self.chat.messages:
            if message.type in ("response", "function"):
                inputs += message.tokens.input or 0
                outputs += message.tokens.message or 0
            else:
                inputs += message.tokens.message or 0
        return inputs, outputs

    async def execute(
        self,
        locals: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "Agent":
        """Run queued stages from the cursor until the end or an exit.

        The chat is persisted whether the run succeeds or fails. A failure
        is recorded as an ``error`` message before it is re-raised.

        Raises:
            LoopError: the stage trace started repeating
            PipelineError: any other fatal condition, including ``exit(error)``
        """
        self.locals = {**self.locals, **(locals or {})}
        self.chat.metadata = {**self.chat.metadata, **(metadata or {})}
        self.stage_trace = []
        error: BaseException | None = None

        with pipeline_context(self.chat.id, self.type):
            try:
                self._out(Chunk(type=self.type, id=self.chat.id, chat=self.chat.id, state="open"))
                await self._run_stages()
            except Exception as e:
                log.error("Pipeline failed", error=str(e))
                self._record_error(e)
                error = e
            finally:
                await close_backend(self.backend)
                self._out(Chunk(type=self.type, id=self.chat.id, chat=self.chat.id, state="closed"))
                self.chat.input_tokens, self.chat.output_tokens = self._total_tokens()
                await self.save()

        if error is not None:
            raise error
        return self

    async def _run_stages(self) -> None:
        while True:
            if self.exit_code is not None:
                if self.exit_code == EXIT_OK:
                    return
                if isinstance(self.exit_code, BaseException):
                    raise self.exit_code
                raise PipelineError(str(self.exit_code))

            result = detect_loop(self.stage_trace, window=self.settings.max_call_stack)
            if result.loop:
                raise LoopError(result.pattern, result.count, result.occurrences)

            index = self.cursor + 1
            if index >= len(self.pipeline):
                return
            stage = self.pipeline[index]
            self.stage_trace.append(stage.id)

            self._out(Chunk(type="stage", id=stage.id, chat=self.chat.id, stage=stage.name, state="begin"))
            self._running = index
            self.insertion_point = index
            with stage_context(stage.id, stage.name):
                log.debug("Running stage", kind=stage.kind)
                try:
                    await stage.procedure(self)
                finally:
                    self._running = None
            self._out(Chunk(type="stage", id=stage.id, chat=self.chat.id, stage=stage.name, state="end"))

            self.cursor += 1
            self.insertion_point = self.cursor + 1

    def clone(self, start_at: str | int = "beginning") -> "Agent":
        """Independent copy: new chat id, new message ids, new stage ids.

        ``start_at`` is ``"beginning"``, ``"end"`` or the cursor value to
        resume from.
        """
        twin = Agent(
            backend=self.backend,
            options=copy.deepcopy(self.options),
            locals=copy.deepcopy(self.locals),
            storage=self.storage,
            settings=self.settings,
            window=self.window,
        )
        twin.chat, id_map = self.chat.clone(self.new_id)
        twin.rules = [id_map.get(rule_id, rule_id) for rule_id in self.rules]
        twin.tools = self.tools.copy()
        twin.type = self.type
        twin.user = self.user
        twin._handlers = list(self._handlers)

        stage_map: dict[str, str] = {}
        for stage in self.pipeline:
            copied = stage.clone(self.new_id())
            stage_map[stage.id] = copied.id
            twin.pipeline.append(copied)
        twin._stage_aliases = {
            original: stage_map.get(current, current)
            for original, current in self._stage_aliases.items()
        }
        twin._stage_aliases.update(stage_map)

        if start_at == "beginning":
            twin.cursor = -1
        elif start_at == "end":
            twin.cursor = len(twin.pipeline) - 1
        else:
            twin.cursor = int(start_at)
        twin.insertion_point = twin.cursor + 1
        return twin

    def sidebar(self, rules: bool = False, tools: bool = False, locals: bool = False) -> "Agent":
        """Child conversation sharing this engine's backend and storage.

        The child's metadata records this chat as ``$.parent`` and its id is
        added to ``chat.sidebars``.

        Args:
            rules: Copy this pipeline's rule stages into the child
            tools: Offer the same tools, with separate call counts
            locals: Start from a copy of this engine's locals
        """
        metadata = copy.deepcopy(self.chat.metadata)
        metadata["$"] = {**(metadata.get("$") or {}), "parent": self.chat.id}
        child = Agent(
            backend=self.backend,
            options=copy.deepcopy(self.options),
            storage=self.storage,
            settings=self.settings,
            metadata=metadata,
            window=self.window,
        )
        child.type = "sidebar"
        self.chat.sidebars.append(child.chat.id)

        if self.user:
            child.user = self.user
            child.chat.user = self.user
        if rules:
            child.pipeline = [
                stage.clone(self.new_id()) for stage in self.pipeline if stage.kind == "rule"
            ]
        if tools:
            child.tools = self.tools.copy()
        if locals:
            child.locals = copy.deepcopy(self.locals)
        log.debug("Created sidebar", parent_id=self.chat.id, sidebar_id=child.chat.id)
        return child
