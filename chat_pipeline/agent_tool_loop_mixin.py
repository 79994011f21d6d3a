"""Send/stream/tool-execution loop for Agent."""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from chat_pipeline.exceptions import ArgumentParseError, ToolHandlerError, ToolLoopError, ToolNotFoundError
from chat_pipeline.expect import extract_code_blocks
from chat_pipeline.llm import StreamRequest, TextChunk, ToolCallChunk, UsageChunk
from chat_pipeline.logging import get_logger
from chat_pipeline.messages import FunctionMessage, ResponseMessage, ToolResultMessage, TokenUsage
from chat_pipeline.stage import Stage, maybe_await
from chat_pipeline.stream import Chunk
from chat_pipeline.tools import Tool, ToolResult, parse_arguments

if TYPE_CHECKING:
    from chat_pipeline.agent import Agent

log = get_logger(__name__)

# characters buffered before the first stream chunk is published
STREAM_BUFFER_SIZE = 5


@dataclass
class _PendingCall:
    tool: Tool
    arguments: str
    call_id: str | None
    message_id: str


class AgentToolLoopMixin:
    """Submit the chat to the backend and run the tools it asks for."""

    async def _send(
        self,
        functions: bool = True,
        caller: str | None = None,
        options: dict[str, Any] | None = None,
        window_size: int | None = None,
        response_size: int | None = None,
    ) -> None:
        """Send the current window and record what comes back.

        Text becomes a ``response`` message, tool calls become ``function``
        messages. Requested tools run after the stream ends, and a stage
        that sends their results back is queued right after the running one.
        Backend failures propagate.
        """
        window_size = window_size or self.settings.window_size
        response_size = response_size or self.settings.min_response_size
        tools = self.tools.get_definitions() if functions else []
        tool_cost = self.backend.tool_cost(tools) if tools else {"total": 0}
        limit = window_size - response_size - (tool_cost.get("total") or 0)

        window = self.window(self.chat.messages, limit, self.backend)
        window_ids = [m.id for m in window]
        tool_names = [t.name for t in tools] or None
        request = StreamRequest(
            messages=window,
            tools=tools,
            response_size=response_size,
            user=self.user,
            options={**self.options, **(options or {})},
        )
        log.debug(
            "Sending window",
            messages=len(window),
            token_limit=limit,
            tools=len(tools),
        )

        response_id = self.new_id()
        text = ""
        buffering = True
        usage = UsageChunk()
        function_messages: list[FunctionMessage] = []
        pending: list[_PendingCall] = []

        async for chunk in self.backend.stream(request):
            if isinstance(chunk, UsageChunk):
                usage = chunk
            elif isinstance(chunk, ToolCallChunk):
                message = self._record(FunctionMessage(
                    id=self.new_id(),
                    name=chunk.name,
                    arguments=chunk.arguments,
                    call_id=chunk.call_id,
                    prompt=caller,
                    window=window_ids,
                    tools=tool_names,
                ), price=False)
                function_messages.append(message)
                if self.tools.has_tool(chunk.name):
                    pending.append(_PendingCall(
                        tool=self.tools.get(chunk.name),
                        arguments=chunk.arguments,
                        call_id=chunk.call_id,
                        message_id=message.id,
                    ))
                else:
                    log.warning("Backend requested unknown tool", tool=chunk.name, call_id=chunk.call_id)
                    self._record_error(ToolNotFoundError(chunk.name), prompt=message.id)
            elif isinstance(chunk, TextChunk):
                text += chunk.text
                if buffering:
                    if len(text) >= STREAM_BUFFER_SIZE:
                        self._out(Chunk(type="stream", id=response_id, chat=self.chat.id, text=text))
                        buffering = False
                else:
                    self._out(Chunk(type="stream", id=response_id, chat=self.chat.id, text=chunk.text))

        tokens = TokenUsage(message=usage.output, input=usage.input)
        if text.strip():
            self._record(ResponseMessage(
                id=response_id,
                text=text,
                code_blocks=extract_code_blocks(text),
                tokens=tokens,
                prompt=caller,
                window=window_ids,
                tools=tool_names,
            ), price=False)
        elif function_messages:
            # usage arrives once per request; charge it to the first tool call
            function_messages[0].tokens = tokens

        if not pending:
            return

        await self._execute_tool_calls(pending)

        async def resend(agent: "Agent") -> None:
            await agent._send(
                functions=functions,
                caller=caller,
                window_size=window_size,
                response_size=response_size,
            )

        names = {call.tool.name for call in pending}
        name = names.pop() if len(names) == 1 else "tool:result"
        self._add_stage(Stage(id=self.new_id(), name=name, procedure=resend, kind="tool:result"))

    async def _execute_tool_calls(self, pending: list[_PendingCall]) -> None:
        current = self.pipeline[self._running].name if self._running is not None else None
        for call in pending:
            name = call.tool.name
            if self.tools.record_call(name) > 2 and current == name:
                raise ToolLoopError(name)

            try:
                args = parse_arguments(name, call.arguments)
            except ArgumentParseError as e:
                log.warning("Tool arguments not parseable", tool=name, error=str(e))
                self._record_error(e, prompt=call.message_id)
                args = {}

            log.info("Executing tool", tool=name, call_id=call.call_id)
            try:
                result = await self._invoke_tool(call.tool, args)
            except Exception as e:
                log.warning("Tool failed", tool=name, error=str(e))
                self._record_error(ToolHandlerError(name, str(e)), prompt=call.message_id)
                continue
            self._record(ToolResultMessage(
                id=self.new_id(),
                name=name,
                call_id=call.call_id,
                result=result,
                prompt=call.message_id,
            ))

    async def _invoke_tool(self, tool: Tool, args: dict[str, Any]) -> Any:
        result = await maybe_await(tool.handler(args, locals=self.locals, chat=self))
        if result is None:
            result = ToolResult()
        if isinstance(result, ToolResult):
            return result.model_dump()
        return result
