from typing import Any

import pytest

from chat_pipeline.agent import Agent
from chat_pipeline.exceptions import ToolLoopError, ToolNotFoundError
from chat_pipeline.llm import ModelBackend, StreamRequest, TextChunk, ToolCallChunk, ToolDefinition
from chat_pipeline.messages import Message
from chat_pipeline.tools import Tool, ToolResult


class ScriptedBackend(ModelBackend):
    def __init__(self, replies: list[Any] | None = None, default: Any = "ok"):
        self.replies = list(replies or [])
        self.default = default
        self.requests: list[StreamRequest] = []

    def token_cost(self, message: Message) -> int:
        return 1

    def window_cost(self, messages: list[Message]) -> int:
        return sum(m.tokens.message for m in messages) + 3 * len(messages) + 3

    def tool_cost(self, tools: list[ToolDefinition]) -> dict[str, int]:
        return {"total": 10 * len(tools)}

    async def stream(self, request: StreamRequest):
        self.requests.append(request)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, str):
            reply = [TextChunk(text=reply)]
        for chunk in reply:
            yield chunk


def add(args, locals, chat):
    return args["a"] + args["b"]


@pytest.mark.asyncio
async def test_tool_call_executes_and_result_is_sent_back():
    backend = ScriptedBackend([
        [ToolCallChunk(name="add", arguments='{"a": 1, "b": 2}', call_id="call-1")],
        "The answer is 3",
    ])
    agent = (
        Agent(backend=backend)
        .tool("add", add, description="Add two numbers", parameters={
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        })
        .prompt("what is 1 + 2?")
    )

    await agent.execute()

    assert [m.type for m in agent.messages] == ["prompt", "function", "tool", "response"]
    prompt, function, tool, response = agent.messages
    assert function.name == "add"
    assert function.call_id == "call-1"
    assert function.tools == ["add"]
    assert tool.result == 3
    assert tool.call_id == "call-1"
    assert tool.prompt == function.id
    assert response.prompt == prompt.id
    assert len(backend.requests) == 2
    assert [t.name for t in backend.requests[0].tools] == ["add"]
    assert tool.id in [m.id for m in backend.requests[1].messages]
    assert [s.name for s in agent.pipeline] == ["prompt", "add"]


@pytest.mark.asyncio
async def test_tool_calling_itself_from_its_own_stage_is_stopped():
    calls = []
    backend = ScriptedBackend(default=[ToolCallChunk(name="spin", arguments="{}")])
    agent = (
        Agent(backend=backend)
        .tool("spin", lambda args, locals, chat: calls.append(args) or "again")
        .prompt("go")
    )

    with pytest.raises(ToolLoopError, match="Function Loop - function: spin"):
        await agent.execute()

    assert len(calls) == 2
    assert agent.messages[-1].type == "error"


@pytest.mark.asyncio
async def test_unparseable_arguments_are_recorded_and_tool_still_runs():
    received = []
    backend = ScriptedBackend([
        [ToolCallChunk(name="echo", arguments="[1, 2]")],
        "done",
    ])
    agent = (
        Agent(backend=backend)
        .tool("echo", lambda args, locals, chat: received.append(args) or "echoed")
        .prompt("echo something")
    )

    await agent.execute()

    assert received == [{}]
    assert [m.type for m in agent.messages] == ["prompt", "function", "error", "tool", "response"]
    assert agent.messages[2].error.startswith("Error parsing function arguments for echo")


@pytest.mark.asyncio
async def test_model_style_arguments_are_repaired_before_the_handler_runs():
    received = []
    backend = ScriptedBackend([
        [ToolCallChunk(name="echo", arguments="{'a': 1, 'b': 2,}")],
        "done",
    ])
    agent = (
        Agent(backend=backend)
        .tool("echo", lambda args, locals, chat: received.append(args) or "echoed")
        .prompt("echo something")
    )

    await agent.execute()

    assert received == [{"a": 1, "b": 2}]
    assert [m.type for m in agent.messages] == ["prompt", "function", "tool", "response"]


@pytest.mark.asyncio
async def test_handler_failure_is_recorded_and_pipeline_continues():
    def broken(args, locals, chat):
        raise RuntimeError("kaput")

    backend = ScriptedBackend([[ToolCallChunk(name="broken", arguments="{}")], "recovered"])
    agent = Agent(backend=backend).tool("broken", broken).prompt("try it")

    await agent.execute()

    assert [m.type for m in agent.messages] == ["prompt", "function", "error", "response"]
    assert agent.messages[2].error == "Tool 'broken' failed: kaput"


@pytest.mark.asyncio
async def test_unknown_tool_request_is_recorded_not_executed():
    backend = ScriptedBackend([[ToolCallChunk(name="missing", arguments="{}")]])
    agent = Agent(backend=backend).prompt("call something")

    await agent.execute()

    assert [m.type for m in agent.messages] == ["prompt", "function", "error"]
    assert agent.messages[2].error == "function not found: missing"
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_async_handler_and_structured_result():
    async def lookup(args, locals, chat):
        locals["looked_up"] = args["q"]
        return ToolResult(content=f"found {args['q']}")

    agent = Agent(backend=ScriptedBackend()).tool(Tool(name="lookup", handler=lookup)).call("lookup", {"q": "x"})

    await agent.execute()

    assert agent.locals["looked_up"] == "x"
    assert agent.messages[0].result == {"success": True, "content": "found x", "error": None}


@pytest.mark.asyncio
async def test_call_with_generate_response_sends_chat():
    backend = ScriptedBackend(["summarized"])
    agent = Agent(backend=backend).function("now", lambda args, locals, chat: "noon").call("now", generate_response=True)

    await agent.execute()

    assert [m.type for m in agent.messages] == ["tool", "response"]
    assert agent.messages[1].prompt == agent.messages[0].id
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_call_unknown_tool_fails():
    agent = Agent(backend=ScriptedBackend()).call("nope")

    with pytest.raises(ToolNotFoundError, match="function not found: nope"):
        await agent.execute()


@pytest.mark.asyncio
async def test_tool_cost_shrinks_window_budget():
    backend = ScriptedBackend()
    agent = Agent(backend=backend, settings={"window_size": 32, "min_response_size": 5})
    agent.tool("a", add).tool("b", add)
    agent.append("one").append("two").append("three").prompt("four")

    await agent.execute()

    # budget 32 - 5 - 20 leaves room for one message: 1 + 3 + 3
    assert [m.as_text() for m in backend.requests[0].messages] == ["four"]
