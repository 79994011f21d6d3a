import pytest

from chat_pipeline.agent import Agent
from chat_pipeline.llm import ModelBackend, StreamRequest, TextChunk
from chat_pipeline.messages import Message
from chat_pipeline.rules import CODE_BLOCK_RULE


class EchoBackend(ModelBackend):
    def __init__(self):
        self.requests: list[StreamRequest] = []

    def token_cost(self, message: Message) -> int:
        return 1

    def window_cost(self, messages: list[Message]) -> int:
        return sum(m.tokens.message for m in messages) + 3 * len(messages) + 3

    async def stream(self, request: StreamRequest):
        self.requests.append(request)
        yield TextChunk(text=f"echo: {request.messages[-1].as_text()}")


@pytest.mark.asyncio
async def test_clone_regenerates_every_identifier():
    agent = Agent(backend=EchoBackend()).rule(CODE_BLOCK_RULE).prompt("hello")
    await agent.execute()

    twin = agent.clone()

    assert twin.chat.id != agent.chat.id
    original_ids = {m.id for m in agent.messages}
    assert original_ids.isdisjoint(m.id for m in twin.messages)
    assert {s.id for s in agent.pipeline}.isdisjoint(s.id for s in twin.pipeline)
    assert [m.as_text() for m in twin.messages] == [m.as_text() for m in agent.messages]
    assert [m.type for m in twin.messages] == [m.type for m in agent.messages]
    assert twin.rules == [twin.messages[0].id]
    assert twin.messages[2].prompt == twin.messages[1].id


@pytest.mark.asyncio
async def test_clone_does_not_share_mutable_state():
    agent = Agent(backend=EchoBackend(), locals={"items": [1]}).prompt("hello")
    agent.tool("noop", lambda args, locals, chat: None)
    await agent.execute()
    agent.tools.record_call("noop")

    twin = agent.clone()
    twin.messages[0].content = "changed"
    twin.messages[1].window.append("extra")
    twin.locals["items"].append(2)

    assert agent.messages[0].content == "hello"
    assert "extra" not in agent.messages[1].window
    assert agent.locals["items"] == [1]
    assert twin.tools.has_tool("noop")
    assert twin.tools.calls("noop") == 0
    assert agent.tools.calls("noop") == 1


@pytest.mark.asyncio
async def test_clone_start_positions():
    agent = Agent(backend=EchoBackend()).append("a").append("b")
    await agent.execute()

    assert agent.clone().cursor == -1
    assert agent.clone(start_at="end").cursor == 1
    assert agent.clone(start_at=0).cursor == 0

    resumed = agent.clone(start_at=0)
    await resumed.execute()
    assert [m.as_text() for m in resumed.messages] == ["a", "b", "b"]


@pytest.mark.asyncio
async def test_cloned_pipeline_moves_to_original_stage_ids():
    agent = (
        Agent(backend=EchoBackend())
        .move_to("last")
        .append("skipped")
        .append("end", id="last")
    )

    twin = agent.clone()
    await twin.execute()

    assert [m.as_text() for m in twin.messages] == ["end"]
    assert all(s.id != "last" for s in twin.pipeline)


@pytest.mark.asyncio
async def test_sidebar_runs_isolated_child_conversation():
    backend = EchoBackend()
    child_chunks = []

    async def consult(locals, chat):
        child = chat.sidebar(rules=True, tools=True, locals=True).pipe(child_chunks.append)
        await child.prompt("side question").execute()
        locals["child"] = child

    agent = (
        Agent(backend=backend, locals={"mood": "calm"}, metadata={"topic": "demo"})
        .set_user("user-7")
        .rule(CODE_BLOCK_RULE)
        .tool("noop", lambda args, locals, chat: None)
        .pause(consult)
        .prompt("main question")
    )

    await agent.execute()

    child = agent.locals["child"]
    assert child.type == "sidebar"
    assert child.chat.metadata["$"]["parent"] == agent.chat.id
    assert child.chat.metadata["topic"] == "demo"
    assert agent.chat.sidebars == [child.chat.id]
    assert child.user == "user-7"
    assert child.locals["mood"] == "calm"
    assert child.tools.has_tool("noop")
    assert [m.type for m in child.messages] == ["rule", "prompt", "response"]
    assert child.messages[0].id not in [m.id for m in agent.messages]
    assert (child_chunks[0].type, child_chunks[0].state) == ("sidebar", "open")

    assert [m.type for m in agent.messages] == ["rule", "prompt", "response"]
    assert agent.messages[-1].text == "echo: main question"


def test_sidebar_copies_rule_stages_not_tools_named_rule():
    agent = (
        Agent(backend=EchoBackend())
        .tool("rule", lambda args, locals, chat: "applied")
        .call("rule")
        .rule(CODE_BLOCK_RULE)
    )

    child = agent.sidebar(rules=True)

    assert [(s.name, s.kind) for s in agent.pipeline] == [("rule", "call"), ("rule", "rule")]
    assert [s.kind for s in child.pipeline] == ["rule"]
