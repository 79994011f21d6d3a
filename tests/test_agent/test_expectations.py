from typing import Any

import pytest

from chat_pipeline.agent import Agent
from chat_pipeline.exceptions import ExpectationExhaustedError
from chat_pipeline.expect import json_blocks, reject
from chat_pipeline.llm import ModelBackend, StreamRequest, TextChunk
from chat_pipeline.messages import Message


class ScriptedBackend(ModelBackend):
    def __init__(self, replies: list[str] | None = None, default: str = "nope"):
        self.replies = list(replies or [])
        self.default = default
        self.requests: list[StreamRequest] = []

    def token_cost(self, message: Message) -> int:
        return 1

    def window_cost(self, messages: list[Message]) -> int:
        return sum(m.tokens.message for m in messages) + 3 * len(messages) + 3

    async def stream(self, request: StreamRequest):
        self.requests.append(request)
        yield TextChunk(text=self.replies.pop(0) if self.replies else self.default)


@pytest.mark.asyncio
async def test_always_rejecting_expectation_exhausts_after_max_call_stack():
    backend = ScriptedBackend()
    agent = (
        Agent(backend=backend, settings={"max_call_stack": 3})
        .prompt("give me json")
        .expect(lambda response, locals, chat: reject("try again"))
    )

    with pytest.raises(ExpectationExhaustedError, match="Maximum call stack exceeded") as exc_info:
        await agent.execute()

    corrections = [m for m in agent.messages if m.type == "error" and m.error == "try again"]
    assert len(corrections) == 3
    assert exc_info.value.attempts == 3
    # the original prompt plus one resend per correction
    assert len(backend.requests) == 4
    assert agent.messages[-1].error.startswith("Maximum call stack exceeded")


@pytest.mark.asyncio
async def test_rejection_is_sent_back_and_corrected_response_accepted():
    backend = ScriptedBackend(["no blocks here", 'sure:\n```json\n{"a": 1}\n```'])
    agent = Agent(backend=backend).prompt("give me json").expect(json_blocks())

    await agent.execute()

    assert agent.locals["$blocks"] == {"a": 1}
    errors = [m for m in agent.messages if m.type == "error"]
    assert len(errors) == 1
    assert errors[0].error.startswith("1 or more json code blocks were expected")
    assert errors[0].id in [m.id for m in backend.requests[1].messages]
    assert agent.messages[-1].code_blocks == [{"lang": "json", "code": '{"a": 1}'}]


@pytest.mark.asyncio
async def test_partial_results_thread_through_validators():
    seen: dict[str, Any] = {}

    def first(response, locals, chat):
        return {"length": len(response.text)}

    async def second(response, locals, chat, length):
        seen["length"] = length

    agent = Agent(backend=ScriptedBackend(["four"])).prompt("hi").expect(first, second)

    await agent.execute()

    assert seen == {"length": 4}


@pytest.mark.asyncio
async def test_dict_shaped_rejection_is_honored():
    backend = ScriptedBackend(["bad", "good"])

    def validate(response, locals, chat):
        if response.text != "good":
            return {"type": "error", "error": "say good"}

    agent = Agent(backend=backend).prompt("hi").expect(validate)

    await agent.execute()

    assert [m.as_text() for m in agent.messages] == ["hi", "bad", "say good", "good"]


@pytest.mark.asyncio
async def test_expect_without_response_is_skipped():
    backend = ScriptedBackend()
    agent = Agent(backend=backend).append("context only").expect(lambda response, locals, chat: reject("x"))

    await agent.execute()

    assert [m.type for m in agent.messages] == ["context"]
    assert backend.requests == []
