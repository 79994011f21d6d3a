import json

import pytest
import structlog

from chat_pipeline.agent import Agent
from chat_pipeline.config import Config, LoggingConfig, set_config
from chat_pipeline.llm import ModelBackend, StreamRequest
from chat_pipeline.logging import configure_logging, get_logger, set_log_sink
from chat_pipeline.messages import Message


class SilentBackend(ModelBackend):
    def token_cost(self, message: Message) -> int:
        return 1

    def window_cost(self, messages: list[Message]) -> int:
        return len(messages)

    async def stream(self, request: StreamRequest):
        return
        yield


def test_json_logs_reach_the_sink():
    lines: list[str] = []
    try:
        set_config(Config(logging=LoggingConfig(level="DEBUG", format="json")))
        set_log_sink(lines.append)
        configure_logging()

        get_logger("chat_pipeline.test").info("Running stage", stage="prompt")

        record = json.loads(lines[-1])
        assert record["event"] == "Running stage"
        assert record["stage"] == "prompt"
        assert record["level"] == "info"
    finally:
        set_log_sink(None)
        set_config(None)
        structlog.reset_defaults()


def test_level_filters_lower_records():
    lines: list[str] = []
    try:
        set_config(Config(logging=LoggingConfig(level="WARNING", format="json")))
        set_log_sink(lines.append)
        configure_logging()

        log = get_logger("chat_pipeline.test")
        log.debug("hidden")
        log.warning("shown")

        assert [json.loads(line)["event"] for line in lines] == ["shown"]
    finally:
        set_log_sink(None)
        set_config(None)
        structlog.reset_defaults()


@pytest.mark.asyncio
async def test_records_inside_a_stage_carry_chat_and_stage():
    lines: list[str] = []

    def note(locals, chat):
        get_logger("chat_pipeline.test").info("inside stage")

    try:
        set_log_sink(lines.append)
        configure_logging(LoggingConfig(level="INFO", format="json"))
        agent = Agent(backend=SilentBackend()).pause(note, id="stage-1")

        await agent.execute()
        get_logger("chat_pipeline.test").info("after run")

        records = {record["event"]: record for record in map(json.loads, lines)}
        inside = records["inside stage"]
        assert (inside["chat_id"], inside["chat_type"]) == (agent.chat.id, "chat")
        assert (inside["stage"], inside["stage_id"]) == ("pause", "stage-1")
        assert "chat_id" not in records["after run"]
    finally:
        set_log_sink(None)
        structlog.reset_defaults()
