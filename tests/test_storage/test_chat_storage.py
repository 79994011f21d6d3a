import json
import threading

import pytest

from chat_pipeline.chat import Chat
from chat_pipeline.config import Config, StorageConfig, set_config
from chat_pipeline.exceptions import ChatNotFoundError, StorageError
from chat_pipeline.messages import PromptMessage, ResponseMessage, RuleMessage, TokenUsage, Visibility
from chat_pipeline.storage import LocalStorage, NoStorage, SqliteStorage, create_storage


def sample_chat(chat_id: str = "chat-1") -> Chat:
    return Chat(
        id=chat_id,
        messages=[
            RuleMessage(id="r1", key="tone", name="tone", rule="be polite"),
            PromptMessage(id="p1", content="hello", options={"temperature": 0}),
            ResponseMessage(
                id="a1",
                text="```json\n{}\n```",
                code_blocks=[{"lang": "json", "code": "{}"}],
                tokens=TokenUsage(message=4, input=12),
                prompt="p1",
                window=["r1", "p1"],
            ),
        ],
        metadata={"$": {"version": "0.1.0"}},
        user="user-1",
        input_tokens=13,
        output_tokens=4,
    )


def test_no_storage_hands_out_unique_ids_and_refuses_reads():
    storage = NoStorage()

    assert storage.new_id() != storage.new_id()
    with pytest.raises(StorageError, match="Not Implemented"):
        storage.get_by_id("anything")


@pytest.mark.asyncio
async def test_local_storage_persists_one_json_file_per_chat(tmp_path):
    storage = LocalStorage(tmp_path / "chats")

    await storage.save(sample_chat())
    loaded = await storage.get_by_id("chat-1")

    assert json.loads((tmp_path / "chats" / "chat-1.json").read_text(encoding="utf-8"))["id"] == "chat-1"
    assert [m.type for m in loaded.messages] == ["rule", "prompt", "response"]
    assert loaded.messages[0].visibility == Visibility.REQUIRED
    assert loaded.messages[2].tokens == TokenUsage(message=4, input=12)
    assert loaded.messages[2].code_blocks == [{"lang": "json", "code": "{}"}]
    assert loaded.user == "user-1"
    assert loaded.input_tokens == 13


@pytest.mark.asyncio
async def test_local_storage_missing_chat(tmp_path):
    with pytest.raises(ChatNotFoundError):
        await LocalStorage(tmp_path).get_by_id("missing")


@pytest.mark.asyncio
async def test_sqlite_storage_save_load_and_list(tmp_path):
    storage = SqliteStorage(db_path=tmp_path / "chats.db")
    try:
        await storage.save(sample_chat("chat-1"))
        await storage.save(sample_chat("chat-2"))
        chat = sample_chat("chat-1")
        chat.messages = chat.messages[:1]
        await storage.save(chat)

        loaded = await storage.get_by_id("chat-1")
        listed = await storage.list_chats()

        assert [m.id for m in loaded.messages] == ["r1"]
        assert {row["id"] for row in listed} == {"chat-1", "chat-2"}
        with pytest.raises(ChatNotFoundError):
            await storage.get_by_id("missing")
    finally:
        await storage.close()


def test_create_storage_follows_config(tmp_path):
    try:
        set_config(Config(storage=StorageConfig(backend="file", path=str(tmp_path))))
        assert isinstance(create_storage(), LocalStorage)

        set_config(Config(storage=StorageConfig(backend="sqlite", path=str(tmp_path / "chats.db"))))
        assert isinstance(create_storage(), SqliteStorage)

        set_config(Config())
        assert isinstance(create_storage(), NoStorage)
    finally:
        set_config(None)


@pytest.mark.asyncio
async def test_local_storage_file_io_runs_off_the_event_loop(tmp_path):
    threads = []

    class TracingStorage(LocalStorage):
        def _read(self, path):
            threads.append(threading.get_ident())
            return super()._read(path)

        def _write(self, path, text):
            threads.append(threading.get_ident())
            super()._write(path, text)

    storage = TracingStorage(tmp_path)
    chat = Chat(id="chat-1", messages=[PromptMessage(id="p1", content="hi")])

    await storage.save(chat)
    loaded = await storage.get_by_id("chat-1")

    assert loaded.messages[0].content == "hi"
    assert len(threads) == 2
    assert threading.get_ident() not in threads
