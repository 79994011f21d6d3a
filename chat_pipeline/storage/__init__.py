"""Chat persistence backends."""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable

import aiosqlite

from chat_pipeline.chat import Chat, _utcnow_iso
from chat_pipeline.config import get_config
from chat_pipeline.exceptions import ChatNotFoundError, StorageError
from chat_pipeline.logging import get_logger

log = get_logger(__name__)


def default_id() -> str:
    """Generate a new unique identifier."""
    return str(uuid.uuid4())


class ChatStorage(ABC):
    """Identifier source and persistence for chats."""

    def new_id(self) -> str:
        return default_id()

    @abstractmethod
    def get_by_id(self, chat_id: str) -> Chat | Awaitable[Chat]:
        pass

    @abstractmethod
    async def save(self, chat: Chat) -> None:
        pass


class NoStorage(ChatStorage):
    """Storage that keeps nothing: reads fail, writes are discarded."""

    def get_by_id(self, chat_id: str) -> Chat:
        raise StorageError("Not Implemented - Choose an alternative storage engine")

    async def save(self, chat: Chat) -> None:
        return None


class LocalStorage(ChatStorage):
    """One JSON document per chat inside a directory."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory).expanduser()

    def _path(self, chat_id: str) -> Path:
        return self.directory / f"{chat_id}.json"

    def _read(self, path: Path) -> str:
        return path.read_text(encoding="utf-8")

    def _write(self, path: Path, text: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    async def get_by_id(self, chat_id: str) -> Chat:
        path = self._path(chat_id)
        if not path.exists():
            raise ChatNotFoundError(chat_id)
        text = await asyncio.to_thread(self._read, path)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise StorageError(f"Chat file is not valid JSON: {path}: {e}")
        return Chat.from_dict(data)

    async def save(self, chat: Chat) -> None:
        chat.updated_at = _utcnow_iso()
        path = self._path(chat.id)
        text = json.dumps(chat.to_dict(), indent=2, default=str)
        await asyncio.to_thread(self._write, path, text)
        log.debug("Saved chat", chat_id=chat.id, path=str(path))


class SqliteStorage(ChatStorage):
    """Chats stored as JSON rows in SQLite."""

    def __init__(self, db_path: Path | str):
        """Initialize SQLite storage.

        Args:
            db_path: Database file path
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS chats (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_chats_updated_at ON chats(updated_at)"
            )
            await self._db.commit()

    async def get_by_id(self, chat_id: str) -> Chat:
        """Load a chat by ID.

        Raises:
            ChatNotFoundError if no row matches
        """
        await self._ensure_db()

        async with self._db.execute(
            "SELECT data FROM chats WHERE id = ?",
            (chat_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            raise ChatNotFoundError(chat_id)
        return Chat.from_dict(json.loads(row[0]))

    async def save(self, chat: Chat) -> None:
        """Insert or replace a chat."""
        await self._ensure_db()

        chat.updated_at = _utcnow_iso()

        await self._db.execute("""
            INSERT OR REPLACE INTO chats (id, data, created_at, updated_at)
            VALUES (?, ?, ?, ?)
        """, (
            chat.id,
            json.dumps(chat.to_dict(), default=str),
            chat.created_at,
            chat.updated_at,
        ))
        await self._db.commit()

    async def list_chats(self, limit: int = 10) -> list[dict[str, Any]]:
        """List recent chats as ``{id, created_at, updated_at}`` rows."""
        await self._ensure_db()

        async with self._db.execute("""
            SELECT id, created_at, updated_at
            FROM chats
            ORDER BY updated_at DESC
            LIMIT ?
        """, (limit,)) as cursor:
            rows = await cursor.fetchall()

        return [
            {"id": row[0], "created_at": row[1], "updated_at": row[2]}
            for row in rows
        ]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


def create_storage() -> ChatStorage:
    """Create the storage backend described by the global configuration."""
    cfg = get_config().storage
    if cfg.backend == "file":
        return LocalStorage(cfg.path)
    if cfg.backend == "sqlite":
        return SqliteStorage(cfg.path)
    return NoStorage()
