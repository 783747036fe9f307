"""Message and key/value persistence (in-memory or SQLite)."""

import copy
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import aiosqlite

from parley.config import get_config
from parley.logging import get_logger
from parley.models import ChatMessage

log = get_logger(__name__)


class MessageStore(ABC):
    """Opaque record store the orchestrator hands finished messages to."""

    @abstractmethod
    async def save_message(self, message: ChatMessage) -> None:
        pass

    @abstractmethod
    async def load_messages(self, chat_id: str) -> list[ChatMessage]:
        pass

    @abstractmethod
    async def kv_get(self, key: str) -> Any | None:
        pass

    @abstractmethod
    async def kv_set(self, key: str, value: Any) -> None:
        pass

    async def close(self) -> None:
        return None


class InMemoryStore(MessageStore):
    """Process-local store, used by tests and the ``memory`` storage mode."""

    def __init__(self) -> None:
        self._messages: dict[str, dict[str, ChatMessage]] = {}
        self._kv: dict[str, Any] = {}

    async def save_message(self, message: ChatMessage) -> None:
        self._messages.setdefault(message.chat_id, {})[message.id] = copy.deepcopy(message)

    async def load_messages(self, chat_id: str) -> list[ChatMessage]:
        return [copy.deepcopy(m) for m in self._messages.get(chat_id, {}).values()]

    async def kv_get(self, key: str) -> Any | None:
        return copy.deepcopy(self._kv.get(key))

    async def kv_set(self, key: str, value: Any) -> None:
        self._kv[key] = copy.deepcopy(value)


class SQLiteStore(MessageStore):
    """Messages and KV records in one SQLite file via aiosqlite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = Path(get_config().session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_chat_created ON messages(chat_id, created_at)"
            )
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            await self._db.commit()
        return self._db

    async def save_message(self, message: ChatMessage) -> None:
        db = await self._ensure_db()
        await db.execute(
            """
            INSERT INTO messages (id, chat_id, created_at, payload) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET payload = excluded.payload
            """,
            (message.id, message.chat_id, message.created_at, json.dumps(message.to_dict())),
        )
        await db.commit()
        log.debug("Saved message", chat_id=message.chat_id, message_id=message.id)

    async def load_messages(self, chat_id: str) -> list[ChatMessage]:
        db = await self._ensure_db()
        async with db.execute(
            "SELECT payload FROM messages WHERE chat_id = ? ORDER BY created_at, rowid",
            (chat_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [ChatMessage.from_dict(json.loads(row[0])) for row in rows]

    async def kv_get(self, key: str) -> Any | None:
        db = await self._ensure_db()
        async with db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return json.loads(row[0])

    async def kv_set(self, key: str, value: Any) -> None:
        db = await self._ensure_db()
        await db.execute(
            "INSERT INTO kv (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, json.dumps(value)),
        )
        await db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None


def create_store() -> MessageStore:
    """Build the store selected by ``config.session.storage``."""
    cfg = get_config().session
    if cfg.storage == "memory":
        return InMemoryStore()
    return SQLiteStore(cfg.path)
