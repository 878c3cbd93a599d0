import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


logger = logging.getLogger("uvicorn.error")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Database:
    """Conversation store: users, their conversations and messages, plus the business tables tools read."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS users(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    platform TEXT,
                    platform_user_id TEXT,
                    username TEXT,
                    metadata_json TEXT,
                    created_at TEXT,
                    UNIQUE(platform, platform_user_id)
                );
                CREATE TABLE IF NOT EXISTS conversations(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER,
                    platform TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id INTEGER,
                    role TEXT,
                    content TEXT,
                    metadata_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS orders(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER,
                    item TEXT,
                    amount REAL,
                    status TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS documents(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    filename TEXT,
                    chunk_count INTEGER,
                    namespace TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.lastrowid

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def get_or_create_user(
        self,
        platform: str,
        platform_user_id: str,
        username: Optional[str] = None,
    ) -> int:
        row = await self.fetchone(
            "SELECT id FROM users WHERE platform=? AND platform_user_id=?",
            (platform, platform_user_id),
        )
        if row:
            return int(row["id"])
        return await self.execute(
            "INSERT INTO users(platform, platform_user_id, username, metadata_json, created_at) VALUES (?,?,?,?,?)",
            (platform, platform_user_id, username or "", "{}", utc_now()),
        )

    async def get_or_create_conversation(
        self,
        platform: str,
        platform_user_id: str,
        username: Optional[str] = None,
    ) -> int:
        user_id = await self.get_or_create_user(platform, platform_user_id, username)
        row = await self.fetchone(
            "SELECT id FROM conversations WHERE user_id=? AND platform=? ORDER BY updated_at DESC LIMIT 1",
            (user_id, platform),
        )
        if row:
            return int(row["id"])
        created_at = utc_now()
        return await self.execute(
            "INSERT INTO conversations(user_id, platform, created_at, updated_at) VALUES (?,?,?,?)",
            (user_id, platform, created_at, created_at),
        )

    async def save_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> dict:
        created_at = utc_now()
        message_id = await self.execute(
            "INSERT INTO messages(conversation_id, role, content, metadata_json, created_at) VALUES (?,?,?,?,?)",
            (conversation_id, role, content, json.dumps(metadata or {}, ensure_ascii=True), created_at),
        )
        await self.execute("UPDATE conversations SET updated_at=? WHERE id=?", (created_at, conversation_id))
        return {"id": message_id, "created_at": created_at}

    async def get_recent_messages(self, conversation_id: int, limit: int = 5) -> List[dict]:
        rows = await self.fetchall(
            "SELECT role, content FROM messages WHERE conversation_id=? ORDER BY created_at DESC, id DESC LIMIT ?",
            (conversation_id, limit),
        )
        return [dict(r) for r in reversed(rows)]

    async def get_history(self, requester_id: str, limit: int = 5) -> List[dict]:
        """Most recent turns for a requester across all conversations, oldest first."""
        try:
            rows = await self.fetchall(
                "SELECT m.role, m.content FROM messages m "
                "JOIN conversations c ON m.conversation_id = c.id "
                "JOIN users u ON c.user_id = u.id "
                "WHERE u.platform_user_id=? ORDER BY m.created_at DESC, m.id DESC LIMIT ?",
                (requester_id, limit),
            )
        except aiosqlite.Error as exc:
            logger.warning("History lookup failed for %s: %s", requester_id, exc)
            return []
        return [dict(r) for r in reversed(rows)]

    async def get_user(self, platform_user_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, platform, platform_user_id, username, created_at, metadata_json "
            "FROM users WHERE platform_user_id=? LIMIT 1",
            (platform_user_id,),
        )
        return dict(row) if row else None

    async def add_order(self, platform_user_id: str, item: str, amount: float, status: str = "placed") -> int:
        user = await self.get_user(platform_user_id)
        if not user:
            raise ValueError(f"Unknown user {platform_user_id}")
        return await self.execute(
            "INSERT INTO orders(user_id, item, amount, status, created_at) VALUES (?,?,?,?,?)",
            (user["id"], item, amount, status, utc_now()),
        )

    async def get_user_orders(self, platform_user_id: str, limit: int = 5) -> List[dict]:
        rows = await self.fetchall(
            "SELECT o.id, o.item, o.amount, o.status, o.created_at, u.username, u.platform "
            "FROM orders o JOIN users u ON o.user_id = u.id "
            "WHERE u.platform_user_id=? ORDER BY o.created_at DESC, o.id DESC LIMIT ?",
            (platform_user_id, limit),
        )
        return [dict(r) for r in rows]

    async def search_messages(self, platform_user_id: str, keyword: str, limit: int = 10) -> List[dict]:
        rows = await self.fetchall(
            "SELECT m.id, m.role, m.content, m.created_at, c.id AS conv_id "
            "FROM messages m "
            "JOIN conversations c ON m.conversation_id = c.id "
            "JOIN users u ON c.user_id = u.id "
            "WHERE u.platform_user_id=? AND m.content LIKE ? "
            "ORDER BY m.created_at DESC LIMIT ?",
            (platform_user_id, f"%{keyword}%", limit),
        )
        return [dict(r) for r in rows]

    async def add_document(self, filename: str, chunk_count: int, namespace: str = "") -> int:
        return await self.execute(
            "INSERT INTO documents(filename, chunk_count, namespace, created_at) VALUES (?,?,?,?)",
            (filename, chunk_count, namespace, utc_now()),
        )

    async def list_documents(self, limit: int = 10) -> List[dict]:
        rows = await self.fetchall(
            "SELECT filename, chunk_count, namespace, created_at FROM documents ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
        return [dict(r) for r in rows]
