import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence, Tuple

import aiosqlite

from .errors import OwnershipViolation, StorageError
from .schemas import ChatMessage, Conversation, ConversationSummary, StoredMessage


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _parts_json(message: ChatMessage) -> str:
    return json.dumps([part.model_dump() for part in message.parts], ensure_ascii=True)


def _summary(row: aiosqlite.Row) -> ConversationSummary:
    return ConversationSummary(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS conversations(
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_conversations_user
                    ON conversations(user_id, updated_at);
                CREATE TABLE IF NOT EXISTS messages(
                    conversation_id TEXT NOT NULL REFERENCES conversations(id),
                    ordinal INTEGER NOT NULL,
                    id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    parts_json TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT,
                    PRIMARY KEY (conversation_id, ordinal)
                );
                """
            )
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)

    async def upsert_conversation(
        self,
        user_id: str,
        conversation_id: str,
        title: str,
        messages: Sequence[ChatMessage],
    ) -> bool:
        """Replace the conversation's whole history in one transaction.

        Returns True when the conversation did not exist and was created for `user_id`.
        Raises OwnershipViolation (nothing written) when another user owns the id.
        """
        stamp = utc_now()
        try:
            async with aiosqlite.connect(self.path, isolation_level=None) as db:
                db.row_factory = aiosqlite.Row
                # Take the write lock up front so concurrent writers serialize on the whole upsert.
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(
                        "SELECT user_id FROM conversations WHERE id=?",
                        (conversation_id,),
                    )
                    existing = await cursor.fetchone()
                    await cursor.close()
                    created = existing is None
                    if existing is not None:
                        if existing["user_id"] != user_id:
                            raise OwnershipViolation(conversation_id)
                        await db.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
                    else:
                        await db.execute(
                            "INSERT INTO conversations(id, user_id, title, created_at, updated_at) VALUES (?,?,?,?,?)",
                            (conversation_id, user_id, title, stamp, stamp),
                        )
                    await self._insert_messages(db, conversation_id, messages, stamp)
                    await db.execute(
                        "UPDATE conversations SET title=?, updated_at=? WHERE id=?",
                        (title, stamp, conversation_id),
                    )
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to save conversation {conversation_id}: {exc}") from exc
        return created

    async def _insert_messages(
        self,
        db: aiosqlite.Connection,
        conversation_id: str,
        messages: Sequence[ChatMessage],
        stamp: str,
    ) -> None:
        if not messages:
            return
        await db.executemany(
            "INSERT INTO messages(conversation_id, ordinal, id, role, content, parts_json, created_at) "
            "VALUES (?,?,?,?,?,?,?)",
            [
                (conversation_id, index, message.id, message.role, message.content, _parts_json(message), stamp)
                for index, message in enumerate(messages)
            ],
        )

    async def get_conversation(self, user_id: str, conversation_id: str) -> Optional[Conversation]:
        try:
            async with aiosqlite.connect(self.path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT id, user_id, title, created_at, updated_at FROM conversations WHERE id=? AND user_id=?",
                    (conversation_id, user_id),
                )
                row = await cursor.fetchone()
                await cursor.close()
                if not row:
                    return None
                cursor = await db.execute(
                    "SELECT id, ordinal, role, content, parts_json, created_at FROM messages "
                    "WHERE conversation_id=? ORDER BY ordinal ASC",
                    (conversation_id,),
                )
                message_rows = await cursor.fetchall()
                await cursor.close()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to load conversation {conversation_id}: {exc}") from exc
        messages = [
            StoredMessage(
                id=r["id"],
                ordinal=r["ordinal"],
                role=r["role"],
                content=r["content"] or "",
                parts=json.loads(r["parts_json"] or "[]"),
                created_at=r["created_at"],
            )
            for r in message_rows
        ]
        summary = _summary(row)
        return Conversation(**summary.model_dump(), messages=messages)

    async def list_conversations(self, user_id: str, limit: int = 200) -> List[ConversationSummary]:
        try:
            rows = await self.fetchall(
                "SELECT id, user_id, title, created_at, updated_at FROM conversations "
                "WHERE user_id=? ORDER BY updated_at DESC, created_at DESC LIMIT ?",
                (user_id, limit),
            )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to list conversations: {exc}") from exc
        return [_summary(r) for r in rows]

    async def delete_conversation(self, user_id: str, conversation_id: str) -> bool:
        try:
            async with aiosqlite.connect(self.path, isolation_level=None) as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(
                        "SELECT 1 FROM conversations WHERE id=? AND user_id=?",
                        (conversation_id, user_id),
                    )
                    row = await cursor.fetchone()
                    await cursor.close()
                    if not row:
                        await db.rollback()
                        return False
                    await db.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
                    await db.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to delete conversation {conversation_id}: {exc}") from exc
        return True
