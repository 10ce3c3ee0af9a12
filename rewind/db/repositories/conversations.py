"""SQLite implementation of ConversationRepository.

Callers own the transaction: nothing here commits, so a conversation's
summary, messages and content blocks can be replaced as one unit.
"""
from __future__ import annotations

import aiosqlite

from rewind.db.repositories.rows import (
    CONTENT_BLOCK_COLUMNS,
    MESSAGE_COLUMNS,
    build_content_block_rows,
    build_message_row,
    new_id,
    structured_content,
)
from rewind.models import ConversationMessage, ConversationSummary

_MESSAGE_INSERT = (
    f"INSERT INTO messages ({', '.join(MESSAGE_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in MESSAGE_COLUMNS)})"
)
_BLOCK_INSERT = (
    f"INSERT INTO content_blocks ({', '.join(CONTENT_BLOCK_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in CONTENT_BLOCK_COLUMNS)})"
)


def _sqlite_value(value):
    return int(value) if isinstance(value, bool) else value


class SqliteConversationRepository:
    """Conversation rows with normalized message and content-block tables."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, summary: ConversationSummary, project_id: str) -> str:
        """Upsert on the transcript's conversation id and return the row id."""
        await self.db.execute(
            """INSERT INTO conversations (
                id, project_id, conversation_id, session_id, title, model,
                total_tokens, input_tokens, output_tokens, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(conversation_id) DO UPDATE SET
                session_id=excluded.session_id, title=excluded.title, model=excluded.model,
                total_tokens=excluded.total_tokens, input_tokens=excluded.input_tokens,
                output_tokens=excluded.output_tokens, updated_at=excluded.updated_at
            """,
            (
                new_id(), project_id, summary.conversationId, summary.sessionId,
                summary.title, summary.model,
                summary.totalTokens, summary.inputTokens, summary.outputTokens,
                summary.createdAt, summary.updatedAt,
            ),
        )
        async with self.db.execute(
            "SELECT id FROM conversations WHERE conversation_id = ?", (summary.conversationId,)
        ) as cur:
            row = await cur.fetchone()
        return row[0]

    async def replace_messages(self, conversation_pk: str, messages: list[ConversationMessage]) -> int:
        """Delete every message of the conversation, then insert ``messages``."""
        await self.db.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_pk,))
        for msg in messages:
            row = build_message_row(msg, conversation_pk)
            await self.db.execute(_MESSAGE_INSERT, tuple(_sqlite_value(row[c]) for c in MESSAGE_COLUMNS))

            blocks = structured_content(msg)
            if not blocks:
                continue
            block_rows = build_content_block_rows(blocks, row["id"])
            await self.db.executemany(
                _BLOCK_INSERT,
                [tuple(_sqlite_value(b[c]) for c in CONTENT_BLOCK_COLUMNS) for b in block_rows],
            )
        return len(messages)

    async def get_by_conversation_id(self, conversation_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM conversations WHERE conversation_id = ?", (conversation_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_messages(self, conversation_pk: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY timestamp, rowid",
            (conversation_pk,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def list_content_blocks(self, message_pk: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM content_blocks WHERE message_id = ? ORDER BY sequence",
            (message_pk,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def count(self, project_id: str | None = None) -> int:
        if project_id:
            async with self.db.execute(
                "SELECT COUNT(*) FROM conversations WHERE project_id = ?", (project_id,)
            ) as cur:
                row = await cur.fetchone()
        else:
            async with self.db.execute("SELECT COUNT(*) FROM conversations") as cur:
                row = await cur.fetchone()
        return row[0] if row else 0

    async def count_messages(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM messages") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def count_content_blocks(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM content_blocks") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0
