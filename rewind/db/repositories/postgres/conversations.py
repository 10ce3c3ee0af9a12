"""PostgreSQL implementation of ConversationRepository."""
from __future__ import annotations

import asyncpg

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
    f"VALUES ({', '.join(f'${i}' for i in range(1, len(MESSAGE_COLUMNS) + 1))})"
)
_BLOCK_INSERT = (
    f"INSERT INTO content_blocks ({', '.join(CONTENT_BLOCK_COLUMNS)}) "
    f"VALUES ({', '.join(f'${i}' for i in range(1, len(CONTENT_BLOCK_COLUMNS) + 1))})"
)


class PostgresConversationRepository:
    """PostgreSQL-backed conversation storage. Expects a connection inside a transaction."""

    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def upsert(self, summary: ConversationSummary, project_id: str) -> str:
        return await self.db.fetchval(
            """INSERT INTO conversations (
                id, project_id, conversation_id, session_id, title, model,
                total_tokens, input_tokens, output_tokens, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT(conversation_id) DO UPDATE SET
                session_id=EXCLUDED.session_id, title=EXCLUDED.title, model=EXCLUDED.model,
                total_tokens=EXCLUDED.total_tokens, input_tokens=EXCLUDED.input_tokens,
                output_tokens=EXCLUDED.output_tokens, updated_at=EXCLUDED.updated_at
            RETURNING id""",
            new_id(), project_id, summary.conversationId, summary.sessionId,
            summary.title, summary.model,
            summary.totalTokens, summary.inputTokens, summary.outputTokens,
            summary.createdAt, summary.updatedAt,
        )

    async def replace_messages(self, conversation_pk: str, messages: list[ConversationMessage]) -> int:
        await self.db.execute("DELETE FROM messages WHERE conversation_id = $1", conversation_pk)
        for msg in messages:
            row = build_message_row(msg, conversation_pk)
            await self.db.execute(_MESSAGE_INSERT, *(row[c] for c in MESSAGE_COLUMNS))

            blocks = structured_content(msg)
            if not blocks:
                continue
            block_rows = build_content_block_rows(blocks, row["id"])
            await self.db.executemany(
                _BLOCK_INSERT,
                [tuple(b[c] for c in CONTENT_BLOCK_COLUMNS) for b in block_rows],
            )
        return len(messages)

    async def get_by_conversation_id(self, conversation_id: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM conversations WHERE conversation_id = $1", conversation_id
        )
        return dict(row) if row else None

    async def list_messages(self, conversation_pk: str) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM messages WHERE conversation_id = $1 ORDER BY timestamp", conversation_pk
        )
        return [dict(r) for r in rows]

    async def list_content_blocks(self, message_pk: str) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM content_blocks WHERE message_id = $1 ORDER BY sequence", message_pk
        )
        return [dict(r) for r in rows]

    async def count(self, project_id: str | None = None) -> int:
        if project_id:
            return await self.db.fetchval(
                "SELECT COUNT(*) FROM conversations WHERE project_id = $1", project_id
            ) or 0
        return await self.db.fetchval("SELECT COUNT(*) FROM conversations") or 0

    async def count_messages(self) -> int:
        return await self.db.fetchval("SELECT COUNT(*) FROM messages") or 0

    async def count_content_blocks(self) -> int:
        return await self.db.fetchval("SELECT COUNT(*) FROM content_blocks") or 0
