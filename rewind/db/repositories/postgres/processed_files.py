"""PostgreSQL implementation of the processed-file ledger."""
from __future__ import annotations

import asyncpg

from rewind.models import utc_now_iso


class PostgresProcessedFileRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get(self, file_path: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM processed_files WHERE file_path = $1", file_path)
        return dict(row) if row else None

    async def upsert(self, file_path: str, last_modified: float, line_count: int) -> None:
        await self.db.execute(
            """INSERT INTO processed_files (file_path, last_modified, line_count, processed_at)
               VALUES ($1, $2, $3, $4)
               ON CONFLICT(file_path) DO UPDATE SET
                 last_modified=EXCLUDED.last_modified, line_count=EXCLUDED.line_count,
                 processed_at=EXCLUDED.processed_at""",
            file_path, last_modified, line_count, utc_now_iso(),
        )

    async def delete(self, file_path: str) -> None:
        await self.db.execute("DELETE FROM processed_files WHERE file_path = $1", file_path)

    async def list_all(self) -> list[dict]:
        rows = await self.db.fetch("SELECT * FROM processed_files ORDER BY file_path")
        return [dict(r) for r in rows]

    async def count(self) -> int:
        return await self.db.fetchval("SELECT COUNT(*) FROM processed_files") or 0
