"""SQLite implementation of the processed-file ledger."""
from __future__ import annotations

import aiosqlite

from rewind.models import utc_now_iso


class SqliteProcessedFileRepository:
    """Track which transcript files were ingested, and at which mtime."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, file_path: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM processed_files WHERE file_path = ?", (file_path,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def upsert(self, file_path: str, last_modified: float, line_count: int) -> None:
        await self.db.execute(
            """INSERT INTO processed_files (file_path, last_modified, line_count, processed_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(file_path) DO UPDATE SET
                 last_modified=excluded.last_modified, line_count=excluded.line_count,
                 processed_at=excluded.processed_at""",
            (file_path, last_modified, line_count, utc_now_iso()),
        )

    async def delete(self, file_path: str) -> None:
        await self.db.execute("DELETE FROM processed_files WHERE file_path = ?", (file_path,))

    async def list_all(self) -> list[dict]:
        async with self.db.execute("SELECT * FROM processed_files ORDER BY file_path") as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM processed_files") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0
