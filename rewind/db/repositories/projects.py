"""SQLite implementation of ProjectRepository."""
from __future__ import annotations

import aiosqlite

from rewind.db.repositories.rows import new_id
from rewind.models import utc_now_iso


class SqliteProjectRepository:
    """Projects keyed by their directory path."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, name: str, path: str) -> str:
        """Insert or refresh a project and return its id."""
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO projects (id, name, path, created_at, updated_at, last_scanned_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(path) DO UPDATE SET
                 name=excluded.name, updated_at=excluded.updated_at,
                 last_scanned_at=excluded.last_scanned_at""",
            (new_id(), name, path, now, now, now),
        )
        async with self.db.execute("SELECT id FROM projects WHERE path = ?", (path,)) as cur:
            row = await cur.fetchone()
        return row[0]

    async def get_by_path(self, path: str) -> dict | None:
        async with self.db.execute("SELECT * FROM projects WHERE path = ?", (path,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_all(self) -> list[dict]:
        async with self.db.execute("SELECT * FROM projects ORDER BY name") as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM projects") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0
