"""PostgreSQL implementation of ProjectRepository."""
from __future__ import annotations

import asyncpg

from rewind.db.repositories.rows import new_id
from rewind.models import utc_now_iso


class PostgresProjectRepository:
    """PostgreSQL-backed project storage."""

    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def upsert(self, name: str, path: str) -> str:
        now = utc_now_iso()
        return await self.db.fetchval(
            """INSERT INTO projects (id, name, path, created_at, updated_at, last_scanned_at)
               VALUES ($1, $2, $3, $4, $5, $6)
               ON CONFLICT(path) DO UPDATE SET
                 name=EXCLUDED.name, updated_at=EXCLUDED.updated_at,
                 last_scanned_at=EXCLUDED.last_scanned_at
               RETURNING id""",
            new_id(), name, path, now, now, now,
        )

    async def get_by_path(self, path: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM projects WHERE path = $1", path)
        return dict(row) if row else None

    async def list_all(self) -> list[dict]:
        rows = await self.db.fetch("SELECT * FROM projects ORDER BY name")
        return [dict(r) for r in rows]

    async def count(self) -> int:
        return await self.db.fetchval("SELECT COUNT(*) FROM projects") or 0
