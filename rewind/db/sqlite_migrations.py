"""SQLite schema creation and versioning.

Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("rewind.db")

SCHEMA_VERSION = 1

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Projects (one per data-root subdirectory) ──────────────────
CREATE TABLE IF NOT EXISTS projects (
    id               TEXT PRIMARY KEY,
    name             TEXT NOT NULL,
    path             TEXT NOT NULL UNIQUE,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    last_scanned_at  TEXT
);

-- ── 2. Conversations (one per transcript file) ────────────────────
CREATE TABLE IF NOT EXISTS conversations (
    id               TEXT PRIMARY KEY,
    project_id       TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    conversation_id  TEXT NOT NULL UNIQUE,
    session_id       TEXT,
    title            TEXT,
    model            TEXT,
    total_tokens     INTEGER DEFAULT 0,
    input_tokens     INTEGER DEFAULT 0,
    output_tokens    INTEGER DEFAULT 0,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversations_project ON conversations(project_id);

-- ── 3. Messages ───────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS messages (
    id                     TEXT PRIMARY KEY,
    conversation_id        TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    message_uuid           TEXT NOT NULL,
    parent_uuid            TEXT,
    request_id             TEXT,
    role                   TEXT NOT NULL,
    type                   TEXT NOT NULL,
    content                TEXT NOT NULL,
    raw_content_json       TEXT,
    model                  TEXT,
    input_tokens           INTEGER,
    output_tokens          INTEGER,
    cache_creation_tokens  INTEGER,
    cache_read_tokens      INTEGER,
    stop_reason            TEXT,
    cwd                    TEXT,
    session_id             TEXT,
    version                TEXT,
    git_branch             TEXT,
    agent_id               TEXT,
    user_type              TEXT,
    is_sidechain           INTEGER DEFAULT 0,
    timestamp              TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);

-- ── 4. Content blocks ─────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS content_blocks (
    id               TEXT PRIMARY KEY,
    message_id       TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    type             TEXT NOT NULL,
    sequence         INTEGER NOT NULL,
    text             TEXT,
    thinking         TEXT,
    tool_use_id      TEXT,
    tool_name        TEXT,
    tool_input_json  TEXT,
    tool_result_id   TEXT,
    tool_content     TEXT,
    is_error         INTEGER
);

CREATE INDEX IF NOT EXISTS idx_content_blocks_message ON content_blocks(message_id);

-- ── 5. Processed-file ledger (incremental change detection) ──────
CREATE TABLE IF NOT EXISTS processed_files (
    file_path      TEXT PRIMARY KEY,
    last_modified  REAL NOT NULL,
    line_count     INTEGER,
    processed_at   TEXT NOT NULL
);
"""


async def _get_version(db: aiosqlite.Connection) -> int:
    async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
        row = await cur.fetchone()
    return int(row[0]) if row and row[0] is not None else 0


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create tables and record the schema version."""
    await db.executescript(_TABLES)
    current = await _get_version(db)
    if current < SCHEMA_VERSION:
        await db.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.info("SQLite schema migrated %d -> %d", current, SCHEMA_VERSION)
    await db.commit()
