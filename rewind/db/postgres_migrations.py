"""PostgreSQL schema creation and versioning."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("rewind.db")

SCHEMA_VERSION = 1

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS projects (
    id               TEXT PRIMARY KEY,
    name             TEXT NOT NULL,
    path             TEXT NOT NULL UNIQUE,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    last_scanned_at  TEXT
);

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
    is_sidechain           BOOLEAN DEFAULT FALSE,
    timestamp              TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);

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
    is_error         BOOLEAN
);

CREATE INDEX IF NOT EXISTS idx_content_blocks_message ON content_blocks(message_id);

CREATE TABLE IF NOT EXISTS processed_files (
    file_path      TEXT PRIMARY KEY,
    last_modified  DOUBLE PRECISION NOT NULL,
    line_count     INTEGER,
    processed_at   TEXT NOT NULL
);
"""


async def run_migrations(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(_TABLES)
            current = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
            if current < SCHEMA_VERSION:
                await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
                logger.info("Postgres schema migrated %d -> %d", current, SCHEMA_VERSION)
