"""Repository factory to abstract DB backend (SQLite vs Postgres).

``db`` may be the long-lived connection/pool or a transaction handle
yielded by ``connection.transaction``.
"""
from __future__ import annotations

from typing import Any

import aiosqlite

from rewind.db.repositories import (
    SqliteConversationRepository,
    SqliteProcessedFileRepository,
    SqliteProjectRepository,
)


def get_project_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteProjectRepository(db)
    from rewind.db.repositories.postgres.projects import PostgresProjectRepository
    return PostgresProjectRepository(db)


def get_conversation_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteConversationRepository(db)
    from rewind.db.repositories.postgres.conversations import PostgresConversationRepository
    return PostgresConversationRepository(db)


def get_processed_file_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteProcessedFileRepository(db)
    from rewind.db.repositories.postgres.processed_files import PostgresProcessedFileRepository
    return PostgresProcessedFileRepository(db)
