"""Repository package for database access."""

from .projects import SqliteProjectRepository
from .conversations import SqliteConversationRepository
from .processed_files import SqliteProcessedFileRepository

__all__ = [
    "SqliteProjectRepository",
    "SqliteConversationRepository",
    "SqliteProcessedFileRepository",
]
