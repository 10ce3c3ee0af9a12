"""Pydantic models for transcript records and sync bookkeeping."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ── Transcript records ──────────────────────────────────────────────

CONTENT_BLOCK_TYPES = ("text", "tool_use", "tool_result", "thinking")


class Usage(BaseModel):
    model_config = ConfigDict(extra="allow")

    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None
    service_tier: Optional[str] = None


class UserMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str = "user"
    content: Union[str, list[dict[str, Any]]] = ""


class AssistantMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str
    usage: Usage
    id: Optional[str] = None
    role: str = "assistant"
    content: Union[str, list[dict[str, Any]]] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    stop_sequence: Optional[str] = None


class ConversationMessage(BaseModel):
    """One transcript line.

    ``message`` is resolved into the assistant shape when it carries both a
    model and a usage object, and into the user shape otherwise.
    """

    model_config = ConfigDict(extra="ignore")

    uuid: str
    parentUuid: Optional[str] = None
    sessionId: Optional[str] = None
    timestamp: str
    type: str
    message: Union[AssistantMessage, UserMessage]
    cwd: Optional[str] = None
    version: Optional[str] = None
    gitBranch: Optional[str] = None
    agentId: Optional[str] = None
    userType: Optional[str] = None
    isSidechain: Optional[bool] = None
    requestId: Optional[str] = None

    @field_validator("message", mode="before")
    @classmethod
    def _resolve_message_shape(cls, value: Any) -> Any:
        if isinstance(value, dict):
            if "model" in value and "usage" in value:
                return AssistantMessage.model_validate(value)
            return UserMessage.model_validate(value)
        return value

    @property
    def is_assistant(self) -> bool:
        return isinstance(self.message, AssistantMessage)


class ConversationSummary(BaseModel):
    conversationId: str
    sessionId: Optional[str] = None
    title: str
    model: Optional[str] = None
    inputTokens: int = 0
    outputTokens: int = 0
    totalTokens: int = 0
    createdAt: str
    updatedAt: str
    messageCount: int = 0


# ── Sync bookkeeping ────────────────────────────────────────────────

ProgressEventType = Literal["start", "project", "conversation", "complete", "error", "info"]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProgressEvent(BaseModel):
    type: ProgressEventType
    message: str
    data: Optional[dict[str, Any]] = None
    timestamp: str = Field(default_factory=utc_now_iso)


class IngestStats(BaseModel):
    projects: int = 0
    files_seen: int = 0
    files_processed: int = 0
    files_skipped: int = 0
    files_empty: int = 0
    files_failed: int = 0
    messages_written: int = 0
    duration_ms: int = 0


class LockInfo(BaseModel):
    pid: int
    timestamp: str
    source: str = "cli"
    token: str = ""


class SyncState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    WATCHING = "watching"
    POLLING = "polling"
    STOPPED = "stopped"


class SyncOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    LOCK_TIMEOUT = "lock_timeout"
    UNAVAILABLE = "unavailable"


class SyncStats(BaseModel):
    lastSyncTime: Optional[datetime] = None
    totalSyncs: int = 0
    failedSyncs: int = 0
    filesWatched: int = 0
    state: SyncState = SyncState.IDLE
    syncInFlight: bool = False
    lastOutcome: Optional[SyncOutcome] = None
    lastError: str = ""
