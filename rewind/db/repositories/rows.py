"""Row builders shared by the SQLite and Postgres repositories."""
from __future__ import annotations

import json
import uuid
from typing import Any

from rewind.models import AssistantMessage, ConversationMessage
from rewind.parsers.transcripts import extract_text

MESSAGE_COLUMNS = (
    "id", "conversation_id", "message_uuid", "parent_uuid", "request_id",
    "role", "type", "content", "raw_content_json",
    "model", "input_tokens", "output_tokens", "cache_creation_tokens", "cache_read_tokens",
    "stop_reason", "cwd", "session_id", "version", "git_branch", "agent_id",
    "user_type", "is_sidechain", "timestamp",
)

CONTENT_BLOCK_COLUMNS = (
    "id", "message_id", "type", "sequence", "text", "thinking",
    "tool_use_id", "tool_name", "tool_input_json",
    "tool_result_id", "tool_content", "is_error",
)


def new_id() -> str:
    return str(uuid.uuid4())


def structured_content(msg: ConversationMessage) -> list[dict[str, Any]] | None:
    content = msg.message.content
    return content if isinstance(content, list) else None


def build_message_row(msg: ConversationMessage, conversation_pk: str) -> dict[str, Any]:
    """Flatten one record; token fields stay None when the record lacks them."""
    payload = msg.message
    blocks = structured_content(msg)
    row: dict[str, Any] = {
        "id": new_id(),
        "conversation_id": conversation_pk,
        "message_uuid": msg.uuid,
        "parent_uuid": msg.parentUuid,
        "request_id": msg.requestId,
        "role": payload.role or msg.type,
        "type": msg.type,
        "content": extract_text(payload.content),
        "raw_content_json": json.dumps(blocks) if blocks is not None else None,
        "model": None,
        "input_tokens": None,
        "output_tokens": None,
        "cache_creation_tokens": None,
        "cache_read_tokens": None,
        "stop_reason": None,
        "cwd": msg.cwd,
        "session_id": msg.sessionId,
        "version": msg.version,
        "git_branch": msg.gitBranch,
        "agent_id": msg.agentId,
        "user_type": msg.userType,
        "is_sidechain": bool(msg.isSidechain),
        "timestamp": msg.timestamp,
    }
    if isinstance(payload, AssistantMessage):
        usage = payload.usage
        row.update(
            model=payload.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_creation_tokens=usage.cache_creation_input_tokens,
            cache_read_tokens=usage.cache_read_input_tokens,
            stop_reason=payload.stop_reason,
        )
    return row


def _tool_content_text(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


def build_content_block_rows(blocks: list[dict[str, Any]], message_pk: str) -> list[dict[str, Any]]:
    """One row per block; ``sequence`` is the block's index in the list."""
    rows: list[dict[str, Any]] = []
    for idx, block in enumerate(blocks):
        if not isinstance(block, dict):
            block = {}
        block_type = str(block.get("type") or "unknown")
        row: dict[str, Any] = {col: None for col in CONTENT_BLOCK_COLUMNS}
        row.update(id=new_id(), message_id=message_pk, type=block_type, sequence=idx)

        if block_type == "text":
            row["text"] = block.get("text")
        elif block_type == "thinking":
            row["thinking"] = block.get("thinking")
        elif block_type == "tool_use":
            row["tool_use_id"] = block.get("id")
            row["tool_name"] = block.get("name")
            row["tool_input_json"] = json.dumps(block.get("input")) if "input" in block else None
        elif block_type == "tool_result":
            row["tool_result_id"] = block.get("tool_use_id")
            row["tool_content"] = _tool_content_text(block.get("content"))
            row["is_error"] = bool(block.get("is_error"))
        rows.append(row)
    return rows
