"""Parse JSONL transcript files into ConversationMessage records."""
from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from pydantic import ValidationError

from rewind.models import AssistantMessage, ConversationMessage, ConversationSummary

logger = logging.getLogger("rewind.parser")

TITLE_MAX_CHARS = 200
EMPTY_TITLE = "Empty Conversation"
DEFAULT_TITLE = "Conversation"
_TEXT_BLOCK_FIELDS = {"text": "text", "thinking": "thinking"}


def parse_transcript(text: str, source: str = "") -> list[ConversationMessage]:
    """Decode every non-blank line independently.

    Undecodable or invalid lines are logged and dropped. Records without a
    ``uuid`` are control records and are dropped silently.
    """
    messages: list[ConversationMessage] = []
    # Only "\n" ends a record; raw U+2028, U+0085 etc. are legal inside JSON strings.
    for line_no, raw_line in enumerate(text.split("\n"), start=1):
        line = raw_line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse line %d in %s: %s", line_no, source or "<transcript>", e)
            continue

        if not isinstance(entry, dict) or not entry.get("uuid"):
            continue

        try:
            messages.append(ConversationMessage.model_validate(entry))
        except ValidationError as e:
            logger.warning(
                "Skipping invalid record on line %d in %s: %d validation error(s)",
                line_no, source or "<transcript>", e.error_count(),
            )
    return messages


def count_lines(text: str) -> int:
    return sum(1 for line in text.split("\n") if line.strip())


def extract_text(content: str | list[dict[str, Any]] | None) -> str:
    """Flatten content to plain text: text and thinking blocks, space-joined."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content

    parts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        field = _TEXT_BLOCK_FIELDS.get(str(block.get("type") or ""))
        if not field:
            continue
        value = block.get(field)
        if isinstance(value, str) and value:
            parts.append(value)
    return " ".join(parts)


def generate_title(messages: list[ConversationMessage]) -> str:
    if not messages:
        return EMPTY_TITLE

    first_user = next((m for m in messages if m.type == "user"), None)
    if first_user is None:
        return DEFAULT_TITLE

    content = extract_text(first_user.message.content)
    title = content[:TITLE_MAX_CHARS]
    return f"{title}..." if len(title) < len(content) else title


def _assistant_messages(messages: Iterable[ConversationMessage]) -> Iterable[AssistantMessage]:
    for msg in messages:
        if isinstance(msg.message, AssistantMessage):
            yield msg.message


def summarize_conversation(messages: list[ConversationMessage]) -> ConversationSummary:
    """Recompute conversation-level fields from the whole file."""
    if not messages:
        raise ValueError("Cannot summarize a transcript with no messages")

    first, last = messages[0], messages[-1]
    input_tokens = 0
    output_tokens = 0
    model: str | None = None
    for assistant in _assistant_messages(messages):
        input_tokens += assistant.usage.input_tokens or 0
        output_tokens += assistant.usage.output_tokens or 0
        model = assistant.model

    return ConversationSummary(
        conversationId=first.uuid,
        sessionId=first.sessionId,
        title=generate_title(messages),
        model=model,
        inputTokens=input_tokens,
        outputTokens=output_tokens,
        totalTokens=input_tokens + output_tokens,
        createdAt=first.timestamp,
        updatedAt=last.timestamp,
        messageCount=len(messages),
    )
