"""Parse single JSONL log lines into typed Entry models.

Producer schemas drift between agent versions, so every field is normalized
on its own: a mistyped field falls back to its default instead of rejecting
the whole line. Nothing in this module raises on bad input.
"""
from __future__ import annotations

import json
import logging
import math
from typing import Any, Callable

from agentaudit.models import (
    CompactionDetails,
    CompactionEntry,
    ContentBlock,
    CustomEntry,
    Entry,
    ImageBlock,
    MessageBody,
    MessageEntry,
    ModelChangeEntry,
    SessionEntry,
    TextBlock,
    ThinkingBlock,
    ThinkingLevelChangeEntry,
    ToolCallBlock,
    ToolResultDetails,
    UsageCost,
    UsageStats,
)
from agentaudit.observability import record_parser_failure

logger = logging.getLogger("agentaudit.parser")

_DIAGNOSTIC_PREVIEW_CHARS = 100
_ROLES = {"user", "assistant", "toolResult"}
_THINKING_LEVELS = {"off", "low", "medium", "high"}
_TOOL_STATUSES = {"completed", "error", "running"}


def _as_record(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _as_string(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _as_optional_string(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


def _as_number(value: Any) -> int | float:
    return value if _is_number(value) else 0


def _as_optional_number(value: Any) -> int | float | None:
    return value if _is_number(value) else None


def _as_choice(value: Any, choices: set[str], default: str) -> str:
    return value if isinstance(value, str) and value in choices else default


def _as_string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _normalize_base(raw: dict[str, Any]) -> dict[str, Any]:
    parent_id = raw.get("parentId")
    return {
        "id": _as_string(raw.get("id")),
        "parentId": parent_id if isinstance(parent_id, str) else None,
        "timestamp": _as_string(raw.get("timestamp")),
    }


# ── Content blocks ─────────────────────────────────────────────────

def parse_content_block(raw: Any) -> ContentBlock:
    """Normalize one content block; unknown shapes become an empty text block."""
    block = _as_record(raw)
    if block is None:
        return TextBlock()
    block_type = _as_string(block.get("type"))
    if block_type == "text":
        return TextBlock(text=_as_string(block.get("text")))
    if block_type == "thinking":
        return ThinkingBlock(text=_as_string(block.get("text")))
    if block_type == "toolCall":
        return ToolCallBlock(
            id=_as_string(block.get("id")),
            name=_as_string(block.get("name")),
            arguments=_as_record(block.get("arguments")) or {},
        )
    if block_type == "image":
        return ImageBlock(source=block.get("source"))
    return TextBlock()


def _parse_content(raw: Any) -> list[ContentBlock]:
    if isinstance(raw, str):
        return [TextBlock(text=raw)]
    if not isinstance(raw, list):
        return []
    return [parse_content_block(block) for block in raw]


# ── Message sub-objects ────────────────────────────────────────────

def parse_usage(raw: Any) -> UsageStats | None:
    usage = _as_record(raw)
    if usage is None:
        return None
    cost = _as_record(usage.get("cost"))
    return UsageStats(
        input=_as_number(usage.get("input")),
        output=_as_number(usage.get("output")),
        cacheRead=_as_number(usage.get("cacheRead")),
        cacheWrite=_as_number(usage.get("cacheWrite")),
        totalTokens=_as_number(usage.get("totalTokens")),
        cost=(
            UsageCost(
                input=_as_number(cost.get("input")),
                output=_as_number(cost.get("output")),
                cacheRead=_as_number(cost.get("cacheRead")),
                cacheWrite=_as_number(cost.get("cacheWrite")),
                total=_as_number(cost.get("total")),
            )
            if cost is not None
            else None
        ),
    )


def parse_tool_result_details(raw: Any) -> ToolResultDetails | None:
    details = _as_record(raw)
    if details is None:
        return None
    status = details.get("status")
    return ToolResultDetails(
        status=_as_choice(status, _TOOL_STATUSES, "completed"),
        exitCode=_as_optional_number(details.get("exitCode")),
        durationMs=_as_optional_number(details.get("durationMs")),
    )


def _parse_message_body(raw: Any) -> MessageBody:
    message = _as_record(raw) or {}
    role = message.get("role")
    return MessageBody(
        role=_as_choice(role, _ROLES, "user"),
        content=_parse_content(message.get("content")),
        api=_as_optional_string(message.get("api")),
        provider=_as_optional_string(message.get("provider")),
        model=_as_optional_string(message.get("model")),
        usage=parse_usage(message.get("usage")),
        stopReason=_as_optional_string(message.get("stopReason")),
        toolCallId=_as_optional_string(message.get("toolCallId")),
        toolName=_as_optional_string(message.get("toolName")),
        details=parse_tool_result_details(message.get("details")),
        isError=bool(message.get("isError")),
    )


# ── Entry builders, keyed by discriminator ─────────────────────────

def _build_session(raw: dict[str, Any]) -> SessionEntry:
    return SessionEntry(
        **_normalize_base(raw),
        version=_as_number(raw.get("version")),
        cwd=_as_string(raw.get("cwd")),
    )


def _build_model_change(raw: dict[str, Any]) -> ModelChangeEntry:
    return ModelChangeEntry(
        **_normalize_base(raw),
        provider=_as_string(raw.get("provider")),
        modelId=_as_string(raw.get("modelId")),
    )


def _build_thinking_level_change(raw: dict[str, Any]) -> ThinkingLevelChangeEntry:
    level = raw.get("thinkingLevel")
    return ThinkingLevelChangeEntry(
        **_normalize_base(raw),
        thinkingLevel=_as_choice(level, _THINKING_LEVELS, "off"),
    )


def _build_custom(raw: dict[str, Any]) -> CustomEntry:
    return CustomEntry(
        **_normalize_base(raw),
        customType=_as_string(raw.get("customType")),
        data=_as_record(raw.get("data")) or {},
    )


def _build_compaction(raw: dict[str, Any]) -> CompactionEntry:
    details = _as_record(raw.get("details"))
    return CompactionEntry(
        **_normalize_base(raw),
        summary=_as_string(raw.get("summary")),
        firstKeptEntryId=_as_string(raw.get("firstKeptEntryId")),
        tokensBefore=_as_number(raw.get("tokensBefore")),
        details=(
            CompactionDetails(
                readFiles=_as_string_list(details.get("readFiles")),
                modifiedFiles=_as_string_list(details.get("modifiedFiles")),
            )
            if details is not None
            else None
        ),
    )


def _build_message(raw: dict[str, Any]) -> MessageEntry:
    return MessageEntry(**_normalize_base(raw), message=_parse_message_body(raw.get("message")))


_ENTRY_BUILDERS: dict[str, Callable[[dict[str, Any]], Entry]] = {
    "session": _build_session,
    "model_change": _build_model_change,
    "thinking_level_change": _build_thinking_level_change,
    "custom": _build_custom,
    "compaction": _build_compaction,
    "message": _build_message,
}


def parse_line(line: str) -> Entry | None:
    """Parse one JSONL line. Returns None for blank, invalid or unknown lines."""
    if not line or not line.strip():
        return None

    try:
        raw = json.loads(line)
    except (json.JSONDecodeError, RecursionError):
        logger.warning("Failed to parse line: %s...", line[:_DIAGNOSTIC_PREVIEW_CHARS])
        record_parser_failure("entry")
        return None

    record = _as_record(raw)
    if record is None:
        return None
    builder = _ENTRY_BUILDERS.get(_as_string(record.get("type")))
    if builder is None:
        return None
    return builder(record)


def parse_jsonl_content(content: str) -> list[Entry]:
    """Parse every line of a JSONL document, keeping file order."""
    entries: list[Entry] = []
    for line in content.split("\n"):
        entry = parse_line(line)
        if entry is not None:
            entries.append(entry)
    return entries


# ── Message helpers ────────────────────────────────────────────────

def get_tool_calls(entry: MessageEntry) -> list[ToolCallBlock]:
    if entry.message.role != "assistant":
        return []
    return [block for block in entry.message.content if isinstance(block, ToolCallBlock)]


def extract_tool_names(entry: MessageEntry) -> list[str]:
    return [block.name for block in get_tool_calls(entry)]


def has_tool_calls(entry: MessageEntry) -> bool:
    return bool(get_tool_calls(entry))


def get_text_content(entry: MessageEntry, separator: str = "\n") -> str:
    return separator.join(block.text for block in entry.message.content if isinstance(block, TextBlock))


def get_thinking_content(entry: MessageEntry) -> str:
    return "\n".join(block.text for block in entry.message.content if isinstance(block, ThinkingBlock))
