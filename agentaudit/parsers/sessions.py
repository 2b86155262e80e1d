"""Load one session JSONL file into a Session or SessionSummary."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

from agentaudit import config
from agentaudit.date_utils import (
    format_relative_time,
    format_tokens,
    is_valid_timestamp,
    ms_to_datetime,
    now_ms,
    parse_timestamp_ms,
)
from agentaudit.models import (
    Entry,
    MessageEntry,
    ModelChangeEntry,
    Session,
    SessionEntry,
    SessionStats,
    SessionSummary,
    ToolCallBlock,
)
from agentaudit.observability import record_session_load
from agentaudit.parsers.filenames import extract_topic_id, is_deleted_file
from agentaudit.parsers.entries import parse_jsonl_content

logger = logging.getLogger("agentaudit.sessions")

UNKNOWN = "unknown"


@dataclass(frozen=True)
class SessionMetadata:
    id: str
    timestamp: datetime
    lastActivity: datetime
    cwd: str
    model: str
    provider: str


def calculate_stats(entries: Sequence[Entry]) -> SessionStats:
    """Fold entries into message, tool and token counters in one pass."""
    stats = SessionStats()
    for entry in entries:
        if not isinstance(entry, MessageEntry):
            continue
        message = entry.message
        stats.messageCount += 1

        if message.role == "user":
            stats.userMessages += 1
        elif message.role == "assistant":
            stats.assistantMessages += 1
            stats.toolCalls += sum(1 for block in message.content if isinstance(block, ToolCallBlock))
            if message.usage is not None:
                stats.inputTokens += message.usage.input
                stats.outputTokens += message.usage.output
                stats.cacheReadTokens += message.usage.cacheRead
                stats.cacheWriteTokens += message.usage.cacheWrite
                stats.totalTokens += message.usage.totalTokens
        elif message.role == "toolResult":
            stats.toolResults += 1
            if message.isError:
                stats.errors += 1

    return stats


def _latest(values: Iterable[str]) -> str:
    return next((value for value in values if value), "")


def _resolve_model_and_provider(entries: Sequence[Entry]) -> tuple[str, str]:
    """Model and provider, each from the most recent entry that names it.

    A model_change wins over assistant messages for either field.
    """
    newest_first = list(reversed(entries))
    changes = [e for e in newest_first if isinstance(e, ModelChangeEntry)]
    replies = [
        e.message
        for e in newest_first
        if isinstance(e, MessageEntry) and e.message.role == "assistant"
    ]
    model = _latest(e.modelId for e in changes) or _latest(m.model or "" for m in replies)
    provider = _latest(e.provider for e in changes) or _latest(m.provider or "" for m in replies)
    return model or UNKNOWN, provider or UNKNOWN


def extract_session_metadata(entries: Sequence[Entry], now: float | None = None) -> SessionMetadata:
    current_ms = now_ms() if now is None else now
    session_entry = next((e for e in entries if isinstance(e, SessionEntry)), None)

    valid_ms = [
        parse_timestamp_ms(entry.timestamp)
        for entry in entries
        if is_valid_timestamp(entry.timestamp, now=current_ms)
    ]

    started_ms = None
    if session_entry is not None and is_valid_timestamp(session_entry.timestamp, now=current_ms):
        started_ms = parse_timestamp_ms(session_entry.timestamp)
    if started_ms is None:
        started_ms = min(valid_ms) if valid_ms else current_ms
    last_activity_ms = max(valid_ms) if valid_ms else current_ms

    model, provider = _resolve_model_and_provider(entries)
    return SessionMetadata(
        id=(session_entry.id if session_entry else "") or UNKNOWN,
        timestamp=ms_to_datetime(started_ms),
        lastActivity=ms_to_datetime(last_activity_ms),
        cwd=session_entry.cwd if session_entry else "",
        model=model,
        provider=provider,
    )


def _read_entries(file_path: Path) -> list[Entry]:
    return parse_jsonl_content(file_path.read_text(encoding="utf-8", errors="replace"))


def build_flags(stats: SessionStats, compaction_count: int, model: str) -> list[str]:
    flags: list[str] = []
    if stats.errors > 0:
        flags.append("err")
    if compaction_count > 0:
        flags.append("compact")
    if model == UNKNOWN:
        flags.append("model?")
    return flags


def token_percent(total_tokens: int | float, context_window: int | None = None) -> int:
    window = context_window or config.CONTEXT_WINDOW_TOKENS
    if window <= 0:
        return 0
    return round(total_tokens / window * 100)


def load_session_summary(agent_name: str, file_path: Path | str) -> SessionSummary | None:
    """Read a session file and roll it up into a list-view summary."""
    path = Path(file_path)
    started = time.perf_counter()
    try:
        entries = _read_entries(path)
    except OSError as exc:
        logger.error("Failed to load session summary %s: %s", path, exc)
        record_session_load("summary", "error", (time.perf_counter() - started) * 1000)
        return None

    metadata = extract_session_metadata(entries)
    stats = calculate_stats(entries)
    compaction_count = sum(1 for entry in entries if entry.type == "compaction")
    now = datetime.now(timezone.utc)

    summary = SessionSummary(
        id=metadata.id,
        agentName=agent_name,
        filePath=str(path),
        timestamp=metadata.timestamp,
        startedAge=format_relative_time(metadata.timestamp, now),
        lastActivity=metadata.lastActivity,
        lastActivityAge=format_relative_time(metadata.lastActivity, now),
        model=metadata.model,
        provider=metadata.provider,
        eventCount=len(entries),
        messageCount=stats.messageCount,
        toolCallCount=stats.toolCalls,
        toolResultCount=stats.toolResults,
        errorCount=stats.errors,
        compactionCount=compaction_count,
        tokens=format_tokens(stats.totalTokens),
        tokenPercent=token_percent(stats.totalTokens),
        flags=build_flags(stats, compaction_count, metadata.model),
        isDeleted=is_deleted_file(path.name),
        topicId=extract_topic_id(path.name),
    )
    record_session_load("summary", "ok", (time.perf_counter() - started) * 1000)
    return summary


def load_session(agent_name: str, file_path: Path | str) -> Session | None:
    """Read a session file into the full entry list plus stats."""
    path = Path(file_path)
    started = time.perf_counter()
    try:
        entries = _read_entries(path)
    except OSError as exc:
        logger.error("Failed to load session %s: %s", path, exc)
        record_session_load("session", "error", (time.perf_counter() - started) * 1000)
        return None

    metadata = extract_session_metadata(entries)
    session = Session(
        id=metadata.id,
        agentName=agent_name,
        filePath=str(path),
        timestamp=metadata.timestamp,
        cwd=metadata.cwd,
        model=metadata.model,
        provider=metadata.provider,
        entries=entries,
        stats=calculate_stats(entries),
        isDeleted=is_deleted_file(path.name),
        topicId=extract_topic_id(path.name),
    )
    record_session_load("session", "ok", (time.perf_counter() - started) * 1000)
    return session
