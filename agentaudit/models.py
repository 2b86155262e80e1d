"""Pydantic models for session log entries and the views built from them."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, SerializerFunctionWrapHandler, model_serializer

T = TypeVar("T")

Number = Union[int, float]
Role = Literal["user", "assistant", "toolResult"]
ThinkingLevel = Literal["off", "low", "medium", "high"]
ToolStatus = Literal["completed", "error", "running"]
ToolCategory = Literal["file", "search", "exec", "web", "subagent", "mcp", "other"]
EntryType = Literal["session", "model_change", "thinking_level_change", "custom", "compaction", "message"]


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    offset: int
    limit: int


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ── Content blocks ─────────────────────────────────────────────────

class TextBlock(_Frozen):
    type: Literal["text"] = "text"
    text: str = ""


class ThinkingBlock(_Frozen):
    type: Literal["thinking"] = "thinking"
    text: str = ""


class ToolCallBlock(_Frozen):
    type: Literal["toolCall"] = "toolCall"
    id: str = ""
    name: str = ""
    arguments: dict[str, Any] = Field(default_factory=dict)


class ImageBlock(_Frozen):
    type: Literal["image"] = "image"
    source: Any = None


ContentBlock = Annotated[
    Union[TextBlock, ThinkingBlock, ToolCallBlock, ImageBlock],
    Field(discriminator="type"),
]


# ── Message payloads ───────────────────────────────────────────────

class UsageCost(_Frozen):
    input: Number = 0
    output: Number = 0
    cacheRead: Number = 0
    cacheWrite: Number = 0
    total: Number = 0


class UsageStats(_Frozen):
    input: Number = 0
    output: Number = 0
    cacheRead: Number = 0
    cacheWrite: Number = 0
    totalTokens: Number = 0
    cost: Optional[UsageCost] = None


class ToolResultDetails(_Frozen):
    status: ToolStatus = "completed"
    exitCode: Optional[Number] = None
    durationMs: Optional[Number] = None


class MessageBody(_Frozen):
    role: Role = "user"
    content: list[ContentBlock] = Field(default_factory=list)
    # assistant messages
    api: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    usage: Optional[UsageStats] = None
    stopReason: Optional[str] = None
    # toolResult messages
    toolCallId: Optional[str] = None
    toolName: Optional[str] = None
    details: Optional[ToolResultDetails] = None
    isError: bool = False


# ── Entries ────────────────────────────────────────────────────────

class BaseEntry(_Frozen):
    id: str = ""
    parentId: Optional[str] = None
    timestamp: str = ""

    @model_serializer(mode="wrap")
    def _keep_parent_id(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        # Roots keep "parentId": null even under exclude_none
        data = handler(self)
        if isinstance(data, dict):
            data.setdefault("parentId", self.parentId)
        return data


class SessionEntry(BaseEntry):
    type: Literal["session"] = "session"
    version: Number = 0
    cwd: str = ""


class ModelChangeEntry(BaseEntry):
    type: Literal["model_change"] = "model_change"
    provider: str = ""
    modelId: str = ""


class ThinkingLevelChangeEntry(BaseEntry):
    type: Literal["thinking_level_change"] = "thinking_level_change"
    thinkingLevel: ThinkingLevel = "off"


class CustomEntry(BaseEntry):
    type: Literal["custom"] = "custom"
    customType: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class CompactionDetails(_Frozen):
    readFiles: list[str] = Field(default_factory=list)
    modifiedFiles: list[str] = Field(default_factory=list)


class CompactionEntry(BaseEntry):
    type: Literal["compaction"] = "compaction"
    summary: str = ""
    firstKeptEntryId: str = ""
    tokensBefore: Number = 0
    details: Optional[CompactionDetails] = None


class MessageEntry(BaseEntry):
    type: Literal["message"] = "message"
    message: MessageBody = Field(default_factory=MessageBody)


Entry = Annotated[
    Union[
        SessionEntry,
        ModelChangeEntry,
        ThinkingLevelChangeEntry,
        CustomEntry,
        CompactionEntry,
        MessageEntry,
    ],
    Field(discriminator="type"),
]


# ── Session views ──────────────────────────────────────────────────

class SessionStats(BaseModel):
    totalTokens: Number = 0
    inputTokens: Number = 0
    outputTokens: Number = 0
    cacheReadTokens: Number = 0
    cacheWriteTokens: Number = 0
    messageCount: int = 0
    userMessages: int = 0
    assistantMessages: int = 0
    toolCalls: int = 0
    toolResults: int = 0
    errors: int = 0


class Session(BaseModel):
    id: str
    agentName: str
    filePath: str
    timestamp: datetime
    cwd: str = ""
    model: str = "unknown"
    provider: str = "unknown"
    entries: list[Entry] = Field(default_factory=list)
    stats: SessionStats = Field(default_factory=SessionStats)
    isDeleted: bool = False
    topicId: Optional[str] = None


class SessionSummary(BaseModel):
    id: str
    agentName: str
    filePath: str
    timestamp: datetime
    startedAge: str = ""
    lastActivity: datetime
    lastActivityAge: str = ""
    model: str = "unknown"
    provider: str = "unknown"
    eventCount: int = 0
    messageCount: int = 0
    toolCallCount: int = 0
    toolResultCount: int = 0
    errorCount: int = 0
    compactionCount: int = 0
    tokens: str = "0"
    tokenPercent: int = 0
    flags: list[str] = Field(default_factory=list)
    isDeleted: bool = False
    topicId: Optional[str] = None


class Agent(BaseModel):
    name: str
    path: str
    sessionCount: int = 0
    sessions: list[SessionSummary] = Field(default_factory=list)


class GlobalEventEntry(BaseModel):
    entry: Entry
    agentName: str
    sessionId: str
    sessionFilePath: str
    sessionTimestamp: datetime


class Histogram(BaseModel):
    counts: list[int]
    startLabel: str = "--:--"
    endLabel: str = "--:--"
    maxCount: int = 0


# ── Filter criteria ───────────────────────────────────────────────

class EntryFilter(BaseModel):
    entryType: Literal["all", "user", "assistant", "tool", "system"] = "all"
    role: Literal["all", "user", "assistant", "toolResult"] = "all"
    toolCategory: Literal["all", "file", "search", "exec", "web", "subagent", "mcp", "other"] = "all"
    toolNameQuery: str = ""
    onlyErrors: bool = False
    query: str = ""


class EventFilter(BaseModel):
    timeWindow: Literal["15m", "1h", "6h", "24h", "all"] = "all"
    eventType: Literal[
        "all", "session", "model_change", "thinking_level_change", "custom", "compaction", "message"
    ] = "all"
    agentName: str = ""  # empty = global scope
    toolCategory: Literal["all", "file", "search", "exec", "web", "subagent", "mcp", "other"] = "all"
    toolNameQuery: str = ""
    onlyErrors: bool = False
    query: str = ""
