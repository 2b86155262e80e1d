"""Coarse classification of tool names for filtering."""
from __future__ import annotations

from agentaudit.models import ToolCategory

TOOL_CATEGORIES: tuple[ToolCategory, ...] = ("file", "search", "exec", "web", "subagent", "mcp", "other")

# Ordered: the first matching rule wins. MCP tools are namespaced
# ("mcp__server__tool"), so the prefix rule runs before the substring rules.
_PREFIX_RULES: list[tuple[ToolCategory, tuple[str, ...]]] = [
    ("mcp", ("mcp__",)),
]
_SUBSTRING_RULES: list[tuple[ToolCategory, tuple[str, ...]]] = [
    ("file", ("read", "write", "edit", "notebookedit")),
    ("search", ("glob", "grep", "rg")),
    ("exec", ("bash", "exec", "run_background", "check_background")),
    ("web", ("websearch", "webfetch", "web_search", "web_fetch", "http")),
    ("subagent", ("task", "sessions_spawn", "sessions_list", "sessions_history", "delegate_task", "call_agent")),
]


def categorize_tool(tool_name: str) -> ToolCategory:
    normalized = (tool_name or "").lower()
    for category, prefixes in _PREFIX_RULES:
        if normalized.startswith(prefixes):
            return category
    for category, needles in _SUBSTRING_RULES:
        if any(needle in normalized for needle in needles):
            return category
    return "other"
