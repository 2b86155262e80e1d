"""Faceted filtering over session entries and merged global events.

Each active facet becomes a named predicate; the predicates are combined
into one conjunction and evaluated in a single pass, so the result does not
depend on facet order and input order is preserved.
"""
from __future__ import annotations

import json
from typing import Callable, Iterable, Sequence, TypeVar

from agentaudit.date_utils import now_ms, parse_timestamp_ms
from agentaudit.models import (
    Entry,
    EntryFilter,
    EventFilter,
    GlobalEventEntry,
    MessageEntry,
    TextBlock,
    ToolCallBlock,
)
from agentaudit.tool_categories import categorize_tool

T = TypeVar("T")
Predicate = Callable[[T], bool]
NamedPredicate = tuple[str, Predicate]

TIME_WINDOW_MS: dict[str, int | None] = {
    "15m": 15 * 60 * 1000,
    "1h": 60 * 60 * 1000,
    "6h": 6 * 60 * 60 * 1000,
    "24h": 24 * 60 * 60 * 1000,
    "all": None,
}


def fuzzy_match(haystack: str, query: str) -> bool:
    """True when every query character occurs in *haystack*, in order."""
    if not query:
        return True
    needle = query.lower()
    remaining = iter(haystack.lower())
    return all(char in remaining for char in needle)


def all_of(predicates: Sequence[NamedPredicate]) -> Predicate:
    checks = [check for _, check in predicates]

    def _combined(item) -> bool:
        return all(check(item) for check in checks)

    return _combined


# ── Entry accessors ────────────────────────────────────────────────

def _tool_call_names(entry: MessageEntry) -> list[str]:
    return [block.name for block in entry.message.content if isinstance(block, ToolCallBlock)]


def _tool_names_for_match(entry: Entry) -> list[str] | None:
    """Tool names a tool facet may match, or None when the entry never qualifies."""
    if not isinstance(entry, MessageEntry):
        return None
    if entry.message.role == "assistant":
        return _tool_call_names(entry)
    if entry.message.role == "toolResult":
        return [entry.message.toolName or ""]
    return None


def entry_search_text(entry: Entry) -> str:
    """Compose the text a free-text query is matched against."""
    if not isinstance(entry, MessageEntry):
        return json.dumps(entry.model_dump(mode="json"), ensure_ascii=False)
    message = entry.message
    text_blocks = " ".join(block.text for block in message.content if isinstance(block, TextBlock))
    tool_blocks = " ".join(
        f"{block.name} {json.dumps(block.arguments, ensure_ascii=False, default=str)}"
        for block in message.content
        if isinstance(block, ToolCallBlock)
    )
    tool_names = " ".join(_tool_call_names(entry))
    return " ".join([message.role, message.toolName or "", tool_names, text_blocks, tool_blocks])


def event_search_text(event: GlobalEventEntry) -> str:
    entry = event.entry
    base = " ".join([event.agentName, event.sessionId, entry.type, entry.id, entry.timestamp])
    return f"{base} {entry_search_text(entry)}"


# ── Facet predicates over entries ──────────────────────────────────

def entry_type_predicate(entry_type: str) -> Predicate:
    def _check(entry: Entry) -> bool:
        if not isinstance(entry, MessageEntry):
            return entry_type == "system"
        if entry_type == "user":
            return entry.message.role == "user"
        if entry_type == "assistant":
            return entry.message.role == "assistant"
        if entry_type == "tool":
            return entry.message.role == "toolResult"
        return False

    return _check


def role_predicate(role: str) -> Predicate:
    def _check(entry: Entry) -> bool:
        return isinstance(entry, MessageEntry) and entry.message.role == role

    return _check


def tool_category_predicate(category: str) -> Predicate:
    def _check(entry: Entry) -> bool:
        names = _tool_names_for_match(entry)
        return bool(names) and any(categorize_tool(name) == category for name in names)

    return _check


def tool_name_predicate(query: str) -> Predicate:
    def _check(entry: Entry) -> bool:
        names = _tool_names_for_match(entry)
        return bool(names) and any(fuzzy_match(name, query) for name in names)

    return _check


def only_errors_predicate(entry: Entry) -> bool:
    return (
        isinstance(entry, MessageEntry)
        and entry.message.role == "toolResult"
        and entry.message.isError
    )


def query_predicate(query: str) -> Predicate:
    def _check(entry: Entry) -> bool:
        return fuzzy_match(entry_search_text(entry), query)

    return _check


def _shared_entry_predicates(criteria: EntryFilter | EventFilter) -> list[NamedPredicate]:
    predicates: list[NamedPredicate] = []
    if criteria.toolCategory != "all":
        predicates.append(("toolCategory", tool_category_predicate(criteria.toolCategory)))
    tool_query = criteria.toolNameQuery.strip()
    if tool_query:
        predicates.append(("toolNameQuery", tool_name_predicate(tool_query)))
    if criteria.onlyErrors:
        predicates.append(("onlyErrors", only_errors_predicate))
    return predicates


def build_entry_predicates(criteria: EntryFilter) -> list[NamedPredicate]:
    predicates: list[NamedPredicate] = []
    if criteria.entryType != "all":
        predicates.append(("entryType", entry_type_predicate(criteria.entryType)))
    if criteria.role != "all":
        predicates.append(("role", role_predicate(criteria.role)))
    predicates.extend(_shared_entry_predicates(criteria))
    query = criteria.query.strip()
    if query:
        predicates.append(("query", query_predicate(query)))
    return predicates


def filter_entries(entries: Iterable[Entry], criteria: EntryFilter) -> list[Entry]:
    """Entries satisfying every active facet of *criteria*, in input order."""
    predicates = build_entry_predicates(criteria)
    if not predicates:
        return list(entries)
    check = all_of(predicates)
    return [entry for entry in entries if check(entry)]


# ── Facet predicates over global events ────────────────────────────

def _on_entry(check: Predicate) -> Predicate:
    return lambda event: check(event.entry)


def time_window_predicate(window: str, now: float | None = None) -> Predicate | None:
    window_ms = TIME_WINDOW_MS.get(window)
    if window_ms is None:
        return None
    current = now_ms() if now is None else now

    def _check(event: GlobalEventEntry) -> bool:
        millis = parse_timestamp_ms(event.entry.timestamp)
        return millis is not None and current - millis <= window_ms

    return _check


def build_event_predicates(criteria: EventFilter, now: float | None = None) -> list[NamedPredicate]:
    predicates: list[NamedPredicate] = []
    window_check = time_window_predicate(criteria.timeWindow, now)
    if window_check is not None:
        predicates.append(("timeWindow", window_check))
    if criteria.eventType != "all":
        event_type = criteria.eventType
        predicates.append(("eventType", lambda event: event.entry.type == event_type))
    agent_name = criteria.agentName.strip()
    if agent_name:
        predicates.append(("agentName", lambda event: event.agentName == agent_name))
    predicates.extend((name, _on_entry(check)) for name, check in _shared_entry_predicates(criteria))
    query = criteria.query.strip()
    if query:
        predicates.append(("query", lambda event: fuzzy_match(event_search_text(event), query)))
    return predicates


def filter_events(
    events: Iterable[GlobalEventEntry],
    criteria: EventFilter,
    now: float | None = None,
) -> list[GlobalEventEntry]:
    """Global events satisfying every active facet of *criteria*, in input order."""
    predicates = build_event_predicates(criteria, now)
    if not predicates:
        return list(events)
    check = all_of(predicates)
    return [event for event in events if check(event)]


def active_facets(criteria: EntryFilter | EventFilter) -> list[str]:
    if isinstance(criteria, EventFilter):
        return [name for name, _ in build_event_predicates(criteria)]
    return [name for name, _ in build_entry_predicates(criteria)]
