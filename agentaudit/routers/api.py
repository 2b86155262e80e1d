"""API routers for agents and sessions."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

from fastapi import APIRouter, HTTPException, Request

from agentaudit import config
from agentaudit.filters import active_facets, filter_entries
from agentaudit.models import Agent, EntryFilter, Session, SessionSummary
from agentaudit.parsers.filenames import is_session_file
from agentaudit.parsers.sessions import load_session
from agentaudit.services.aggregator import AggregationStatus

logger = logging.getLogger("agentaudit.api")


def _get_aggregator(request: Request):
    aggregator = getattr(request.app.state, "aggregator", None)
    if not aggregator:
        raise HTTPException(status_code=503, detail="Aggregator not initialized")
    return aggregator


def _is_under(path: Path, root: Path) -> bool:
    try:
        path.resolve(strict=False).relative_to(root.resolve(strict=False))
        return True
    except ValueError:
        return False


def _resolve_session_path(root: Path, agent: str, file_name: str) -> Path:
    sessions_dir = root / agent / config.SESSIONS_SUBDIR
    candidate = sessions_dir / file_name
    if not _is_under(candidate, sessions_dir) or not _is_under(sessions_dir, root):
        raise HTTPException(status_code=400, detail=f"Path outside agents root: {agent}/{file_name}")
    if not is_session_file(file_name):
        raise HTTPException(status_code=400, detail=f"Not a session log: {file_name}")
    return candidate


# ── Agents router ───────────────────────────────────────────────────

agents_router = APIRouter(prefix="/api/agents", tags=["agents"])


@agents_router.get("", response_model=list[Agent])
async def list_agents(request: Request):
    """Return agents, busiest first, with their session summaries."""
    aggregator = _get_aggregator(request)
    if aggregator.status is AggregationStatus.FAILED:
        raise HTTPException(status_code=503, detail=aggregator.error or "Failed to load agents")
    return list(aggregator.agents)


# ── Sessions router ─────────────────────────────────────────────────

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@sessions_router.get("", response_model=list[SessionSummary])
async def list_sessions(request: Request, agent: str = ""):
    """Return session summaries, most recently active first."""
    aggregator = _get_aggregator(request)
    summaries = aggregator.summaries
    agent_name = agent.strip()
    if agent_name:
        summaries = [s for s in summaries if s.agentName == agent_name]
    return list(summaries)


@sessions_router.get("/{agent}/{file_name}", response_model=Session)
def get_session(
    request: Request,
    agent: str,
    file_name: str,
    entryType: Literal["all", "user", "assistant", "tool", "system"] = "all",
    role: Literal["all", "user", "assistant", "toolResult"] = "all",
    toolCategory: Literal["all", "file", "search", "exec", "web", "subagent", "mcp", "other"] = "all",
    toolNameQuery: str = "",
    onlyErrors: bool = False,
    query: str = "",
):
    """Return one session with its entries narrowed by the entry facets."""
    aggregator = _get_aggregator(request)
    path = _resolve_session_path(aggregator.root, agent, file_name)
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"Session not found: {agent}/{file_name}")

    session = load_session(agent, path)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session could not be read: {agent}/{file_name}")

    criteria = EntryFilter(
        entryType=entryType,
        role=role,
        toolCategory=toolCategory,
        toolNameQuery=toolNameQuery,
        onlyErrors=onlyErrors,
        query=query,
    )
    facets = active_facets(criteria)
    if not facets:
        return session
    entries = filter_entries(session.entries, criteria)
    logger.debug("Session %s/%s filtered by %s: %d/%d entries", agent, file_name, facets, len(entries), len(session.entries))
    return session.model_copy(update={"entries": entries})
