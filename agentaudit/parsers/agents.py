"""Enumerate agents and their session files under the log root.

Layout::

    <root>/<agent>/sessions/<session>.jsonl

One unreadable agent directory never aborts the scan; only a root that
cannot be listed is reported to the caller.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from agentaudit import config
from agentaudit.models import Agent, SessionSummary
from agentaudit.parsers.filenames import is_deleted_file, is_session_file
from agentaudit.parsers.sessions import load_session_summary

logger = logging.getLogger("agentaudit.scanner")


class AgentsRootError(Exception):
    """The configured log root could not be listed."""


def list_session_files(sessions_dir: Path, include_deleted: bool = False) -> list[Path]:
    """Return qualifying session files, sorted by name. Raises OSError."""
    files = []
    for path in sessions_dir.iterdir():
        if not path.is_file() or not is_session_file(path.name):
            continue
        if is_deleted_file(path.name) and not include_deleted:
            continue
        files.append(path)
    return sorted(files, key=lambda p: p.name)


def iter_agent_dirs(root: Path) -> list[Path]:
    try:
        return sorted((p for p in root.iterdir() if p.is_dir()), key=lambda p: p.name)
    except OSError as exc:
        raise AgentsRootError(f"Failed to load agents from {root}: {exc}") from exc


def scan_agent(agent_dir: Path, include_deleted: bool | None = None) -> Agent | None:
    """Load one agent's session summaries; None when it has nothing to show."""
    if include_deleted is None:
        include_deleted = config.INCLUDE_DELETED_SESSIONS
    sessions_dir = agent_dir / config.SESSIONS_SUBDIR
    try:
        files = list_session_files(sessions_dir, include_deleted)
    except OSError as exc:
        logger.debug("Skipping agent %s: %s", agent_dir.name, exc)
        return None

    if not files:
        return None

    summaries = [load_session_summary(agent_dir.name, path) for path in files]
    return Agent(
        name=agent_dir.name,
        path=str(agent_dir),
        sessionCount=len(files),
        sessions=[s for s in summaries if s is not None],
    )


def sort_agents(agents: Iterable[Agent]) -> list[Agent]:
    return sorted(agents, key=lambda agent: agent.sessionCount, reverse=True)


def scan_agents(root: Path | None = None, include_deleted: bool | None = None) -> list[Agent]:
    """Scan every agent under *root*, busiest first."""
    agents_root = Path(root) if root is not None else config.AGENTS_DIR
    agents = []
    for agent_dir in iter_agent_dirs(agents_root):
        agent = scan_agent(agent_dir, include_deleted)
        if agent is not None:
            agents.append(agent)
    return sort_agents(agents)


def collect_session_summaries(agents: Iterable[Agent]) -> list[SessionSummary]:
    """Flatten agent sessions, most recently active first."""
    summaries = [summary for agent in agents for summary in agent.sessions]
    return sorted(summaries, key=lambda s: s.lastActivity, reverse=True)
