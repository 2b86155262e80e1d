"""Cross-session aggregation: agent scan, summaries and the global event stream.

A pass rebuilds everything from the files on disk. Files are read one at a
time and the coroutine yields to the event loop between them, so a pass
never starts parallel reads and never blocks the loop for more than one
file.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from agentaudit import config
from agentaudit.date_utils import is_valid_timestamp, now_ms, parse_timestamp_ms
from agentaudit.models import Agent, GlobalEventEntry, Session, SessionSummary
from agentaudit.observability import record_merge, start_span
from agentaudit.parsers.agents import (
    AgentsRootError,
    collect_session_summaries,
    iter_agent_dirs,
    scan_agent,
    sort_agents,
)
from agentaudit.parsers.sessions import load_session

logger = logging.getLogger("agentaudit.aggregator")

SessionLoader = Callable[[str, str], Optional[Session]]


class AggregationStatus(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    FAILED = "failed"


async def merge_global_events(
    summaries: Iterable[SessionSummary],
    loader: SessionLoader = load_session,
    now: float | None = None,
) -> list[GlobalEventEntry]:
    """Load each session and merge its validly-timestamped entries, newest first."""
    current_ms = now_ms() if now is None else now
    keyed: list[tuple[float, GlobalEventEntry]] = []

    for summary in summaries:
        try:
            session = loader(summary.agentName, summary.filePath)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Skipping session %s during merge: %s", summary.filePath, exc)
            session = None

        if session is not None:
            for entry in session.entries:
                if not is_valid_timestamp(entry.timestamp, now=current_ms):
                    continue
                keyed.append(
                    (
                        parse_timestamp_ms(entry.timestamp),
                        GlobalEventEntry(
                            entry=entry,
                            agentName=summary.agentName,
                            sessionId=summary.id,
                            sessionFilePath=summary.filePath,
                            sessionTimestamp=summary.timestamp,
                        ),
                    )
                )
        await asyncio.sleep(0)

    keyed.sort(key=lambda item: item[0], reverse=True)
    return [event for _, event in keyed]


class EventAggregator:
    """Owns the agent list, session summaries and merged event stream.

    State moves idle -> in_progress -> ready | failed. Only one pass runs at
    a time; a refresh requested while a pass is running is coalesced into a
    single follow-up pass that starts when the current one finishes.
    """

    def __init__(
        self,
        root: Path | None = None,
        *,
        include_deleted: bool | None = None,
        loader: SessionLoader = load_session,
    ):
        self.root = Path(root) if root is not None else config.AGENTS_DIR
        self.include_deleted = (
            config.INCLUDE_DELETED_SESSIONS if include_deleted is None else include_deleted
        )
        self._loader = loader
        self._status = AggregationStatus.IDLE
        self._error = ""
        self._agents: tuple[Agent, ...] = ()
        self._summaries: tuple[SessionSummary, ...] = ()
        self._events: tuple[GlobalEventEntry, ...] = ()
        self._refreshed_at: Optional[datetime] = None
        self._last_duration_ms = 0.0
        self._pass_count = 0
        self._rerun_requested = False

    # ── read-only views ──

    @property
    def status(self) -> AggregationStatus:
        return self._status

    @property
    def error(self) -> str:
        return self._error

    @property
    def agents(self) -> tuple[Agent, ...]:
        return self._agents

    @property
    def summaries(self) -> tuple[SessionSummary, ...]:
        return self._summaries

    @property
    def events(self) -> tuple[GlobalEventEntry, ...]:
        return self._events

    @property
    def refreshed_at(self) -> Optional[datetime]:
        return self._refreshed_at

    @property
    def pass_count(self) -> int:
        return self._pass_count

    @property
    def is_busy(self) -> bool:
        return self._status is AggregationStatus.IN_PROGRESS

    def snapshot(self) -> dict:
        return {
            "status": self._status.value,
            "error": self._error,
            "root": str(self.root),
            "agentCount": len(self._agents),
            "sessionCount": len(self._summaries),
            "eventCount": len(self._events),
            "refreshedAt": self._refreshed_at.isoformat() if self._refreshed_at else "",
            "lastDurationMs": round(self._last_duration_ms, 1),
            "passCount": self._pass_count,
            "refreshPending": self._rerun_requested,
        }

    # ── refresh ──

    async def refresh(self, trigger: str = "api") -> bool:
        """Run a full pass. Returns False when the request was coalesced."""
        if self.is_busy:
            self._rerun_requested = True
            logger.info("Refresh (%s) requested during an active pass; queued one follow-up pass", trigger)
            return False

        self._status = AggregationStatus.IN_PROGRESS
        try:
            while True:
                self._rerun_requested = False
                await self._run_pass(trigger)
                if not self._rerun_requested or self._status is AggregationStatus.FAILED:
                    break
                trigger = "coalesced"
        finally:
            if self._rerun_requested:
                logger.info("Dropping queued follow-up pass after a failed pass")
                self._rerun_requested = False
            if self._status is AggregationStatus.IN_PROGRESS:
                # Unexpected exception escaped the pass.
                self._status = AggregationStatus.FAILED
        return True

    async def _scan_agents(self) -> list[Agent]:
        agents = []
        for agent_dir in iter_agent_dirs(self.root):
            agent = scan_agent(agent_dir, self.include_deleted)
            if agent is not None:
                agents.append(agent)
            await asyncio.sleep(0)
        return sort_agents(agents)

    async def _run_pass(self, trigger: str) -> None:
        started = time.perf_counter()
        logger.info("Aggregation pass started (root=%s trigger=%s)", self.root, trigger)
        with start_span("agentaudit.merge", {"trigger": trigger, "root": str(self.root)}):
            try:
                agents = await self._scan_agents()
                summaries = collect_session_summaries(agents)
                events = await merge_global_events(summaries, loader=self._loader)
            except AgentsRootError as exc:
                self._fail(str(exc), started)
                return
            except Exception as exc:
                logger.exception("Aggregation pass failed")
                self._fail(str(exc) or exc.__class__.__name__, started)
                raise

        self._agents = tuple(agents)
        self._summaries = tuple(summaries)
        self._events = tuple(events)
        self._error = ""
        self._status = AggregationStatus.READY
        self._finish(started)
        record_merge("ok", self._last_duration_ms, sessions=len(summaries), events=len(events))
        logger.info(
            "Aggregation pass finished: %d agents, %d sessions, %d events in %.0fms",
            len(agents),
            len(summaries),
            len(events),
            self._last_duration_ms,
        )

    def _fail(self, message: str, started: float) -> None:
        self._agents = ()
        self._summaries = ()
        self._events = ()
        self._error = message
        self._status = AggregationStatus.FAILED
        self._finish(started)
        record_merge("error", self._last_duration_ms)
        logger.error("Aggregation pass failed: %s", message)

    def _finish(self, started: float) -> None:
        self._pass_count += 1
        self._last_duration_ms = (time.perf_counter() - started) * 1000
        self._refreshed_at = datetime.now(timezone.utc)

    async def run_periodic(self, interval_seconds: float) -> None:
        """Refresh forever, waiting *interval_seconds* between passes."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.refresh(trigger="periodic")
            except Exception as exc:  # noqa: BLE001
                logger.error("Periodic refresh failed: %s", exc)
