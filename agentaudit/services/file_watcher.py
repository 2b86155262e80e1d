"""File watcher service using watchfiles.

Monitors the agents root and triggers a full aggregation pass when session
files are added, modified or deleted.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional

from watchfiles import Change, awatch

from agentaudit import config

logger = logging.getLogger("agentaudit.watcher")


def classify_changes(changes: Iterable[tuple[Change, str]]) -> list[tuple[str, Path]]:
    """Keep session-file changes as (change_type, path) pairs."""
    result = []
    for change_type, path_str in changes:
        path = Path(path_str)
        if path.suffix != config.SESSION_FILE_SUFFIX:
            continue
        if change_type == Change.deleted:
            result.append(("deleted", path))
        elif change_type in (Change.modified, Change.added):
            result.append(("modified", path))
    return sorted(result, key=lambda item: str(item[1]))


class FileWatcher:
    """Background watcher that refreshes an aggregator on change."""

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    async def start(self, aggregator, root: Path) -> None:
        if self._running:
            logger.warning("File watcher already running")
            return
        if not root.exists():
            logger.warning("Agents root %s does not exist, watcher has nothing to monitor", root)
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(aggregator, root, self._stop_event))
        logger.info("File watcher started for %s", root)

    async def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._stop_event = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self, aggregator, root: Path, stop_event: asyncio.Event) -> None:
        try:
            async for changes in awatch(root, stop_event=stop_event):
                classified = classify_changes(changes)
                if not classified:
                    continue
                logger.info("Detected %d session file changes, refreshing", len(classified))
                try:
                    await aggregator.refresh(trigger="watcher")
                except Exception as exc:
                    logger.error("Error refreshing after file changes: %s", exc)
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
        except Exception as exc:
            logger.error("File watcher error: %s", exc)
        finally:
            self._running = False


file_watcher = FileWatcher()
