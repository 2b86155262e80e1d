"""Global event stream API: filtered events, histogram, refresh status."""
from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, BackgroundTasks, Request
from pydantic import BaseModel

from agentaudit.filters import active_facets, filter_events
from agentaudit.histogram import (
    DEFAULT_BUCKETS,
    HISTOGRAM_BUCKET_OPTIONS,
    SPARK_DISPLAY_WIDTH,
    build_histogram,
    expand_for_display,
)
from agentaudit.models import EventFilter, GlobalEventEntry, PaginatedResponse
from agentaudit.routers.api import _get_aggregator
from agentaudit.services.file_watcher import file_watcher

logger = logging.getLogger("agentaudit.api")

events_router = APIRouter(prefix="/api/events", tags=["events"])

TimeWindow = Literal["15m", "1h", "6h", "24h", "all"]
EventTypeFacet = Literal["all", "session", "model_change", "thinking_level_change", "custom", "compaction", "message"]
ToolCategoryFacet = Literal["all", "file", "search", "exec", "web", "subagent", "mcp", "other"]

_MAX_PAGE_SIZE = 500


class RefreshRequest(BaseModel):
    background: bool = True
    trigger: str = "api"


def _event_filter(
    timeWindow: str,
    eventType: str,
    agent: str,
    toolCategory: str,
    toolNameQuery: str,
    onlyErrors: bool,
    query: str,
) -> EventFilter:
    return EventFilter(
        timeWindow=timeWindow,
        eventType=eventType,
        agentName=agent,
        toolCategory=toolCategory,
        toolNameQuery=toolNameQuery,
        onlyErrors=onlyErrors,
        query=query,
    )


@events_router.get("", response_model=PaginatedResponse[GlobalEventEntry])
async def list_events(
    request: Request,
    offset: int = 0,
    limit: int = 100,
    timeWindow: TimeWindow = "all",
    eventType: EventTypeFacet = "all",
    agent: str = "",
    toolCategory: ToolCategoryFacet = "all",
    toolNameQuery: str = "",
    onlyErrors: bool = False,
    query: str = "",
):
    """Return merged events across all sessions, newest first."""
    aggregator = _get_aggregator(request)
    criteria = _event_filter(timeWindow, eventType, agent, toolCategory, toolNameQuery, onlyErrors, query)
    matched = filter_events(aggregator.events, criteria)

    offset = max(0, offset)
    limit = min(max(1, limit), _MAX_PAGE_SIZE)
    return PaginatedResponse(
        items=matched[offset:offset + limit],
        total=len(matched),
        offset=offset,
        limit=limit,
    )


@events_router.get("/histogram")
async def get_histogram(
    request: Request,
    buckets: int = DEFAULT_BUCKETS,
    width: int = SPARK_DISPLAY_WIDTH,
    timeWindow: TimeWindow = "all",
    eventType: EventTypeFacet = "all",
    agent: str = "",
    toolCategory: ToolCategoryFacet = "all",
    toolNameQuery: str = "",
    onlyErrors: bool = False,
    query: str = "",
):
    """Bucket the filtered events over time for the timeline sparkline."""
    aggregator = _get_aggregator(request)
    criteria = _event_filter(timeWindow, eventType, agent, toolCategory, toolNameQuery, onlyErrors, query)
    matched = filter_events(aggregator.events, criteria)
    histogram = build_histogram(matched, buckets)
    return {
        "histogram": histogram.model_dump(),
        "display": expand_for_display(histogram.counts, width),
        "eventCount": len(matched),
        "bucketOptions": list(HISTOGRAM_BUCKET_OPTIONS),
        "activeFacets": active_facets(criteria),
    }


@events_router.get("/status")
async def get_status(request: Request):
    aggregator = _get_aggregator(request)
    return {
        **aggregator.snapshot(),
        "watcher": "running" if file_watcher.is_running else "stopped",
    }


@events_router.post("/refresh")
async def trigger_refresh(request: Request, background_tasks: BackgroundTasks, body: RefreshRequest):
    """Rebuild agents, summaries and events from disk."""
    aggregator = _get_aggregator(request)

    if body.background:
        queued = aggregator.is_busy
        background_tasks.add_task(aggregator.refresh, body.trigger)
        return {
            "status": "ok",
            "mode": "background",
            "message": "Refresh queued behind the active pass" if queued else "Refresh triggered in background",
        }

    ran = await aggregator.refresh(body.trigger)
    logger.info("Foreground refresh (%s) finished: ran=%s", body.trigger, ran)
    return {
        "status": "ok",
        "mode": "foreground",
        "ran": ran,
        "aggregation": aggregator.snapshot(),
    }
