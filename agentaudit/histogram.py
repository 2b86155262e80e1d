"""Timeline histogram bucketing for the global event view."""
from __future__ import annotations

import math
from typing import Iterable, Sequence

from agentaudit.date_utils import format_axis_time, parse_timestamp_ms
from agentaudit.models import GlobalEventEntry, Histogram

MIN_BUCKETS = 8
HISTOGRAM_BUCKET_OPTIONS = (24, 52, 96, 144)
DEFAULT_BUCKETS = 52
SPARK_DISPLAY_WIDTH = 96
_EMPTY_LABEL = "--:--"


def build_histogram(events: Iterable[GlobalEventEntry], bucket_count: int = DEFAULT_BUCKETS) -> Histogram:
    """Count events per equal-width time bucket between the oldest and newest."""
    buckets = max(MIN_BUCKETS, int(bucket_count))
    timestamps = [
        millis
        for millis in (parse_timestamp_ms(event.entry.timestamp) for event in events)
        if millis is not None
    ]
    counts = [0] * buckets
    if not timestamps:
        return Histogram(counts=counts, startLabel=_EMPTY_LABEL, endLabel=_EMPTY_LABEL, maxCount=0)

    min_ts = min(timestamps)
    max_ts = max(timestamps)
    span = max(max_ts - min_ts, 1)
    for millis in timestamps:
        normalized = (millis - min_ts) / span
        index = min(buckets - 1, max(0, math.floor(normalized * buckets)))
        counts[index] += 1

    return Histogram(
        counts=counts,
        startLabel=format_axis_time(min_ts),
        endLabel=format_axis_time(max_ts),
        maxCount=max(counts),
    )


def expand_for_display(counts: Sequence[int], width: int = SPARK_DISPLAY_WIDTH) -> list[int]:
    """Resample *counts* onto *width* columns, keeping each column's peak.

    Max-pooling keeps a single busy bucket visible when many buckets share a
    column.
    """
    if not counts or width <= 0:
        return []
    source = len(counts)
    if source == width:
        return list(counts)

    expanded: list[int] = []
    for column in range(width):
        start = math.floor(column / width * source)
        end = max(start + 1, math.floor((column + 1) / width * source))
        expanded.append(max(counts[start:end], default=0))
    return expanded
