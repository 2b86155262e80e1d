"""Observability helpers."""

from agentaudit.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_merge,
    record_parser_failure,
    record_session_load,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_merge",
    "record_parser_failure",
    "record_session_load",
]
