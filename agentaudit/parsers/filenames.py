"""File-name conventions for session logs."""
from __future__ import annotations

import re

from agentaudit import config

_TOPIC_ID_PATTERN = re.compile(r"-topic-([a-f0-9-]+)")


def is_deleted_file(filename: str) -> bool:
    return config.DELETED_MARKER in filename


def extract_topic_id(filename: str) -> str | None:
    match = _TOPIC_ID_PATTERN.search(filename)
    return match.group(1) if match else None


def is_session_file(filename: str) -> bool:
    return filename.endswith(config.SESSION_FILE_SUFFIX)
