"""agentaudit configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


# Log root: one subdirectory per agent, each holding a sessions/ folder of JSONL files
AGENTS_DIR = Path(os.getenv("AGENTAUDIT_AGENTS_DIR", str(Path.home() / ".openclaw" / "agents"))).expanduser()
SESSIONS_SUBDIR = os.getenv("AGENTAUDIT_SESSIONS_SUBDIR", "sessions")
SESSION_FILE_SUFFIX = ".jsonl"
DELETED_MARKER = ".deleted."
INCLUDE_DELETED_SESSIONS = _env_bool("AGENTAUDIT_INCLUDE_DELETED", False)

# Aggregation
CONTEXT_WINDOW_TOKENS = _env_int("AGENTAUDIT_CONTEXT_WINDOW_TOKENS", 262000)
FUTURE_TOLERANCE_SECONDS = _env_int("AGENTAUDIT_FUTURE_TOLERANCE_SECONDS", 300)
REFRESH_INTERVAL_SECONDS = _env_int("AGENTAUDIT_REFRESH_INTERVAL_SECONDS", 0)
WATCH_ENABLED = _env_bool("AGENTAUDIT_WATCH_ENABLED", True)

# Observability
OTEL_ENABLED = _env_bool("AGENTAUDIT_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("AGENTAUDIT_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("AGENTAUDIT_OTEL_SERVICE_NAME", "agentaudit")
PROM_PORT = _env_int("AGENTAUDIT_PROM_PORT", 0)

# Server settings
HOST = os.getenv("AGENTAUDIT_HOST", "0.0.0.0")
PORT = int(os.getenv("AGENTAUDIT_PORT", "8000"))

# CORS
FRONTEND_ORIGIN = os.getenv("AGENTAUDIT_FRONTEND_ORIGIN", "http://localhost:3000")
