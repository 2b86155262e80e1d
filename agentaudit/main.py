"""agentaudit FastAPI application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentaudit import config
from agentaudit.observability import initialize as initialize_observability, shutdown as shutdown_observability
from agentaudit.routers.api import agents_router, sessions_router
from agentaudit.routers.events import events_router
from agentaudit.services.aggregator import EventAggregator
from agentaudit.services.file_watcher import file_watcher

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("agentaudit")


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("agentaudit starting up (agents root: %s)", config.AGENTS_DIR)
    initialize_observability(app)

    aggregator = EventAggregator(config.AGENTS_DIR)
    app.state.aggregator = aggregator

    # Initial pass runs in the background so startup never waits on disk
    app.state.refresh_task = asyncio.create_task(aggregator.refresh(trigger="startup"))

    app.state.periodic_task = None
    if config.REFRESH_INTERVAL_SECONDS > 0:
        app.state.periodic_task = asyncio.create_task(
            aggregator.run_periodic(config.REFRESH_INTERVAL_SECONDS)
        )

    if config.WATCH_ENABLED:
        await file_watcher.start(aggregator, config.AGENTS_DIR)

    yield

    logger.info("agentaudit shutting down")
    await _cancel(app.state.refresh_task)
    await _cancel(app.state.periodic_task)
    await file_watcher.stop()
    shutdown_observability(app)


app = FastAPI(
    title="agentaudit API",
    description="Read-only API over AI agent session logs",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(agents_router)
app.include_router(sessions_router)
app.include_router(events_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    aggregator = getattr(app.state, "aggregator", None)
    return {
        "status": "ok",
        "aggregation": aggregator.status.value if aggregator else "idle",
        "watcher": "running" if file_watcher.is_running else "stopped",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("agentaudit.main:app", host=config.HOST, port=config.PORT)
