"""
FastAPI server for health, monitoring and the protocol endpoints.

Provides:
- Health check endpoint
- Database stats endpoint
- Manual pass trigger
- Scheduler status
- Protocol stream/command endpoints (see ``protocol.routes``)
"""

from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, BackgroundTasks, Request
from pydantic import BaseModel

from .config import get_settings
from .db import Database
from .ingest import IngestAbortedError, IngestionRunner
from .logging_conf import get_logger, setup_logging
from .protocol import SessionRegistry, router as protocol_router
from .protocol.routes import get_db
from .scheduler import IngestScheduler

logger = get_logger(__name__)


# Pydantic models for API
class HealthResponse(BaseModel):
    status: str
    timestamp: str
    live_sessions: int
    version: str = "1.0.0"


class StatsResponse(BaseModel):
    total_items: int
    total_queue_entries: int
    total_decisions: int
    total_subscribers: int
    total_subscriptions: int
    total_runs: int
    successful_runs: int


class RunResponse(BaseModel):
    status: str
    message: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()

    setup_logging(
        level=settings.log_level,
        json_output=settings.log_json,
    )

    logger.info("server_starting")

    if settings.enable_scheduler:
        app.state.scheduler = IngestScheduler(db=app.state.database)
        app.state.scheduler.start()
        logger.info("scheduler_enabled")

    yield

    # Live streams end with the process; agents must reconnect
    app.state.sessions.close_all()

    if app.state.scheduler:
        app.state.scheduler.stop()

    logger.info("server_stopped")


def create_app(database: Optional[Database] = None) -> FastAPI:
    """
    Build the application.

    Args:
        database: Database to use (defaults to the shared instance on first use)
    """
    app = FastAPI(
        title="Idea Queue",
        description="Feed fan-out service with an agent protocol endpoint",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.database = database
    app.state.sessions = SessionRegistry()
    app.state.scheduler = None

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint."""
        return HealthResponse(
            status="ok",
            timestamp=datetime.now(timezone.utc).isoformat(),
            live_sessions=len(request.app.state.sessions),
        )

    @app.get("/stats", response_model=StatsResponse)
    async def get_stats(request: Request):
        """Get database statistics."""
        return StatsResponse(**get_db(request).get_stats())

    @app.post("/run", response_model=RunResponse)
    async def trigger_run(request: Request, background_tasks: BackgroundTasks):
        """Trigger a full ingestion pass in the background."""
        db = get_db(request)

        async def run_in_background():
            try:
                report = await IngestionRunner(db=db).run_pass()
                logger.info("manual_pass_completed", run_id=report.run_id, new_items=report.new_items)
            except IngestAbortedError as e:
                logger.error("manual_pass_failed", run_id=e.run_id, error=str(e))

        background_tasks.add_task(run_in_background)

        return RunResponse(
            status="started",
            message="Ingestion pass started in background",
        )

    @app.get("/scheduler")
    async def scheduler_status(request: Request):
        """Get scheduler status."""
        scheduler = request.app.state.scheduler
        if scheduler is None:
            return {"enabled": False, "next_run": None}

        next_run = scheduler.get_next_run()
        return {
            "enabled": True,
            "next_run": next_run.isoformat() if next_run else None,
        }

    app.include_router(protocol_router)
    return app


app = create_app()


def run_server(
    host: str = "0.0.0.0",
    port: Optional[int] = None,
    with_scheduler: bool = False,
):
    """
    Run the FastAPI server.

    Args:
        host: Host to bind to
        port: Port to bind to (defaults to settings.port)
        with_scheduler: Whether to enable the scheduler
    """
    import os
    import uvicorn

    if with_scheduler:
        os.environ["ENABLE_SCHEDULER"] = "true"
        get_settings.cache_clear()

    settings = get_settings()
    port = port or settings.port

    logger.info("starting_server", host=host, port=port)

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
    )
