"""Rewind Sync FastAPI host: wires the DB, ingest engine and sync service."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from rewind import config
from rewind.db import connection, migrations
from rewind.db.ingest_engine import IngestEngine
from rewind.exceptions import RewindError
from rewind.routers.etl import etl_router
from rewind.services.sync_orchestrator import build_orchestrator

settings = config.load_settings()
logging.basicConfig(level=config.log_level_value(settings.logLevel))
logger = logging.getLogger("rewind")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Rewind Sync starting up")

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Initialize sync service
    orchestrator = build_orchestrator(IngestEngine(db, settings.dataPath), settings, source="api")
    app.state.sync_orchestrator = orchestrator

    # 4. Start watching / polling
    if config.AUTO_SYNC:
        try:
            await orchestrator.start()
        except RewindError as e:
            logger.error("Automatic sync disabled: %s", e)

    yield

    logger.info("Rewind Sync shutting down")
    await orchestrator.stop()
    await connection.close_connection()


app = FastAPI(
    title="Rewind Sync API",
    description="Transcript ingest and sync service",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(etl_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    orchestrator = getattr(app.state, "sync_orchestrator", None)
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "sync": "running" if orchestrator and orchestrator.is_running else "stopped",
    }
