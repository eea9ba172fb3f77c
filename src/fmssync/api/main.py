"""FastAPI application factory."""
import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlmodel import SQLModel

from fmssync.api.routes import config as config_routes, sync as sync_routes
from fmssync.db.engine import get_engine
from fmssync.sync.orchestrator import SyncOrchestrator


def create_app(engine=None, orchestrator: Optional[SyncOrchestrator] = None) -> FastAPI:
    """
    Build and return the FastAPI app.

    Args:
        engine: Engine to use. Defaults to the module-level engine.
        orchestrator: Orchestrator serving the routes. Defaults to one
            built on the engine.
    """
    engine = engine if engine is not None else get_engine()
    orchestrator = orchestrator or SyncOrchestrator(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(engine)
        # Async event handlers run here even when a route publishes from a worker thread
        orchestrator.events.bind_loop(asyncio.get_running_loop())
        # Logs left open by a previous process block or resume their facility
        await orchestrator.restore_sessions()
        yield

    app = FastAPI(
        title="FMS Sync API",
        description="Facility management system tenant/unit sync",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    app.include_router(config_routes.router, prefix="/fms/config", tags=["config"])
    app.include_router(sync_routes.router, prefix="/fms", tags=["sync"])

    return app
