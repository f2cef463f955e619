from __future__ import annotations

import logging

from fastapi import FastAPI

from clipper.api.v1.router import api_v1_router
from clipper.core.config import settings
from clipper.workers.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the operator API.

    When ``runtime`` is given it is used as-is and left open on shutdown;
    otherwise one is built from settings at startup and closed on shutdown.
    """
    app = FastAPI(
        title="Clipper Task API",
        version="0.1.0",
    )
    app.state.runtime = runtime
    app.state.db = runtime.db if runtime is not None else None

    # -----------------------------------------------------------------------
    # Routers
    # -----------------------------------------------------------------------
    app.include_router(api_v1_router, prefix="/api/v1")

    # -----------------------------------------------------------------------
    # Lifecycle events
    # -----------------------------------------------------------------------
    @app.on_event("startup")
    async def on_startup() -> None:
        if app.state.runtime is None:
            owned = build_runtime(settings)
            await owned.db.create_all()
            app.state.runtime = owned
            app.state.db = owned.db
            app.state.owns_runtime = True
        logger.info("Clipper API started")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        if getattr(app.state, "owns_runtime", False):
            await app.state.runtime.close()
        logger.info("Clipper API stopped")

    # -----------------------------------------------------------------------
    # Health check
    # -----------------------------------------------------------------------
    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
