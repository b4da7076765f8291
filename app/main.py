"""
Standalone FastAPI app wiring for Chronicle.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

import chronicle.config as config
from chronicle.db import DB, init_db
from chronicle.mcp import mcp_stream_app, MCPRouteNormalizerASGI
from chronicle.pipeline import PipelineHolder, build_pipeline
from app.middleware import configure_middleware
from app.routes.health import router as health_router
from app.routes.memories import router as memories_router
from app.routes.root import router as root_router

SHUTDOWN_DRAIN_SECONDS = 10.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    init_db()
    pipeline = build_pipeline()
    PipelineHolder.pipeline = pipeline
    await pipeline.scheduler.rearm()
    if config.SCHEDULER_ENABLED:
        pipeline.scheduler.start()
    try:
        async with mcp_stream_app.lifespan(mcp_stream_app):
            yield
    finally:
        await pipeline.scheduler.stop()
        try:
            await pipeline.bus.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            config.logger.warning("event_bus_drain_timeout", extra={"pending": pipeline.bus.pending()})
        PipelineHolder.pipeline = None
        if DB.engine:
            DB.engine.dispose()


app = FastAPI(title="Chronicle", redirect_slashes=False, lifespan=lifespan)
configure_middleware(app)

# Health and root endpoints
app.include_router(health_router)
app.include_router(root_router)

app.include_router(memories_router)

app.mount("/mcp/", mcp_stream_app)


# =============================================================================
# ASGI Application (module-level for production deployment)
# =============================================================================

asgi_app = MCPRouteNormalizerASGI(app)


if __name__ == "__main__":
    import uvicorn

    config.logger.info("Chronicle starting...")
    uvicorn.run(asgi_app, host=os.environ.get("HOST", "0.0.0.0"), port=int(os.environ.get("PORT", "8080")))
