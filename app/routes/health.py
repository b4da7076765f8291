"""
Health and dependency endpoints.
"""

from __future__ import annotations

import asyncio
import os

from fastapi import APIRouter, HTTPException
from sqlalchemy import text

import chronicle.config as config
from chronicle.db import DB, _get_schema_revisions
from chronicle.pipeline import PipelineHolder


router = APIRouter()


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            ext_version = None
            pgvector_installed = True
            if config.DB_BACKEND == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
                ext_version = conn.execute(
                    text("SELECT extversion FROM pg_extension WHERE extname = 'vector'")
                ).scalar()
                pgvector_installed = bool(ext_version)
    except Exception as exc:
        return {"ok": False, "error": str(exc)}

    current_rev, head_rev = _get_schema_revisions(DB.engine)
    schema_ok = head_rev is None or current_rev == head_rev
    return {
        "ok": schema_ok,
        "pgvector_installed": pgvector_installed,
        "pgvector_version": ext_version,
        "schema_revision": current_rev,
        "schema_expected": head_rev,
        "schema_up_to_date": schema_ok,
    }


def _check_provider_health(pipeline) -> dict:
    if pipeline is None:
        return {"status": "unknown"}
    provider_status = pipeline.provider.status()
    breaker = provider_status.get("circuit_breaker") or {}
    if provider_status.get("provider") == "none":
        provider_status["status"] = "disabled"
    elif breaker.get("open"):
        provider_status["status"] = "cooldown"
    else:
        provider_status["status"] = "ready"
    return provider_status


def _check_scheduler_health(pipeline) -> dict:
    if pipeline is None:
        return {"status": "not_started"}
    try:
        scheduler_status = pipeline.scheduler.status()
    except Exception as exc:
        return {"status": "error", "error": str(exc)}
    scheduler_status["status"] = "running" if scheduler_status.get("running") else "stopped"
    scheduler_status["dead_letters"] = len(pipeline.bus.dead_letters)
    return scheduler_status


@router.get("/health")
async def health():
    """Health check endpoint."""
    pipeline = PipelineHolder.pipeline
    db_health = await asyncio.to_thread(_check_db_health)
    provider_status = _check_provider_health(pipeline)
    vector_required = config.DB_BACKEND == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"
    if not db_health.get("ok") or (vector_required and not db_health.get("pgvector_installed")):
        raise HTTPException(
            status_code=503,
            detail={"database": db_health, "provider": provider_status},
        )

    scheduler_status = await asyncio.to_thread(_check_scheduler_health, pipeline)
    return {
        "status": "healthy",
        "service": "Chronicle",
        "version": "0.1.0",
        "instance_id": os.environ.get("CHRONICLE_INSTANCE_ID", "chronicle-1"),
        "database": db_health,
        "provider": provider_status,
        "scheduler": scheduler_status,
    }
