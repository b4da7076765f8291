"""
Dependency helpers for the FastAPI app.
"""

from __future__ import annotations

from typing import Generator

from chronicle.db import DB
from chronicle.pipeline import Pipeline, PipelineHolder


def get_db_session() -> Generator:
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_pipeline() -> Pipeline:
    if PipelineHolder.pipeline is None:
        raise RuntimeError("Pipeline not initialized")
    return PipelineHolder.pipeline
