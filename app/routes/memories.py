"""
HTTP surface for memories, questions, audit entries and counters.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse

import chronicle.config as config
from chronicle import audit
from chronicle.errors import NotFoundError, PersistenceError, TransientCapabilityError, ValidationError
from chronicle.services import analytics, counters, memory_service
from app.deps import get_db_session, get_pipeline


router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _not_found() -> JSONResponse:
    return _error(404, "Memory not found")


@router.post("/memories")
async def create_memory(payload: dict = Body(...), pipeline=Depends(get_pipeline)):
    try:
        memory = await memory_service.create_memory(pipeline, payload)
    except ValidationError as exc:
        return _error(400, str(exc))
    except PersistenceError as exc:
        config.logger.warning("memory_create_failed", extra={"error": str(exc)})
        return _error(503, "Storage unavailable")
    return JSONResponse(status_code=201, content=memory)


@router.get("/memories")
def list_memories(
    status: Optional[str] = None,
    team_id: Optional[str] = Query(None, alias="teamId"),
    db=Depends(get_db_session),
):
    try:
        return memory_service.list_memories(db, status=status, team_id=team_id)
    except ValidationError as exc:
        return _error(400, str(exc))


@router.get("/memories/stats")
def memory_stats(team_id: Optional[str] = Query(None, alias="teamId"), db=Depends(get_db_session)):
    return memory_service.memory_stats(db, team_id=team_id)


@router.get("/memories/{memory_id}")
def get_memory(memory_id: str, db=Depends(get_db_session)):
    try:
        return memory_service.get_memory(db, memory_id)
    except NotFoundError:
        return _not_found()


@router.patch("/memories/{memory_id}")
async def update_memory(memory_id: str, payload: dict = Body(...), pipeline=Depends(get_pipeline)):
    try:
        return await memory_service.update_memory(pipeline, memory_id, payload)
    except ValidationError as exc:
        return _error(400, str(exc))
    except NotFoundError:
        return _not_found()
    except PersistenceError as exc:
        config.logger.warning("memory_update_failed", extra={"memory_id": memory_id, "error": str(exc)})
        return _error(503, "Storage unavailable")


@router.delete("/memories/{memory_id}")
async def delete_memory(memory_id: str, pipeline=Depends(get_pipeline)):
    try:
        return await memory_service.delete_memory(pipeline, memory_id)
    except NotFoundError:
        return _not_found()
    except PersistenceError as exc:
        config.logger.warning("memory_delete_failed", extra={"memory_id": memory_id, "error": str(exc)})
        return _error(503, "Storage unavailable")


@router.post("/ask")
async def ask(payload: dict = Body(...), pipeline=Depends(get_pipeline)):
    try:
        return await memory_service.answer_question(
            pipeline,
            payload.get("question"),
            team_id=payload.get("teamId"),
            limit=payload.get("limit"),
        )
    except ValidationError as exc:
        return _error(400, str(exc))
    except (TransientCapabilityError, PersistenceError) as exc:
        config.logger.warning("ask_failed", extra={"error": str(exc)})
        return _error(503, "Failed to answer question")


@router.get("/audit")
def list_audit(
    entity_id: Optional[str] = Query(None, alias="memoryId"),
    action: Optional[str] = None,
    limit: int = 100,
    db=Depends(get_db_session),
):
    try:
        return audit.list_audit_entries(db, entity_id=entity_id, action=action, limit=limit)
    except ValueError as exc:
        return _error(400, str(exc))


@router.get("/metrics")
def today_metrics(db=Depends(get_db_session), pipeline=Depends(get_pipeline)):
    return analytics.daily_metrics(db, pipeline.clock())


@router.get("/metrics/{namespace}")
def list_metrics(namespace: str, limit: int = 30, db=Depends(get_db_session)):
    if namespace not in counters.NAMESPACE_FAMILIES:
        return _error(404, "Unknown metrics namespace")
    return counters.list_buckets(db, namespace, limit=limit)
