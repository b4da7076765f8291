"""
MCP server wiring and tool registration.
"""

from __future__ import annotations

import asyncio
from functools import wraps
from typing import Awaitable, Callable, Optional

from fastmcp import FastMCP

import chronicle.config as config
from chronicle.db import session_scope
from chronicle.errors import NotFoundError, PersistenceError, TransientCapabilityError, ValidationError
from chronicle.pipeline import PipelineHolder
from chronicle.services import memory_service

READ_ONLY_TOOL_ANNOTATIONS = {"readOnlyHint": True}
DESTRUCTIVE_TOOL_ANNOTATIONS = {"destructiveHint": True}

mcp = FastMCP("Chronicle")


def _pipeline():
    if PipelineHolder.pipeline is None:
        raise RuntimeError("Pipeline not initialized")
    return PipelineHolder.pipeline


def _tool_error_payload(tool_name: str, exc: Exception, error_type: str, field: str) -> dict:
    return {
        "status": "error",
        "error_type": error_type,
        "tool": tool_name,
        "field": field,
        "message": str(exc),
    }


def service_tool(fn: Callable[..., Awaitable[dict]]) -> Callable[..., Awaitable[dict]]:
    """Turn terminal service errors into structured tool results."""
    @wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except ValidationError as exc:
            config.logger.info(
                "tool_validation_error",
                extra={"tool": fn.__name__, "field": exc.field, "error_type": exc.error_type},
            )
            return _tool_error_payload(fn.__name__, exc, "validation_error", exc.field)
        except NotFoundError as exc:
            return _tool_error_payload(fn.__name__, exc, "not_found", "memoryId")
        except TransientCapabilityError as exc:
            config.logger.warning("tool_provider_unavailable", extra={"tool": fn.__name__, "error": str(exc)})
            return _tool_error_payload(fn.__name__, exc, "unavailable", "provider")
        except PersistenceError as exc:
            config.logger.warning("tool_storage_unavailable", extra={"tool": fn.__name__, "error": str(exc)})
            return _tool_error_payload(fn.__name__, exc, "unavailable", "storage")
    return wrapper


def _read(fn, *args, **kwargs):
    with session_scope() as db:
        return fn(db, *args, **kwargs)


@mcp.tool()
@service_tool
async def memory_log(
    title: str,
    description: str,
    type: str,
    trigger_type: str = "none",
    trigger_date: Optional[str] = None,
    team_id: Optional[str] = None,
    tags: Optional[list[str]] = None,
    severity: Optional[str] = None,
) -> dict:
    """Record a decision, failure, context note or future reminder."""
    payload = {"title": title, "description": description, "type": type, "triggerType": trigger_type}
    if trigger_date is not None:
        payload["triggerDate"] = trigger_date
    if team_id is not None:
        payload["teamId"] = team_id
    if tags is not None:
        payload["tags"] = tags
    if severity is not None:
        payload["severity"] = severity
    memory = await memory_service.create_memory(_pipeline(), payload)
    return {"status": "stored", "memory": memory}


@mcp.tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
@service_tool
async def memory_get(memory_id: str) -> dict:
    memory = await asyncio.to_thread(_read, memory_service.get_memory, memory_id)
    return {"status": "ok", "memory": memory}


@mcp.tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
@service_tool
async def memory_list(status: Optional[str] = None, team_id: Optional[str] = None) -> dict:
    memories = await asyncio.to_thread(_read, memory_service.list_memories, status, team_id)
    return {"status": "ok", "count": len(memories), "memories": memories}


@mcp.tool()
@service_tool
async def memory_update(memory_id: str, updates: dict) -> dict:
    """Patch a memory. Status may only be set to 'archived'."""
    memory = await memory_service.update_memory(_pipeline(), memory_id, updates)
    return {"status": "updated", "memory": memory}


@mcp.tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
@service_tool
async def memory_delete(memory_id: str) -> dict:
    result = await memory_service.delete_memory(_pipeline(), memory_id)
    return {"status": "deleted", **result}


@mcp.tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
@service_tool
async def memory_stats(team_id: Optional[str] = None) -> dict:
    stats = await asyncio.to_thread(_read, memory_service.memory_stats, team_id)
    return {"status": "ok", "stats": stats}


@mcp.tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
@service_tool
async def memory_ask(question: str, team_id: Optional[str] = None, limit: int = config.ASK_LIMIT_DEFAULT) -> dict:
    """Answer a question from the team's stored memories."""
    result = await memory_service.answer_question(_pipeline(), question, team_id=team_id, limit=limit)
    return {"status": "ok", **result}


mcp_stream_app = mcp.http_app(
    path="/",
    transport="streamable-http",
    stateless_http=True,
    json_response=True,
)


class MCPRouteNormalizerASGI:
    """Pure ASGI middleware - no response buffering, SSE-safe."""
    def __init__(self, wrapped_app):
        self.wrapped_app = wrapped_app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope.get("path") == "/mcp":
            scope = dict(scope)
            scope["path"] = "/mcp/"
        await self.wrapped_app(scope, receive, send)
