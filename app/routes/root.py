"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import chronicle.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "Chronicle",
        "version": "0.1.0",
        "description": "Team memory with AI enrichment and scheduled reactivation",
        "ai_provider": config.AI_PROVIDER,
        "embedding_model": config.EMBEDDING_MODEL,
        "endpoints": {
            "health": "/health",
            "memories": "/memories",
            "stats": "/memories/stats",
            "ask": "/ask",
            "audit": "/audit",
            "metrics": "/metrics",
            "mcp": "/mcp",
        },
    }
