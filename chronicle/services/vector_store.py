"""
Vector store for memory embeddings.

On postgres with pgvector the ranking happens in SQL with the cosine
distance operator. Everywhere else vectors are stored as JSON and ranked
in-process with numpy.
"""

from __future__ import annotations

import uuid
from typing import Optional, Sequence

import numpy as np
from sqlalchemy import text

import chronicle.config as config
from chronicle.db import dialect_insert
from chronicle.models import Memory, MemoryEmbedding
from chronicle.timeutil import isoformat, utcnow


def _vector_search_enabled(db) -> bool:
    return (
        db.get_bind().dialect.name == "postgresql"
        and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"
    )


def _cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    query_vec = np.asarray(query, dtype=np.float64)
    query_norm = np.linalg.norm(query_vec)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, matrix @ query_vec / denom, 0.0)
    return scores


class VectorStore:
    """Sync repository; call from worker threads via asyncio.to_thread."""

    def upsert(
        self,
        db,
        memory_id: str,
        vector: Sequence[float],
        metadata: Optional[dict] = None,
        team_id: str = config.DEFAULT_TEAM_ID,
        model_version: str = config.EMBEDDING_MODEL,
    ) -> str:
        """Store the vector for a memory and return its stable handle."""
        if not vector:
            raise ValueError("vector must be non-empty")
        now = utcnow()
        values = {
            "id": str(uuid.uuid4()),
            "memory_id": memory_id,
            "team_id": team_id,
            "model_version": model_version,
            "embedding": [float(item) for item in vector],
            "metadata": metadata or {},
            "created_at": now,
            "updated_at": now,
        }
        stmt = dialect_insert(db, MemoryEmbedding).values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["memory_id"],
            set_={
                "team_id": stmt.excluded.team_id,
                "model_version": stmt.excluded.model_version,
                "embedding": stmt.excluded.embedding,
                "metadata": stmt.excluded["metadata"],
                "updated_at": stmt.excluded.updated_at,
            },
        )
        db.execute(stmt)
        handle = (
            db.query(MemoryEmbedding.id)
            .filter(MemoryEmbedding.memory_id == memory_id)
            .scalar()
        )
        return handle

    def delete(self, db, memory_id: str) -> bool:
        deleted = (
            db.query(MemoryEmbedding)
            .filter(MemoryEmbedding.memory_id == memory_id)
            .delete(synchronize_session=False)
        )
        return deleted > 0

    def search(
        self,
        db,
        vector: Sequence[float],
        team_id: Optional[str] = None,
        k: int = config.ASK_LIMIT_DEFAULT,
    ) -> list[dict]:
        """Rank stored memories by cosine similarity to ``vector``."""
        if _vector_search_enabled(db):
            return self._search_pgvector(db, vector, team_id, k)
        return self._search_in_process(db, vector, team_id, k)

    def _search_pgvector(self, db, vector, team_id, k) -> list[dict]:
        sql = text(
            """
            SELECT
                e.memory_id,
                m.title,
                m.type,
                m.description,
                m.created_at,
                1 - (e.embedding <=> cast(:embedding as vector)) as similarity
            FROM memory_embeddings e
            JOIN memories m ON m.id = e.memory_id
            WHERE (:team_id IS NULL OR e.team_id = :team_id)
            ORDER BY e.embedding <=> cast(:embedding as vector)
            LIMIT :limit
            """
        )
        rows = db.execute(
            sql,
            {"embedding": str([float(item) for item in vector]), "team_id": team_id, "limit": k},
        ).fetchall()
        return [
            {
                "memoryId": row.memory_id,
                "title": row.title,
                "type": row.type,
                "description": row.description,
                "createdAt": isoformat(row.created_at),
                "relevance": round(float(row.similarity), 4),
            }
            for row in rows
        ]

    def _search_in_process(self, db, vector, team_id, k) -> list[dict]:
        query = db.query(MemoryEmbedding, Memory).join(Memory, Memory.id == MemoryEmbedding.memory_id)
        if team_id:
            query = query.filter(MemoryEmbedding.team_id == team_id)
        rows = [
            (embedding, memory)
            for embedding, memory in query.all()
            if embedding.embedding and len(embedding.embedding) == len(vector)
        ]
        if not rows:
            return []
        matrix = np.asarray([embedding.embedding for embedding, _ in rows], dtype=np.float64)
        scores = _cosine_similarities(vector, matrix)
        order = np.argsort(-scores)[:k]
        results = []
        for index in order:
            _, memory = rows[int(index)]
            results.append({
                "memoryId": memory.id,
                "title": memory.title,
                "type": memory.type,
                "description": memory.description,
                "createdAt": isoformat(memory.created_at),
                "relevance": round(float(scores[int(index)]), 4),
            })
        return results


__all__ = ["VectorStore"]
