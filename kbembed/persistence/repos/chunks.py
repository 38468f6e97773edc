from __future__ import annotations

from typing import Sequence

from sqlalchemy import delete, func, insert, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from kbembed.domain.models import SourceChunk
from kbembed.domain.records import ChunkMatch, NewChunk


# Cosine distance via pgvector; the query vector is bound as a "[v1,...]" literal.
_MATCH_SQL = text(
    """
    SELECT c.id, c.source_id, c.chunk_index, c.content, c.metadata,
           1 - (c.embedding <=> CAST(:embedding AS vector)) AS similarity
    FROM source_chunks AS c
    WHERE c.project_id = :project_id
    ORDER BY c.embedding <=> CAST(:embedding AS vector), c.id
    LIMIT :match_count
    """
)


def to_vector_literal(embedding: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(value)) for value in embedding) + "]"


async def match_source_chunks(
    session: AsyncSession,
    project_id: str,
    embedding: Sequence[float],
    count: int,
) -> list[ChunkMatch]:
    result = await session.execute(
        _MATCH_SQL,
        {
            "embedding": to_vector_literal(embedding),
            "project_id": project_id,
            "match_count": max(1, int(count)),
        },
    )
    return [
        ChunkMatch(
            id=int(row.id),
            source_id=row.source_id,
            chunk_index=int(row.chunk_index),
            content=row.content,
            metadata=dict(row.metadata or {}),
            similarity=float(row.similarity),
        )
        for row in result
    ]


async def count_project_chunks_excluding_source(
    session: AsyncSession, project_id: str, source_id: str
) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(SourceChunk)
        .where(SourceChunk.project_id == project_id, SourceChunk.source_id != source_id)
    )
    return int(result.scalar() or 0)


async def replace_source_chunks(
    session: AsyncSession,
    project_id: str,
    source_id: str,
    chunks: Sequence[NewChunk],
) -> None:
    # Caller owns the transaction; delete and insert must commit together.
    await session.execute(delete(SourceChunk).where(SourceChunk.source_id == source_id))
    if not chunks:
        return
    await session.execute(
        insert(SourceChunk),
        [
            {
                "project_id": project_id,
                "source_id": source_id,
                "chunk_index": chunk.chunk_index,
                "content": chunk.content,
                "metadata_json": chunk.metadata,
                "embedding": chunk.embedding,
            }
            for chunk in chunks
        ],
    )
