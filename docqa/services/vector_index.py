"""Passage vectors and cosine similarity search.

Search is scoped to the owner's non-deleted, COMPLETED documents. Twice the
clamped ``top_k`` rows are fetched in distance order and ``min_similarity`` is
applied afterwards, so a threshold never changes which rows the index scans.
"""

import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import ValidationError, VectorIndexError
from ..models import Chunk, Document, DocumentStatus
from .store import MemoryDocumentStore

logger = structlog.get_logger(__name__)

CANDIDATE_FACTOR = 2


@dataclass
class Passage:
    chunk_index: int
    page_number: Optional[int]
    tokens: int
    content: str
    embedding: List[float]


@dataclass
class SimilarityMatch:
    chunk_id: uuid.UUID
    document_id: uuid.UUID
    document_title: str
    chunk_index: int
    page_number: Optional[int]
    content: str
    tokens: int
    similarity: float


def _limit(top_k: int, max_top_k: int) -> int:
    if top_k < 1:
        raise ValidationError("top_k must be at least 1")
    return min(top_k, max_top_k)


def _apply_threshold(matches: List[SimilarityMatch], min_similarity: float, limit: int) -> List[SimilarityMatch]:
    return [m for m in matches if m.similarity >= min_similarity][:limit]


class PgVectorIndex:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], dimension: int,
                 batch_size: int = 50, max_top_k: int = 10):
        self.session_factory = session_factory
        self.dimension = dimension
        self.batch_size = batch_size
        self.max_top_k = max_top_k

    def _check_dimensions(self, passages: List[Passage]) -> None:
        for p in passages:
            if len(p.embedding) != self.dimension:
                raise VectorIndexError(
                    f"Embedding dimension {len(p.embedding)} does not match index dimension {self.dimension}"
                )

    async def insert(self, document_id: uuid.UUID, passages: List[Passage]) -> int:
        """Write all passages in one transaction, flushed in batches of ``batch_size``."""
        self._check_dimensions(passages)
        try:
            async with self.session_factory() as session:
                for start in range(0, len(passages), self.batch_size):
                    batch = passages[start:start + self.batch_size]
                    session.add_all([
                        Chunk(
                            id=uuid.uuid4(),
                            document_id=document_id,
                            chunk_index=p.chunk_index,
                            page_number=p.page_number,
                            tokens=p.tokens,
                            content=p.content,
                            embedding=p.embedding,
                        )
                        for p in batch
                    ])
                    await session.flush()
                await session.commit()
        except SQLAlchemyError as e:
            raise VectorIndexError(f"Failed to store passages: {e}") from e
        logger.info("passages_indexed", document_id=str(document_id), passages=len(passages))
        return len(passages)

    async def search_similar(
        self,
        query_vector: List[float],
        *,
        owner_id: str,
        document_id: Optional[uuid.UUID] = None,
        top_k: int = 5,
        min_similarity: float = 0.3,
    ) -> List[SimilarityMatch]:
        if len(query_vector) != self.dimension:
            raise VectorIndexError(
                f"Query dimension {len(query_vector)} does not match index dimension {self.dimension}"
            )
        limit = _limit(top_k, self.max_top_k)
        distance = Chunk.embedding.cosine_distance(query_vector).label("distance")
        stmt = (
            select(Chunk, Document.title, distance)
            .join(Document, Document.id == Chunk.document_id)
            .where(
                Document.owner_id == owner_id,
                Document.deleted_at.is_(None),
                Document.status == DocumentStatus.COMPLETED,
            )
        )
        if document_id is not None:
            stmt = stmt.where(Chunk.document_id == document_id)
        stmt = stmt.order_by(distance).limit(limit * CANDIDATE_FACTOR)
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise VectorIndexError(f"Similarity search failed: {e}") from e

        matches = [
            SimilarityMatch(
                chunk_id=chunk.id,
                document_id=chunk.document_id,
                document_title=title,
                chunk_index=chunk.chunk_index,
                page_number=chunk.page_number,
                content=chunk.content,
                tokens=chunk.tokens,
                similarity=1.0 - float(dist),
            )
            for chunk, title, dist in rows
        ]
        return _apply_threshold(matches, min_similarity, limit)

    async def delete_by_document(self, document_id: uuid.UUID) -> int:
        try:
            async with self.session_factory() as session:
                res = await session.execute(delete(Chunk).where(Chunk.document_id == document_id))
                await session.commit()
        except SQLAlchemyError as e:
            raise VectorIndexError(f"Failed to delete passages: {e}") from e
        return res.rowcount or 0

    async def count(self, document_id: uuid.UUID) -> int:
        try:
            async with self.session_factory() as session:
                total = await session.scalar(
                    select(func.count()).select_from(Chunk).where(Chunk.document_id == document_id)
                )
        except SQLAlchemyError as e:
            raise VectorIndexError(f"Failed to count passages: {e}") from e
        return int(total or 0)

    async def total_vectors(self) -> int:
        try:
            async with self.session_factory() as session:
                total = await session.scalar(select(func.count()).select_from(Chunk))
        except SQLAlchemyError as e:
            raise VectorIndexError(f"Failed to count passages: {e}") from e
        return int(total or 0)


class MemoryVectorIndex:
    """numpy brute-force index; document scoping is read from a MemoryDocumentStore."""

    def __init__(self, documents: MemoryDocumentStore, dimension: int, max_top_k: int = 10):
        self.documents = documents
        self.dimension = dimension
        self.max_top_k = max_top_k
        self._passages: Dict[uuid.UUID, List[tuple]] = {}

    async def insert(self, document_id: uuid.UUID, passages: List[Passage]) -> int:
        for p in passages:
            if len(p.embedding) != self.dimension:
                raise VectorIndexError(
                    f"Embedding dimension {len(p.embedding)} does not match index dimension {self.dimension}"
                )
        rows = [(uuid.uuid4(), p, np.asarray(p.embedding, dtype=np.float32)) for p in passages]
        self._passages.setdefault(document_id, []).extend(rows)
        return len(rows)

    async def search_similar(
        self,
        query_vector: List[float],
        *,
        owner_id: str,
        document_id: Optional[uuid.UUID] = None,
        top_k: int = 5,
        min_similarity: float = 0.3,
    ) -> List[SimilarityMatch]:
        if len(query_vector) != self.dimension:
            raise VectorIndexError(
                f"Query dimension {len(query_vector)} does not match index dimension {self.dimension}"
            )
        limit = _limit(top_k, self.max_top_k)

        candidates = []
        for doc_id, rows in self._passages.items():
            if document_id is not None and doc_id != document_id:
                continue
            doc = self.documents.lookup(doc_id)
            if (doc is None or doc.owner_id != owner_id or doc.deleted_at is not None
                    or doc.status != DocumentStatus.COMPLETED):
                continue
            candidates.extend((doc, row) for row in rows)
        if not candidates:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        matrix = np.stack([row[2] for _, row in candidates])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            similarities = np.where(norms > 0, matrix @ query / norms, 0.0)
        order = np.argsort(-similarities, kind="stable")[: limit * CANDIDATE_FACTOR]

        matches = []
        for i in order:
            doc, (chunk_id, passage, _) = candidates[i]
            matches.append(SimilarityMatch(
                chunk_id=chunk_id,
                document_id=doc.id,
                document_title=doc.title,
                chunk_index=passage.chunk_index,
                page_number=passage.page_number,
                content=passage.content,
                tokens=passage.tokens,
                similarity=float(similarities[i]),
            ))
        return _apply_threshold(matches, min_similarity, limit)

    async def delete_by_document(self, document_id: uuid.UUID) -> int:
        return len(self._passages.pop(document_id, []))

    async def count(self, document_id: uuid.UUID) -> int:
        return len(self._passages.get(document_id, []))

    async def total_vectors(self) -> int:
        return sum(len(rows) for rows in self._passages.values())
