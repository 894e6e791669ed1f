"""Tests for similarity search scoping, ranking and thresholds."""

import math
import random

import pytest

from docqa.errors import ValidationError, VectorIndexError
from docqa.models import DocumentStatus
from docqa.services.store import new_document, utcnow
from docqa.services.vector_index import MemoryVectorIndex, Passage, PgVectorIndex

DIM = 4


def unit(angle: float):
    """Vector at ``angle`` radians from the x axis; cosine to [1, 0, 0, 0] is cos(angle)."""
    return [math.cos(angle), math.sin(angle), 0.0, 0.0]


def passages(vectors):
    return [Passage(chunk_index=i, page_number=1, tokens=5, content=f"passage {i}", embedding=v)
            for i, v in enumerate(vectors)]


@pytest.fixture
def index(document_store):
    return MemoryVectorIndex(document_store, DIM, max_top_k=10)


async def add_document(store, index, owner="owner-1", status=DocumentStatus.COMPLETED, vectors=()):
    doc = new_document(owner, "Doc", "doc.pdf", 100, "pdfs/key")
    doc.status = status
    await store.create(doc)
    await index.insert(doc.id, passages(list(vectors)))
    return doc


class TestSearch:
    async def test_results_sorted_thresholded_and_bounded(self, document_store, index):
        rng = random.Random(7)
        vectors = [unit(rng.uniform(0, math.pi)) for _ in range(40)]
        await add_document(document_store, index, vectors=vectors)
        for top_k in (1, 3, 5, 10, 25):
            matches = await index.search_similar(unit(0), owner_id="owner-1", top_k=top_k, min_similarity=0.3)
            sims = [m.similarity for m in matches]
            assert sims == sorted(sims, reverse=True)
            assert all(s >= 0.3 for s in sims)
            assert len(matches) <= min(top_k, 10)

    async def test_threshold_applies_after_ranking(self, document_store, index):
        # one close passage, the rest below the threshold
        await add_document(document_store, index, vectors=[unit(0.1)] + [unit(1.5)] * 5)
        matches = await index.search_similar(unit(0), owner_id="owner-1", top_k=3, min_similarity=0.5)
        assert len(matches) == 1
        assert matches[0].similarity == pytest.approx(math.cos(0.1), rel=1e-5)

    async def test_scoped_to_owner_status_and_deletion(self, document_store, index):
        mine = await add_document(document_store, index, vectors=[unit(0)])
        await add_document(document_store, index, owner="someone-else", vectors=[unit(0)])
        await add_document(document_store, index, status=DocumentStatus.PROCESSING, vectors=[unit(0)])
        deleted = await add_document(document_store, index, vectors=[unit(0)])
        deleted.deleted_at = utcnow()

        matches = await index.search_similar(unit(0), owner_id="owner-1")
        assert [m.document_id for m in matches] == [mine.id]

    async def test_single_document_filter(self, document_store, index):
        first = await add_document(document_store, index, vectors=[unit(0), unit(0.2)])
        await add_document(document_store, index, vectors=[unit(0)])
        matches = await index.search_similar(unit(0), owner_id="owner-1", document_id=first.id)
        assert {m.document_id for m in matches} == {first.id}
        assert [m.chunk_index for m in matches] == [0, 1]
        assert matches[0].document_title == "Doc"

    async def test_invalid_top_k(self, index):
        with pytest.raises(ValidationError):
            await index.search_similar(unit(0), owner_id="owner-1", top_k=0)

    async def test_query_dimension_mismatch(self, index):
        with pytest.raises(VectorIndexError):
            await index.search_similar([1.0, 0.0], owner_id="owner-1")


class TestWrites:
    async def test_insert_rejects_mixed_dimensions(self, document_store, index):
        doc = await add_document(document_store, index)
        with pytest.raises(VectorIndexError, match="dimension"):
            await index.insert(doc.id, passages([unit(0), [1.0, 0.0, 0.0]]))
        assert await index.count(doc.id) == 0

    async def test_count_delete_and_total(self, document_store, index):
        first = await add_document(document_store, index, vectors=[unit(0)] * 3)
        second = await add_document(document_store, index, vectors=[unit(1)] * 2)
        assert await index.count(first.id) == 3
        assert await index.total_vectors() == 5
        assert await index.delete_by_document(first.id) == 3
        assert await index.count(first.id) == 0
        assert await index.count(second.id) == 2

    async def test_pgvector_index_checks_dimension_before_writing(self):
        index = PgVectorIndex(session_factory=None, dimension=DIM)
        with pytest.raises(VectorIndexError):
            await index.insert(new_document("o", "t", "f.pdf", 1, "k").id, passages([[1.0, 2.0]]))
        with pytest.raises(VectorIndexError):
            await index.search_similar([1.0], owner_id="o")
