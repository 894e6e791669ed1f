"""Tests for the document lifecycle: upload, background ingestion, listing and deletion."""

from datetime import timedelta

import fitz
import pytest

from docqa.errors import EmbeddingError, NotFoundError, ProviderError, QuotaExceededError, ValidationError
from docqa.models import DocumentStatus
from docqa.services.documents import DocumentService, derive_title
from docqa.services.embedding import EmbeddingClient
from docqa.services.store import new_document, utcnow
from docqa.services.vector_index import MemoryVectorIndex

from .conftest import FakeEmbeddingProvider, make_pdf, words


def blank_pdf() -> bytes:
    doc = fitz.open()
    doc.new_page()
    data = doc.tobytes()
    doc.close()
    return data


class FailingPublisher:
    async def publish(self, event_type, payload):
        raise RuntimeError("analytics down")


class TestUpload:
    async def test_upload_returns_processing_then_completes(self, service, object_store, vector_index, sample_pdf):
        doc = await service.upload("owner-1", "quarterly_report-2024.pdf", sample_pdf)
        assert doc.status == DocumentStatus.PROCESSING
        assert doc.title == "quarterly report 2024"
        assert doc.file_size == len(sample_pdf)
        assert object_store.puts == [doc.storage_key]
        assert doc.storage_key.startswith("pdfs/owner-1/")
        assert doc.storage_key.endswith("-quarterly_report-2024.pdf")

        await service.drain()
        stored, chunks_count = await service.get(doc.id, "owner-1")
        assert stored.status == DocumentStatus.COMPLETED
        assert stored.page_count == 1
        assert stored.processed_at is not None
        assert stored.error_message is None
        assert chunks_count == await vector_index.count(doc.id)

    async def test_three_paragraph_pdf_yields_predicted_chunks(self, service, vector_index, sample_pdf):
        doc = await service.upload("owner-1", "sample.pdf", sample_pdf, title="Sample")
        await service.drain()
        assert doc.title == "Sample"
        # 30 tokens per paragraph, 10 tokens of overlap at max 50: [30, 41, 41]
        assert await vector_index.count(doc.id) == 3
        rows = vector_index._passages[doc.id]
        assert [p.tokens for _, p, _ in rows] == [30, 41, 41]
        assert [p.chunk_index for _, p, _ in rows] == [0, 1, 2]
        assert all(p.page_number == 1 for _, p, _ in rows)

    async def test_quota_rejected_before_any_write(self, service, document_store, object_store, provider, vector_index, sample_pdf):
        for i in range(3):
            await document_store.create(new_document("owner-1", f"d{i}", f"d{i}.pdf", 10, f"k{i}"))
        with pytest.raises(QuotaExceededError):
            await service.upload("owner-1", "one-more.pdf", sample_pdf)
        assert object_store.puts == []
        assert provider.calls == []
        assert await vector_index.total_vectors() == 0
        assert await document_store.count_active("owner-1") == 3

    async def test_deleted_documents_free_quota(self, service, document_store, sample_pdf):
        docs = [new_document("owner-1", f"d{i}", f"d{i}.pdf", 10, f"k{i}") for i in range(3)]
        for d in docs:
            await document_store.create(d)
        await service.delete(docs[0].id, "owner-1")
        await service.upload("owner-1", "fits.pdf", sample_pdf)
        await service.drain()

    @pytest.mark.parametrize("file_name,content,content_type,message", [
        ("a.pdf", b"", "application/pdf", "empty"),
        ("a.pdf", b"%PDF" + b"0" * 2048, "application/pdf", "too large"),
        ("a.docx", b"PK\x03\x04", "application/vnd.openxmlformats", "Unsupported file type"),
        ("a.pdf", b"PK\x03\x04 zip pretending", "application/pdf", "signature"),
    ])
    async def test_validation(self, document_store, vector_index, object_store, embedder, counter,
                              file_name, content, content_type, message):
        service = DocumentService(document_store, vector_index, object_store, embedder, counter, max_file_size=1024)
        with pytest.raises(ValidationError, match=message):
            await service.upload("owner-1", file_name, content, content_type=content_type)
        assert object_store.puts == []
        assert document_store.documents == {}

    async def test_event_publisher_failures_are_ignored(self, document_store, vector_index, object_store,
                                                        embedder, counter, sample_pdf):
        service = DocumentService(document_store, vector_index, object_store, embedder, counter,
                                  events=FailingPublisher(), chunk_max_tokens=50)
        doc = await service.upload("owner-1", "a.pdf", sample_pdf)
        await service.drain()
        await service.delete(doc.id, "owner-1")
        await service.drain()


class TestFailures:
    async def _status(self, service, doc):
        await service.drain()
        stored, chunks = await service.get(doc.id, doc.owner_id)
        return stored, chunks

    async def test_corrupt_pdf_marks_failed(self, service):
        doc = await service.upload("owner-1", "broken.pdf", b"%PDF-1.4\nthis is not really a pdf")
        stored, chunks = await self._status(service, doc)
        assert stored.status == DocumentStatus.FAILED
        assert stored.error_message
        assert chunks == 0

    async def test_pdf_without_text_marks_failed(self, service):
        doc = await service.upload("owner-1", "blank.pdf", blank_pdf())
        stored, _ = await self._status(service, doc)
        assert stored.status == DocumentStatus.FAILED
        assert stored.error_message == "no extractable text"

    async def test_embedding_failure_marks_failed(self, document_store, vector_index, object_store, counter, sample_pdf):
        provider = FakeEmbeddingProvider(failures=[ProviderError("invalid api key", 401)])
        embedder = EmbeddingClient(provider, counter=counter)
        service = DocumentService(document_store, vector_index, object_store, embedder, counter, chunk_max_tokens=50)
        doc = await service.upload("owner-1", "a.pdf", sample_pdf)
        stored, chunks = await self._status(service, doc)
        assert stored.status == DocumentStatus.FAILED
        assert "invalid api key" in stored.error_message
        assert chunks == 0
        assert len(provider.calls) == 1

    async def test_index_write_failure_never_completes(self, document_store, object_store, embedder, counter, sample_pdf):
        # provider vectors have 16 dimensions, the index expects 8
        index = MemoryVectorIndex(document_store, 8)
        service = DocumentService(document_store, index, object_store, embedder, counter, chunk_max_tokens=50)
        doc = await service.upload("owner-1", "a.pdf", sample_pdf)
        stored, chunks = await self._status(service, doc)
        assert stored.status == DocumentStatus.FAILED
        assert "dimension" in stored.error_message
        assert chunks == 0

    async def test_concurrent_ingestion(self, service, sample_pdf):
        other = make_pdf([[words(30, "delta")], [words(30, "epsilon")]])
        first = await service.upload("owner-1", "a.pdf", sample_pdf)
        second = await service.upload("owner-2", "b.pdf", other)
        await service.drain()
        assert (await service.get(first.id, "owner-1"))[0].status == DocumentStatus.COMPLETED
        stored, chunks = await service.get(second.id, "owner-2")
        assert stored.status == DocumentStatus.COMPLETED
        assert stored.page_count == 2
        assert chunks >= 1


class TestListingAndDeletion:
    async def test_soft_deleted_document_disappears(self, service, object_store, vector_index, sample_pdf):
        doc = await service.upload("owner-1", "a.pdf", sample_pdf)
        await service.drain()
        await service.delete(doc.id, "owner-1")

        docs, total = await service.list("owner-1")
        assert doc.id not in [d.id for d in docs]
        assert total == 0
        with pytest.raises(NotFoundError):
            await service.get(doc.id, "owner-1")

        await service.drain()
        assert await vector_index.count(doc.id) == 0
        assert object_store.deletes == [doc.storage_key]

    async def test_delete_during_ingestion_leaves_no_passages(self, service, object_store, vector_index, sample_pdf):
        doc = await service.upload("owner-1", "a.pdf", sample_pdf)
        await service.delete(doc.id, "owner-1")
        await service.drain()

        assert await vector_index.count(doc.id) == 0
        assert await vector_index.total_vectors() == 0
        assert object_store.deletes == [doc.storage_key]
        with pytest.raises(NotFoundError):
            await service.get(doc.id, "owner-1")
        assert service.pending == 0

    async def test_delete_checks_ownership(self, service, sample_pdf):
        doc = await service.upload("owner-1", "a.pdf", sample_pdf)
        await service.drain()
        with pytest.raises(NotFoundError):
            await service.delete(doc.id, "owner-2")
        with pytest.raises(NotFoundError):
            await service.get(doc.id, "owner-2")
        await service.delete(doc.id, "owner-1")
        with pytest.raises(NotFoundError):
            await service.delete(doc.id, "owner-1")
        await service.drain()

    async def test_list_newest_first_with_filter_and_paging(self, service, document_store):
        base = utcnow()
        for i in range(5):
            doc = new_document("owner-1", f"d{i}", f"d{i}.pdf", 10, f"k{i}")
            doc.uploaded_at = base + timedelta(minutes=i)
            doc.status = DocumentStatus.COMPLETED if i % 2 == 0 else DocumentStatus.FAILED
            await document_store.create(doc)

        docs, total = await service.list("owner-1", limit=2, offset=1)
        assert total == 5
        assert [d.title for d in docs] == ["d3", "d2"]

        docs, total = await service.list("owner-1", status=DocumentStatus.FAILED)
        assert total == 2
        assert [d.title for d in docs] == ["d3", "d1"]

    async def test_invalid_paging(self, service):
        with pytest.raises(ValidationError):
            await service.list("owner-1", limit=0)


def test_derive_title():
    assert derive_title("my_annual-report.pdf") == "my annual report"
    assert derive_title("plain.pdf") == "plain"
    assert derive_title("___.pdf") == "___.pdf"


def test_services_reject_embedding_model_that_cannot_fill_the_index(document_store, vector_index,
                                                                   object_store, counter):
    from docqa.services.embedding import CloudflareEmbeddingProvider
    from docqa.services.rag import RagEngine

    from .conftest import FakeLLM

    # bge-base produces 768 dimensions, the index holds 16
    embedder = EmbeddingClient(CloudflareEmbeddingProvider("acct", "token", counter=counter), counter=counter)
    with pytest.raises(EmbeddingError, match="index stores 16"):
        DocumentService(document_store, vector_index, object_store, embedder, counter)
    with pytest.raises(EmbeddingError, match="index stores 16"):
        RagEngine(embedder, vector_index, FakeLLM())
