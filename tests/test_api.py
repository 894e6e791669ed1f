"""HTTP surface tests with services swapped for in-memory fakes."""

import json
import time

import pytest
from fastapi.testclient import TestClient

from docqa.dependencies import get_document_service, get_rag_engine
from docqa.main import app
from docqa.services.documents import DocumentService
from docqa.services.rag import RagEngine

from .conftest import FakeLLM

OWNER = {"X-Owner-Id": "owner-1"}


@pytest.fixture
def client(document_store, vector_index, object_store, embedder, counter):
    service = DocumentService(document_store, vector_index, object_store, embedder, counter,
                              max_documents=2, chunk_max_tokens=50)
    rag = RagEngine(embedder, vector_index, FakeLLM())
    app.dependency_overrides[get_document_service] = lambda: service
    app.dependency_overrides[get_rag_engine] = lambda: rag
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def upload(client, content, name="report.pdf", headers=OWNER, content_type="application/pdf", **data):
    return client.post("/v1/documents/upload", files={"file": (name, content, content_type)},
                       data=data, headers=headers)


def wait_for_status(client, document_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/v1/documents/{document_id}", headers=OWNER).json()
        if body["status"] != "processing" or time.monotonic() > deadline:
            return body
        time.sleep(0.05)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


class TestDocumentsApi:
    def test_upload_then_poll_until_completed(self, client, sample_pdf):
        r = upload(client, sample_pdf, title="Sample")
        assert r.status_code == 202
        body = r.json()
        assert body["status"] == "processing"
        assert body["title"] == "Sample"
        assert body["file_size"] == len(sample_pdf)

        detail = wait_for_status(client, body["document_id"])
        assert detail["status"] == "completed"
        assert detail["page_count"] == 1
        assert detail["chunks_count"] == 3
        assert detail["error_message"] is None

    def test_list_and_delete(self, client, sample_pdf):
        doc_id = upload(client, sample_pdf).json()["document_id"]
        wait_for_status(client, doc_id)

        listing = client.get("/v1/documents", headers=OWNER).json()
        assert listing["total"] == 1
        assert listing["limit"] == 20
        assert [d["id"] for d in listing["documents"]] == [doc_id]

        r = client.delete(f"/v1/documents/{doc_id}", headers=OWNER)
        assert r.status_code == 200
        assert r.json() == {"success": True, "message": "Document deleted"}
        assert client.get(f"/v1/documents/{doc_id}", headers=OWNER).status_code == 404
        assert client.delete(f"/v1/documents/{doc_id}", headers=OWNER).status_code == 404

    def test_missing_owner_is_unauthorized(self, client, sample_pdf):
        assert upload(client, sample_pdf, headers={}).status_code == 401
        assert client.get("/v1/documents").status_code == 401

    def test_wrong_type_rejected(self, client):
        r = upload(client, b"PK\x03\x04", name="notes.docx", content_type="application/msword")
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "VALIDATION_ERROR"

    def test_quota_exceeded(self, client, sample_pdf):
        for _ in range(2):
            assert upload(client, sample_pdf).status_code == 202
        r = upload(client, sample_pdf)
        assert r.status_code == 429
        assert r.json()["detail"]["code"] == "QUOTA_EXCEEDED"

    def test_oversized_upload_rejected(self, client, document_store, vector_index, object_store,
                                       embedder, counter):
        small = DocumentService(document_store, vector_index, object_store, embedder, counter, max_file_size=1024)
        app.dependency_overrides[get_document_service] = lambda: small
        r = upload(client, b"%PDF-1.4" + b"0" * 4096)
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "VALIDATION_ERROR"
        assert "too large" in r.json()["detail"]["message"]
        assert object_store.puts == []
        assert document_store.documents == {}

    def test_list_limit_bounds(self, client):
        assert client.get("/v1/documents?limit=0", headers=OWNER).status_code == 422
        assert client.get("/v1/documents?limit=101", headers=OWNER).status_code == 422

    def test_unknown_document(self, client):
        r = client.get("/v1/documents/00000000-0000-0000-0000-000000000000", headers=OWNER)
        assert r.status_code == 404
        assert r.json()["detail"]["code"] == "DOCUMENT_NOT_FOUND"


class TestQueryApi:
    def test_buffered_query(self, client, sample_pdf):
        doc_id = upload(client, sample_pdf).json()["document_id"]
        wait_for_status(client, doc_id)
        r = client.post("/v1/documents/query", json={"query": "alphaa alphab alphac"}, headers=OWNER)
        assert r.status_code == 200
        body = r.json()
        assert body["answer"] == "The answer is 42."
        assert body["sources"][0]["document_id"] == doc_id
        assert body["tokens_used"]["total"] == 127

    def test_streamed_query(self, client, sample_pdf):
        doc_id = upload(client, sample_pdf).json()["document_id"]
        wait_for_status(client, doc_id)
        with client.stream("POST", "/v1/documents/query", headers=OWNER,
                           json={"query": "alphaa alphab alphac", "stream": True}) as r:
            assert r.headers["content-type"].startswith("text/event-stream")
            events = [json.loads(line[len("data: "):]) for line in r.iter_lines() if line.startswith("data: ")]
        assert [e["type"] for e in events] == ["sources", "chunk", "chunk", "done"]
        assert events[0]["sources"][0]["document_id"] == doc_id
        assert events[-1]["tokens_used"]["total"] == 127

    def test_query_without_documents(self, client):
        r = client.post("/v1/documents/query", json={"query": "anything there?"}, headers=OWNER)
        assert r.status_code == 200
        assert r.json()["sources"] == []

    def test_empty_query_rejected(self, client):
        assert client.post("/v1/documents/query", json={"query": ""}, headers=OWNER).status_code == 422
