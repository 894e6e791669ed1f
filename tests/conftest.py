"""Shared test fixtures: generated PDFs, fake providers and in-memory stores."""

import hashlib
import os
import re
from typing import List, Optional, Sequence

# Settings are read at import time
os.environ.setdefault("SKIP_DB", "true")
os.environ.setdefault("EMBED_DIM", "16")

import fitz
import pytest

from docqa.services.documents import DocumentService
from docqa.services.embedding import EmbeddingClient, ProviderResponse
from docqa.services.llm import ChatDelta, ChatResult
from docqa.services.store import MemoryDocumentStore
from docqa.services.vector_index import MemoryVectorIndex
from docqa.utils.tokens import TokenCounter

DIMENSION = 16


def make_pdf(pages: Sequence[Sequence[str]], title: Optional[str] = None) -> bytes:
    """Build a PDF where each page holds the given paragraphs in separate text boxes."""
    doc = fitz.open()
    for paragraphs in pages:
        page = doc.new_page(width=612, height=792)
        top = 60
        for paragraph in paragraphs:
            rect = fitz.Rect(60, top, 552, top + 140)
            page.insert_textbox(rect, paragraph, fontsize=10, fontname="helv")
            top += 180
    if title:
        doc.set_metadata({"title": title, "author": "Test Author", "creationDate": "D:20240115103000Z"})
    data = doc.tobytes()
    doc.close()
    return data


def words(n: int, seed: str = "word") -> str:
    return " ".join(f"{seed}{chr(97 + i % 26)}" for i in range(n))


def text_vector(text: str, dimension: int = DIMENSION) -> List[float]:
    """Bag-of-words vector with stable hashing; texts sharing words point the same way."""
    vector = [0.0] * dimension
    for token in re.findall(r"\w+", text.lower()):
        bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    return vector


class FakeEmbeddingProvider:
    name = "fake"
    model = "fake-embed"

    def __init__(self, dimension: int = DIMENSION, failures: Optional[List[Exception]] = None):
        self.dimension = dimension
        self.failures = list(failures or [])
        self.calls: List[List[str]] = []

    async def embed(self, texts: List[str]) -> ProviderResponse:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        vectors = [text_vector(t, self.dimension) for t in texts]
        return ProviderResponse(vectors=vectors, tokens=sum(len(t.split()) for t in texts))


class FakeLLM:
    def __init__(self, pieces: Sequence[str] = ("The answer", " is 42."), usage=(120, 7),
                 error: Optional[Exception] = None):
        self.pieces = list(pieces)
        self.usage = usage
        self.error = error
        self.messages = None
        self.closed = False

    async def complete(self, messages):
        self.messages = messages
        if self.error:
            raise self.error
        return ChatResult(text="".join(self.pieces), model="fake-chat",
                          prompt_tokens=self.usage[0], completion_tokens=self.usage[1])

    async def stream(self, messages):
        self.messages = messages
        try:
            for piece in self.pieces:
                yield ChatDelta(content=piece)
            if self.error:
                raise self.error
            if self.usage is not None:
                yield ChatDelta(prompt_tokens=self.usage[0], completion_tokens=self.usage[1])
        finally:
            self.closed = True


class FakeObjectStore:
    def __init__(self):
        self.objects = {}
        self.puts: List[str] = []
        self.deletes: List[str] = []

    async def put(self, key: str, content: bytes, content_type: str = "application/pdf") -> str:
        self.puts.append(key)
        self.objects[key] = content
        return key

    async def delete(self, key: str) -> None:
        self.deletes.append(key)
        self.objects.pop(key, None)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def counter() -> TokenCounter:
    return TokenCounter(approximate=True)


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def embedder(provider, counter) -> EmbeddingClient:
    return EmbeddingClient(provider, counter=counter, batch_delay=0, sleep=no_sleep)


@pytest.fixture
def document_store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def vector_index(document_store) -> MemoryVectorIndex:
    return MemoryVectorIndex(document_store, DIMENSION)


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def service(document_store, vector_index, object_store, embedder, counter) -> DocumentService:
    return DocumentService(
        document_store,
        vector_index,
        object_store,
        embedder,
        counter,
        max_documents=3,
        chunk_max_tokens=50,
        chunk_overlap_percent=20,
    )


@pytest.fixture
def sample_pdf() -> bytes:
    return make_pdf([[words(40, "alpha"), words(40, "beta"), words(40, "gamma")]], title="Sample Report")
