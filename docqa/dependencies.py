"""Process-wide service singletons and FastAPI dependencies."""

from functools import lru_cache

from fastapi import Header, HTTPException

from .config import settings
from .db import get_session_local
from .errors import DocQAError
from .services.documents import DocumentService
from .services.embedding import CloudflareEmbeddingProvider, EmbeddingClient, OpenAIEmbeddingProvider
from .services.events import LogEventPublisher
from .services.llm import LLMClient
from .services.object_store import LocalObjectStore, S3ObjectStore
from .services.rag import RagEngine
from .services.store import MemoryDocumentStore, SqlDocumentStore
from .services.vector_index import MemoryVectorIndex, PgVectorIndex
from .utils.tokens import TokenCounter


@lru_cache
def get_token_counter() -> TokenCounter:
    return TokenCounter(settings.TOKENIZER_MODEL)


@lru_cache
def get_embedding_client() -> EmbeddingClient:
    if settings.EMBED_PROVIDER.lower() == "cloudflare":
        provider = CloudflareEmbeddingProvider(
            settings.CF_ACCOUNT_ID, settings.CF_API_TOKEN, settings.CF_EMBED_MODEL, counter=get_token_counter()
        )
    else:
        provider = OpenAIEmbeddingProvider(settings.OPENAI_API_KEY, settings.OPENAI_EMBED_MODEL)
    return EmbeddingClient(
        provider,
        counter=get_token_counter(),
        max_retries=settings.EMBED_MAX_RETRIES,
        batch_size=settings.EMBED_BATCH_SIZE,
        batch_delay=settings.EMBED_BATCH_DELAY,
        cache_size=settings.EMBED_CACHE_SIZE,
    )


@lru_cache
def get_stores():
    """(document store, vector index); in-memory when SKIP_DB is set."""
    session_factory = get_session_local()
    if session_factory is None:
        documents = MemoryDocumentStore()
        return documents, MemoryVectorIndex(documents, settings.EMBED_DIM, max_top_k=settings.SEARCH_MAX_TOP_K)
    return (
        SqlDocumentStore(session_factory),
        PgVectorIndex(
            session_factory,
            settings.EMBED_DIM,
            batch_size=settings.INSERT_BATCH_SIZE,
            max_top_k=settings.SEARCH_MAX_TOP_K,
        ),
    )


@lru_cache
def get_object_store():
    if settings.STORAGE_BACKEND.lower() == "s3":
        return S3ObjectStore(
            settings.S3_BUCKET,
            endpoint_url=settings.S3_ENDPOINT,
            access_key_id=settings.S3_ACCESS_KEY_ID,
            secret_access_key=settings.S3_SECRET_ACCESS_KEY,
        )
    return LocalObjectStore(settings.STORAGE_DIR)


@lru_cache
def get_event_publisher() -> LogEventPublisher:
    return LogEventPublisher()


@lru_cache
def get_document_service() -> DocumentService:
    store, index = get_stores()
    return DocumentService(
        store,
        index,
        get_object_store(),
        get_embedding_client(),
        get_token_counter(),
        events=get_event_publisher(),
        max_file_size=settings.PDF_MAX_SIZE,
        max_documents=settings.MAX_DOCUMENTS_PER_OWNER,
        chunk_max_tokens=settings.CHUNK_MAX_TOKENS,
        chunk_overlap_percent=settings.CHUNK_OVERLAP_PERCENT,
    )


@lru_cache
def get_rag_engine() -> RagEngine:
    _, index = get_stores()
    return RagEngine(
        get_embedding_client(),
        index,
        LLMClient.from_settings(settings),
        events=get_event_publisher(),
        min_similarity=settings.SEARCH_MIN_SIMILARITY,
    )


async def get_owner_id(x_owner_id: str = Header(default="")) -> str:
    """Caller identity; authentication happens upstream of this service."""
    owner_id = x_owner_id.strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail={"code": "UNAUTHORIZED", "message": "X-Owner-Id header is required"})
    return owner_id


def http_error(e: DocQAError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())
