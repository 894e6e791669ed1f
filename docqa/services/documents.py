"""Document lifecycle: upload, background ingestion, listing and soft delete.

A document is created in PROCESSING and ends in COMPLETED once all of its
passages are indexed, or in FAILED with the error message of whichever
stage raised. Ingestion runs as a tracked asyncio task; the upload call
returns before it starts.
"""

import asyncio
import re
import uuid
from pathlib import Path
from typing import Coroutine, Dict, List, Optional, Set, Tuple

import structlog

from ..errors import ExtractionFailed, NotFoundError, QuotaExceededError, ValidationError
from ..models import Document, DocumentStatus
from ..utils.tokens import TokenCounter
from .chunking import Chunker
from .embedding import EmbeddingClient
from .events import EventPublisher, LogEventPublisher, publish_safely
from .extract import extract_pdf, is_pdf
from .object_store import generate_key
from .store import new_document, utcnow
from .vector_index import Passage

logger = structlog.get_logger(__name__)

ALLOWED_CONTENT_TYPES = {"application/pdf"}


def derive_title(file_name: str) -> str:
    title = re.sub(r"[_-]+", " ", Path(file_name).stem).strip()
    return title or file_name


class DocumentService:
    def __init__(
        self,
        store,
        index,
        objects,
        embedder: EmbeddingClient,
        counter: TokenCounter,
        *,
        events: Optional[EventPublisher] = None,
        max_file_size: int = 10 * 1024 * 1024,
        max_documents: int = 5,
        chunk_max_tokens: int = 512,
        chunk_overlap_percent: int = 20,
    ):
        embedder.ensure_dimension(index.dimension)
        self.store = store
        self.index = index
        self.objects = objects
        self.embedder = embedder
        self.chunker = Chunker(counter)
        self.events = events or LogEventPublisher()
        self.max_file_size = max_file_size
        self.max_documents = max_documents
        self.chunk_max_tokens = chunk_max_tokens
        self.chunk_overlap_percent = chunk_overlap_percent
        self._tasks: Set[asyncio.Task] = set()
        self._ingestions: Dict[uuid.UUID, asyncio.Task] = {}

    def check_size(self, size: int) -> None:
        if size > self.max_file_size:
            raise ValidationError(f"File too large: {size} bytes (max {self.max_file_size} bytes)")

    def validate_upload(self, file_name: str, content: bytes, content_type: Optional[str]) -> None:
        if not file_name:
            raise ValidationError("File name is required")
        if not content:
            raise ValidationError("File is empty")
        self.check_size(len(content))
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationError(f"Unsupported file type: {content_type}. Only PDF files are accepted")
        if not is_pdf(content):
            raise ValidationError("Invalid PDF file: Missing PDF signature")

    async def upload(
        self,
        owner_id: str,
        file_name: str,
        content: bytes,
        content_type: Optional[str] = "application/pdf",
        title: Optional[str] = None,
    ) -> Document:
        self.validate_upload(file_name, content, content_type)

        # before any write
        active = await self.store.count_active(owner_id)
        if active >= self.max_documents:
            raise QuotaExceededError(
                f"PDF upload quota exceeded: {active} of {self.max_documents} documents in use"
            )

        key = generate_key(owner_id, file_name)
        await self.objects.put(key, content, content_type or "application/pdf")
        document = new_document(
            owner_id=owner_id,
            title=(title or "").strip() or derive_title(file_name),
            file_name=file_name,
            file_size=len(content),
            storage_key=key,
            content_type=content_type or "application/pdf",
        )
        try:
            await self.store.create(document)
        except Exception:
            await self._remove_file(document.id, key)
            raise

        logger.info("document_uploaded", document_id=str(document.id), owner_id=owner_id, file_size=len(content))
        self._track_ingestion(document.id, self._spawn(self.process(document.id, content)))
        await publish_safely(
            self.events, "document_uploaded",
            document_id=str(document.id), owner_id=owner_id, file_size=len(content),
        )
        return document

    async def process(self, document_id: uuid.UUID, content: bytes) -> None:
        """Extract, chunk, embed and index one document. Never raises."""
        log = logger.bind(document_id=str(document_id))
        try:
            parsed = await asyncio.to_thread(extract_pdf, content)
            await self.store.update(document_id, page_count=parsed.page_count)

            chunks = self.chunker.chunk(
                parsed.text,
                max_tokens=self.chunk_max_tokens,
                overlap_percentage=self.chunk_overlap_percent,
            )
            if not chunks:
                raise ExtractionFailed("no extractable text")

            embedded = await self.embedder.embed_batch([c.content for c in chunks])
            passages = [
                Passage(
                    chunk_index=c.chunk_index,
                    page_number=c.page_number,
                    tokens=c.tokens,
                    content=c.content,
                    embedding=vector,
                )
                for c, vector in zip(chunks, embedded.vectors)
            ]
            await self.index.insert(document_id, passages)
            await self.store.update(
                document_id, status=DocumentStatus.COMPLETED, processed_at=utcnow(), error_message=None
            )
        except Exception as e:
            log.exception("document_processing_failed", error=str(e))
            await self._discard_passages(document_id)
            await self._mark_failed(document_id, str(e) or type(e).__name__)
            await publish_safely(self.events, "document_failed", document_id=str(document_id), error=str(e))
            return

        log.info(
            "document_processed",
            pages=parsed.page_count,
            chunks=len(passages),
            tokens=embedded.total_tokens,
            cost=embedded.total_cost,
            cache_hits=embedded.cache_hits,
        )
        await publish_safely(
            self.events, "document_processed",
            document_id=str(document_id), pages=parsed.page_count, chunks=len(passages),
            tokens=embedded.total_tokens, cost=embedded.total_cost,
        )

    async def get(self, document_id: uuid.UUID, owner_id: str) -> Tuple[Document, int]:
        document = await self.store.get(document_id, owner_id)
        if document is None:
            raise NotFoundError()
        return document, await self.index.count(document_id)

    async def list(self, owner_id: str, limit: int = 20, offset: int = 0,
                   status: Optional[DocumentStatus] = None) -> Tuple[List[Document], int]:
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        return await self.store.list(owner_id, limit=limit, offset=offset, status=status)

    async def delete(self, document_id: uuid.UUID, owner_id: str) -> None:
        document = await self.store.soft_delete(document_id, owner_id)
        if document is None:
            raise NotFoundError()
        logger.info("document_deleted", document_id=str(document_id), owner_id=owner_id)
        self._spawn(self._purge(document_id, document.storage_key, self._ingestions.get(document_id)))
        await publish_safely(self.events, "document_deleted", document_id=str(document_id), owner_id=owner_id)

    async def _purge(self, document_id: uuid.UUID, storage_key: str,
                     ingestion: Optional[asyncio.Task] = None) -> None:
        # passages written by a still-running ingestion must not outlive the purge
        if ingestion is not None:
            await asyncio.wait({ingestion})
        await self._discard_passages(document_id)
        await self._remove_file(document_id, storage_key)

    async def _discard_passages(self, document_id: uuid.UUID) -> None:
        try:
            await self.index.delete_by_document(document_id)
        except Exception as e:
            logger.warning("passage_cleanup_failed", document_id=str(document_id), error=str(e))

    async def _remove_file(self, document_id: uuid.UUID, storage_key: str) -> None:
        try:
            await self.objects.delete(storage_key)
        except Exception as e:
            logger.warning("file_cleanup_failed", document_id=str(document_id), key=storage_key, error=str(e))

    async def _mark_failed(self, document_id: uuid.UUID, message: str) -> None:
        try:
            await self.store.update(document_id, status=DocumentStatus.FAILED, error_message=message[:2000])
        except Exception:
            logger.exception("document_status_update_failed", document_id=str(document_id))

    def _track_ingestion(self, document_id: uuid.UUID, task: asyncio.Task) -> None:
        self._ingestions[document_id] = task
        task.add_done_callback(lambda _: self._ingestions.pop(document_id, None))

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight ingestion and purge task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
