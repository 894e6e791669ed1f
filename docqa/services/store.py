"""Document records: Postgres-backed store and an in-memory one for SKIP_DB runs."""

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import Document, DocumentStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_document(owner_id: str, title: str, file_name: str, file_size: int, storage_key: str,
                 content_type: str = "application/pdf") -> Document:
    return Document(
        id=uuid.uuid4(),
        owner_id=owner_id,
        title=title,
        file_name=file_name,
        content_type=content_type,
        file_size=file_size,
        storage_key=storage_key,
        status=DocumentStatus.PROCESSING,
        uploaded_at=utcnow(),
    )


class SqlDocumentStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def _active(self, owner_id: str):
        return (Document.owner_id == owner_id, Document.deleted_at.is_(None))

    async def create(self, document: Document) -> Document:
        async with self.session_factory() as session:
            session.add(document)
            await session.commit()
        return document

    async def get(self, document_id: uuid.UUID, owner_id: str) -> Optional[Document]:
        async with self.session_factory() as session:
            res = await session.execute(
                select(Document).where(Document.id == document_id, *self._active(owner_id))
            )
            return res.scalar_one_or_none()

    async def list(self, owner_id: str, limit: int = 20, offset: int = 0,
                   status: Optional[DocumentStatus] = None) -> Tuple[List[Document], int]:
        filters = list(self._active(owner_id))
        if status is not None:
            filters.append(Document.status == status)
        async with self.session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(Document).where(*filters))
            res = await session.execute(
                select(Document).where(*filters)
                .order_by(Document.uploaded_at.desc())
                .limit(limit).offset(offset)
            )
            return list(res.scalars().all()), int(total or 0)

    async def count_active(self, owner_id: str) -> int:
        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(Document).where(*self._active(owner_id))
            )
            return int(total or 0)

    async def update(self, document_id: uuid.UUID, **fields) -> None:
        async with self.session_factory() as session:
            await session.execute(update(Document).where(Document.id == document_id).values(**fields))
            await session.commit()

    async def soft_delete(self, document_id: uuid.UUID, owner_id: str) -> Optional[Document]:
        async with self.session_factory() as session:
            res = await session.execute(
                select(Document).where(Document.id == document_id, *self._active(owner_id))
            )
            document = res.scalar_one_or_none()
            if document is None:
                return None
            document.deleted_at = utcnow()
            await session.commit()
            return document


class MemoryDocumentStore:
    """Same contract as SqlDocumentStore, kept in a dict."""

    def __init__(self):
        self.documents: Dict[uuid.UUID, Document] = {}

    def _is_active(self, document: Document, owner_id: str) -> bool:
        return document.owner_id == owner_id and document.deleted_at is None

    async def create(self, document: Document) -> Document:
        self.documents[document.id] = document
        return document

    async def get(self, document_id: uuid.UUID, owner_id: str) -> Optional[Document]:
        document = self.documents.get(document_id)
        if document is None or not self._is_active(document, owner_id):
            return None
        return document

    def lookup(self, document_id: uuid.UUID) -> Optional[Document]:
        return self.documents.get(document_id)

    async def list(self, owner_id: str, limit: int = 20, offset: int = 0,
                   status: Optional[DocumentStatus] = None) -> Tuple[List[Document], int]:
        docs = [d for d in self.documents.values() if self._is_active(d, owner_id)]
        if status is not None:
            docs = [d for d in docs if d.status == status]
        docs.sort(key=lambda d: d.uploaded_at, reverse=True)
        return docs[offset:offset + limit], len(docs)

    async def count_active(self, owner_id: str) -> int:
        return sum(1 for d in self.documents.values() if self._is_active(d, owner_id))

    async def update(self, document_id: uuid.UUID, **fields) -> None:
        document = self.documents.get(document_id)
        if document is None:
            return
        for key, value in fields.items():
            setattr(document, key, value)

    async def soft_delete(self, document_id: uuid.UUID, owner_id: str) -> Optional[Document]:
        document = await self.get(document_id, owner_id)
        if document is not None:
            document.deleted_at = utcnow()
        return document
