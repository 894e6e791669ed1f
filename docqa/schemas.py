
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional, Union
from uuid import UUID

from .models import DocumentStatus


class UploadResponse(BaseModel):
    document_id: UUID
    title: str
    file_name: str
    file_size: int
    status: DocumentStatus
    uploaded_at: datetime


class DocumentListItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    file_name: str
    file_size: int
    page_count: Optional[int] = None
    status: DocumentStatus
    uploaded_at: datetime
    processed_at: Optional[datetime] = None


class DocumentDetail(DocumentListItem):
    error_message: Optional[str] = None
    chunks_count: int = 0


class DocumentList(BaseModel):
    documents: List[DocumentListItem]
    total: int
    limit: int
    offset: int


class DeleteResponse(BaseModel):
    success: bool = True
    message: str


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
    document_id: Optional[UUID] = None
    top_k: int = Field(default=5, ge=1)
    stream: bool = False


class Source(BaseModel):
    document_id: UUID
    document_title: str
    chunk_index: int
    page_number: Optional[int] = None
    similarity: float
    excerpt: str


class TokenUsage(BaseModel):
    prompt: int = 0
    completion: int = 0
    total: int = 0


class QueryResponse(BaseModel):
    answer: str
    sources: List[Source]
    tokens_used: TokenUsage


# Streaming events; the "type" field tags the variant
class SourcesEvent(BaseModel):
    type: Literal["sources"] = "sources"
    sources: List[Source]


class ChunkEvent(BaseModel):
    type: Literal["chunk"] = "chunk"
    content: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    tokens_used: TokenUsage


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str
    code: Optional[str] = None


StreamEvent = Union[SourcesEvent, ChunkEvent, DoneEvent, ErrorEvent]
