from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status

from ..dependencies import get_document_service, get_owner_id, http_error
from ..errors import DocQAError
from ..models import DocumentStatus
from ..schemas import DeleteResponse, DocumentDetail, DocumentList, DocumentListItem, UploadResponse
from ..services.documents import DocumentService

router = APIRouter(tags=["documents"])


@router.post("/documents/upload", response_model=UploadResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_document(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    owner_id: str = Depends(get_owner_id),
    service: DocumentService = Depends(get_document_service),
):
    try:
        if file.size is not None:
            service.check_size(file.size)
        # one byte past the limit is enough to reject
        content = await file.read(service.max_file_size + 1)
        doc = await service.upload(
            owner_id, file.filename or "", content, content_type=file.content_type, title=title
        )
    except DocQAError as e:
        raise http_error(e)
    return UploadResponse(
        document_id=doc.id,
        title=doc.title,
        file_name=doc.file_name,
        file_size=doc.file_size,
        status=doc.status,
        uploaded_at=doc.uploaded_at,
    )


@router.get("/documents", response_model=DocumentList)
async def list_documents(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status_filter: Optional[DocumentStatus] = Query(None, alias="status"),
    owner_id: str = Depends(get_owner_id),
    service: DocumentService = Depends(get_document_service),
):
    try:
        docs, total = await service.list(owner_id, limit=limit, offset=offset, status=status_filter)
    except DocQAError as e:
        raise http_error(e)
    return DocumentList(
        documents=[DocumentListItem.model_validate(d) for d in docs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/documents/{document_id}", response_model=DocumentDetail)
async def get_document(
    document_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: DocumentService = Depends(get_document_service),
):
    try:
        doc, chunks_count = await service.get(document_id, owner_id)
    except DocQAError as e:
        raise http_error(e)
    detail = DocumentDetail.model_validate(doc, from_attributes=True)
    return detail.model_copy(update={"chunks_count": chunks_count})


@router.delete("/documents/{document_id}", response_model=DeleteResponse)
async def delete_document(
    document_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: DocumentService = Depends(get_document_service),
):
    try:
        await service.delete(document_id, owner_id)
    except DocQAError as e:
        raise http_error(e)
    return DeleteResponse(message="Document deleted")
