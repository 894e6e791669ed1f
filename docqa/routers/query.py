from contextlib import aclosing

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ..dependencies import get_owner_id, get_rag_engine, http_error
from ..errors import DocQAError
from ..schemas import QueryRequest, QueryResponse
from ..services.rag import RagEngine

router = APIRouter(tags=["query"])


@router.post("/documents/query", response_model=QueryResponse)
async def query_documents(
    req: QueryRequest,
    owner_id: str = Depends(get_owner_id),
    rag: RagEngine = Depends(get_rag_engine),
):
    if req.stream:
        async def event_source():
            events = rag.stream_query(req.query, owner_id=owner_id, document_id=req.document_id, top_k=req.top_k)
            async with aclosing(events):
                async for event in events:
                    yield f"data: {event.model_dump_json()}\n\n"

        return StreamingResponse(
            event_source(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    try:
        return await rag.query(req.query, owner_id=owner_id, document_id=req.document_id, top_k=req.top_k)
    except DocQAError as e:
        raise http_error(e)
