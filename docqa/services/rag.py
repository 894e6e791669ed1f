import uuid
from contextlib import aclosing
from typing import AsyncIterator, Dict, List, Optional

import structlog

from ..errors import DocQAError
from ..schemas import ChunkEvent, DoneEvent, ErrorEvent, QueryResponse, Source, SourcesEvent, StreamEvent, TokenUsage
from .embedding import EmbeddingClient
from .events import EventPublisher, LogEventPublisher, publish_safely
from .llm import LLMClient
from .vector_index import SimilarityMatch

logger = structlog.get_logger(__name__)

NO_RESULTS_ANSWER = "I could not find any relevant information in your documents to answer this question."
EXCERPT_LENGTH = 200

SYSTEM_PROMPT = """You are a helpful AI assistant that answers questions based on provided document context.

Key guidelines:
- Only use information from the provided context
- If the context doesn't answer the question, say "I don't have enough information in the documents to answer this"
- Cite document titles when referencing information
- Be accurate and factual, never make up information
- If there are contradictions in the sources, point them out
- Provide page numbers when available for reference"""

USER_TEMPLATE = """Context from documents:

{context}

---

Question: {query}

Instructions:
- Answer the question based ONLY on the context provided above
- If the context doesn't contain enough information, say so clearly
- Cite which document(s) you used in your answer
- Be concise but comprehensive
- If multiple documents provide different information, mention the differences"""


def build_prompt(query: str, matches: List[SimilarityMatch]) -> str:
    context = "\n\n---\n\n".join(
        f"[Document: {m.document_title}, Page: {m.page_number or 'N/A'}, "
        f"Similarity: {m.similarity * 100:.1f}%]\n{m.content}"
        for m in matches
    )
    return USER_TEMPLATE.format(context=context, query=query)


def build_messages(query: str, matches: List[SimilarityMatch]) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_prompt(query, matches)},
    ]


def excerpt(content: str, length: int = EXCERPT_LENGTH) -> str:
    return content[:length] + ("..." if len(content) > length else "")


def format_sources(matches: List[SimilarityMatch]) -> List[Source]:
    return [
        Source(
            document_id=m.document_id,
            document_title=m.document_title,
            chunk_index=m.chunk_index,
            page_number=m.page_number,
            similarity=m.similarity,
            excerpt=excerpt(m.content),
        )
        for m in matches
    ]


class RagEngine:
    """Retrieve passages for a question and answer it from them.

    Retrieval failures are never turned into an empty answer: ``query`` raises
    them and ``stream_query`` ends with an ``error`` event.
    """

    def __init__(self, embedder: EmbeddingClient, index, llm: LLMClient, *,
                 events: Optional[EventPublisher] = None, min_similarity: float = 0.3):
        embedder.ensure_dimension(index.dimension)
        self.embedder = embedder
        self.index = index
        self.llm = llm
        self.events = events or LogEventPublisher()
        self.min_similarity = min_similarity

    async def retrieve(self, query: str, *, owner_id: str, document_id: Optional[uuid.UUID] = None,
                       top_k: int = 5) -> List[SimilarityMatch]:
        embedded = await self.embedder.embed(query)
        return await self.index.search_similar(
            embedded.vector,
            owner_id=owner_id,
            document_id=document_id,
            top_k=top_k,
            min_similarity=self.min_similarity,
        )

    async def query(self, query: str, *, owner_id: str, document_id: Optional[uuid.UUID] = None,
                    top_k: int = 5) -> QueryResponse:
        matches = await self.retrieve(query, owner_id=owner_id, document_id=document_id, top_k=top_k)
        if not matches:
            return QueryResponse(answer=NO_RESULTS_ANSWER, sources=[], tokens_used=TokenUsage())

        result = await self.llm.complete(build_messages(query, matches))
        usage = TokenUsage(
            prompt=result.prompt_tokens,
            completion=result.completion_tokens,
            total=result.prompt_tokens + result.completion_tokens,
        )
        await self._answered(owner_id, len(matches), usage, streamed=False)
        return QueryResponse(answer=result.text, sources=format_sources(matches), tokens_used=usage)

    async def stream_query(self, query: str, *, owner_id: str, document_id: Optional[uuid.UUID] = None,
                           top_k: int = 5) -> AsyncIterator[StreamEvent]:
        """Yield ``sources``, then ``chunk`` events, then ``done``; or stop at an ``error`` event."""
        try:
            matches = await self.retrieve(query, owner_id=owner_id, document_id=document_id, top_k=top_k)
        except Exception as e:
            yield self._error_event(e)
            return

        yield SourcesEvent(sources=format_sources(matches))
        if not matches:
            yield ChunkEvent(content=NO_RESULTS_ANSWER)
            yield DoneEvent(tokens_used=TokenUsage())
            return

        prompt_tokens = completion_tokens = 0
        reported = False
        try:
            async with aclosing(self.llm.stream(build_messages(query, matches))) as deltas:
                async for delta in deltas:
                    if delta.content:
                        yield ChunkEvent(content=delta.content)
                        if not reported:
                            completion_tokens += 1
                    if delta.prompt_tokens is not None:
                        reported = True
                        prompt_tokens = delta.prompt_tokens
                        completion_tokens = delta.completion_tokens or 0
        except Exception as e:
            yield self._error_event(e)
            return

        usage = TokenUsage(prompt=prompt_tokens, completion=completion_tokens, total=prompt_tokens + completion_tokens)
        await self._answered(owner_id, len(matches), usage, streamed=True)
        yield DoneEvent(tokens_used=usage)

    def _error_event(self, e: Exception) -> ErrorEvent:
        if isinstance(e, DocQAError):
            logger.warning("query_failed", code=e.code, error=e.message)
            return ErrorEvent(error=e.message, code=e.code)
        logger.exception("query_failed", error=str(e))
        return ErrorEvent(error=str(e) or "Unknown error", code="INTERNAL_ERROR")

    async def _answered(self, owner_id: str, sources: int, usage: TokenUsage, streamed: bool) -> None:
        logger.info("query_answered", owner_id=owner_id, sources=sources, tokens=usage.total, streamed=streamed)
        await publish_safely(
            self.events, "query_answered",
            owner_id=owner_id, sources=sources, tokens=usage.total, streamed=streamed,
        )
