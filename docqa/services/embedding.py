"""Embedding providers and the batching/retrying client in front of them."""

import asyncio
import hashlib
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import numpy as np
import openai
import structlog
from openai import AsyncOpenAI
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential, wait_random

from ..errors import EmbeddingError, ProviderError, ValidationError
from ..utils.tokens import TokenCounter

logger = structlog.get_logger(__name__)

# model -> (dimension, USD per 1M tokens)
EMBEDDING_MODELS: Dict[str, Tuple[int, float]] = {
    "text-embedding-3-small": (1536, 0.02),
    "text-embedding-3-large": (3072, 0.13),
    "text-embedding-ada-002": (1536, 0.10),
    "@cf/baai/bge-small-en-v1.5": (384, 0.02),
    "@cf/baai/bge-base-en-v1.5": (768, 0.067),
    "@cf/baai/bge-large-en-v1.5": (1024, 0.204),
}
DEFAULT_DIMENSION = 1536
MAX_INPUT_TOKENS = 8191
MAX_BATCH_SIZE = 100


@dataclass
class ProviderResponse:
    vectors: List[List[float]]
    tokens: int


@dataclass
class EmbeddingResult:
    vector: List[float]
    tokens: int
    model: str
    provider: str
    cost: float
    cached: bool = False


@dataclass
class BatchEmbeddingResult:
    results: List[EmbeddingResult] = field(default_factory=list)
    total_tokens: int = 0
    total_cost: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0

    @property
    def vectors(self) -> List[List[float]]:
        return [r.vector for r in self.results]


class OpenAIEmbeddingProvider:
    name = "openai"

    def __init__(self, api_key: str, model: str = "text-embedding-3-small"):
        self.api_key = api_key
        self.model = model
        self._client: AsyncOpenAI | None = None

    def get_client(self) -> AsyncOpenAI:
        if not self.api_key:
            raise EmbeddingError("OpenAI API key not configured")
        if self._client is None:
            # retries are owned by EmbeddingClient
            self._client = AsyncOpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    async def embed(self, texts: List[str]) -> ProviderResponse:
        client = self.get_client()
        try:
            resp = await client.embeddings.create(model=self.model, input=texts, encoding_format="float")
        except openai.APIStatusError as e:
            raise ProviderError(f"OpenAI embeddings error {e.status_code}: {e.message}", e.status_code) from e
        except openai.APIConnectionError as e:
            raise ProviderError(f"OpenAI embeddings connection error: {e}") from e
        data = sorted(resp.data, key=lambda d: d.index)
        return ProviderResponse(vectors=[d.embedding for d in data], tokens=resp.usage.total_tokens)


class CloudflareEmbeddingProvider:
    """Cloudflare Workers AI text embeddings (``/ai/run/{model}``)."""

    name = "cloudflare"
    BASE_URL = "https://api.cloudflare.com/client/v4"

    def __init__(self, account_id: str, api_token: str, model: str = "@cf/baai/bge-base-en-v1.5",
                 counter: Optional[TokenCounter] = None, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.account_id = account_id
        self.api_token = api_token
        self.model = model
        self.timeout = timeout
        self.transport = transport
        # Workers AI reports no usage, tokens are counted locally
        self.counter = counter or TokenCounter()

    async def embed(self, texts: List[str]) -> ProviderResponse:
        if not self.account_id or not self.api_token:
            raise EmbeddingError("Cloudflare Workers AI credentials not configured")
        headers = {"Authorization": f"Bearer {self.api_token}"}
        async with httpx.AsyncClient(base_url=self.BASE_URL, timeout=httpx.Timeout(self.timeout),
                                     transport=self.transport) as client:
            try:
                resp = await client.post(f"/accounts/{self.account_id}/ai/run/{self.model}",
                                         json={"text": texts}, headers=headers)
            except httpx.TransportError as e:
                raise ProviderError(f"Cloudflare AI connection error: {e}") from e
        if resp.status_code >= 400:
            raise ProviderError(f"Cloudflare AI error {resp.status_code}: {resp.text[:200]}", resp.status_code)
        payload = resp.json()
        vectors = (payload.get("result") or {}).get("data") or []
        return ProviderResponse(vectors=vectors, tokens=sum(self.counter.count(t) for t in texts))


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.transient


def _distribute(total: int, n: int) -> List[int]:
    """Split ``total`` over ``n`` items so the parts sum back to ``total``."""
    base, extra = divmod(total, n)
    return [base + 1 if i < extra else base for i in range(n)]


class EmbeddingClient:
    """Validated, cached, batched and retried access to an embedding provider.

    Retry policy: rate limits (429), 5xx and transport errors are retried with
    exponential backoff (``base_delay`` doubling per attempt) plus 0..``max_jitter``
    seconds of jitter, for at most ``max_retries`` attempts in total. Any other
    4xx fails on the first attempt.
    """

    def __init__(
        self,
        provider,
        *,
        counter: Optional[TokenCounter] = None,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_jitter: float = 1.0,
        batch_size: int = MAX_BATCH_SIZE,
        batch_delay: float = 0.5,
        cache_size: int = 10_000,
        max_input_tokens: int = MAX_INPUT_TOKENS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.provider = provider
        self.counter = counter or TokenCounter()
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_jitter = max_jitter
        self.batch_size = min(batch_size, MAX_BATCH_SIZE)
        self.batch_delay = batch_delay
        self.max_cache_entries = cache_size
        self.max_input_tokens = max_input_tokens
        self._sleep = sleep
        self._cache: "OrderedDict[str, EmbeddingResult]" = OrderedDict()

    @property
    def model(self) -> str:
        return self.provider.model

    @property
    def provider_name(self) -> str:
        return self.provider.name

    def validate_text(self, text: str) -> None:
        if not text or not text.strip():
            raise ValidationError("Text is empty")
        estimated = self.counter.count(text)
        if estimated > self.max_input_tokens:
            raise ValidationError(f"Text too long (estimated {estimated} tokens, max {self.max_input_tokens})")

    def calculate_cost(self, tokens: int, model: Optional[str] = None) -> float:
        _, per_million = EMBEDDING_MODELS.get(model or self.model, (DEFAULT_DIMENSION, 0.0))
        return tokens / 1_000_000 * per_million

    def get_dimension(self, model: Optional[str] = None) -> int:
        dimension, _ = EMBEDDING_MODELS.get(model or self.model, (DEFAULT_DIMENSION, 0.0))
        return dimension

    def ensure_dimension(self, expected: int) -> None:
        """Raise before any paid call when the model cannot fill an index of ``expected`` dimensions.

        Models missing from the table are not checked; the index still rejects
        mismatched vectors on insert.
        """
        if self.model in EMBEDDING_MODELS and self.get_dimension() != expected:
            raise EmbeddingError(
                f"Embedding model {self.model} produces {self.get_dimension()}-dimensional vectors "
                f"but the index stores {expected}; set EMBED_DIM to match"
            )

    @staticmethod
    def cosine_similarity(a: List[float], b: List[float]) -> float:
        va = np.asarray(a, dtype=np.float32)
        vb = np.asarray(b, dtype=np.float32)
        if va.shape != vb.shape:
            raise EmbeddingError("Embeddings must have the same dimension")
        denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
        return 0.0 if denom == 0.0 else float(np.dot(va, vb) / denom)

    async def embed(self, text: str, use_cache: bool = True) -> EmbeddingResult:
        batch = await self.embed_batch([text], use_cache=use_cache)
        return batch.results[0]

    async def embed_batch(self, texts: List[str], use_cache: bool = True) -> BatchEmbeddingResult:
        if not texts:
            return BatchEmbeddingResult()
        for text in texts:
            self.validate_text(text)

        slots: List[Optional[EmbeddingResult]] = [None] * len(texts)
        pending: List[int] = []
        for i, text in enumerate(texts):
            hit = self._cache_get(text) if use_cache else None
            if hit is not None:
                slots[i] = replace(hit, tokens=0, cost=0.0, cached=True)
            else:
                pending.append(i)

        batches = [pending[i:i + self.batch_size] for i in range(0, len(pending), self.batch_size)]
        for n, batch in enumerate(batches, start=1):
            if n > 1:
                await self._sleep(self.batch_delay)
            batch_texts = [texts[i] for i in batch]
            try:
                response = await self._call_with_retry(batch_texts)
            except ProviderError as e:
                raise EmbeddingError(f"Batch {n}/{len(batches)} failed: {e}") from e
            if len(response.vectors) != len(batch):
                raise EmbeddingError(
                    f"Batch {n}/{len(batches)}: provider returned {len(response.vectors)} vectors for {len(batch)} texts"
                )
            for i, vector, tokens in zip(batch, response.vectors, _distribute(response.tokens, len(batch))):
                result = EmbeddingResult(
                    vector=list(vector),
                    tokens=tokens,
                    model=self.model,
                    provider=self.provider_name,
                    cost=self.calculate_cost(tokens),
                )
                slots[i] = result
                if use_cache:
                    self._cache_put(texts[i], result)
            logger.debug("embedding_batch_done", batch=n, batches=len(batches), size=len(batch), tokens=response.tokens)

        results = [r for r in slots if r is not None]
        return BatchEmbeddingResult(
            results=results,
            total_tokens=sum(r.tokens for r in results),
            total_cost=sum(r.cost for r in results),
            cache_hits=len(texts) - len(pending),
            cache_misses=len(pending),
        )

    async def _call_with_retry(self, texts: List[str]) -> ProviderResponse:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.base_delay) + wait_random(0, self.max_jitter),
            retry=retry_if_exception(_is_transient),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        return await retrying(self.provider.embed, texts)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "embedding_retry",
            provider=self.provider_name,
            attempt=retry_state.attempt_number,
            max_attempts=self.max_retries,
            delay=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            error=str(exc),
        )

    def _cache_key(self, text: str) -> str:
        digest = hashlib.sha256(f"{self.provider_name}:{self.model}:{text}".encode("utf-8")).hexdigest()
        return f"embedding:{self.provider_name}:{digest}"

    def _cache_get(self, text: str) -> Optional[EmbeddingResult]:
        key = self._cache_key(text)
        hit = self._cache.get(key)
        if hit is not None:
            self._cache.move_to_end(key)
        return hit

    def _cache_put(self, text: str, result: EmbeddingResult) -> None:
        if self.max_cache_entries <= 0:
            return
        self._cache[self._cache_key(text)] = result
        self._cache.move_to_end(self._cache_key(text))
        while len(self._cache) > self.max_cache_entries:
            self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)
