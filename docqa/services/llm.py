import json
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from ..config import Settings
from ..errors import LLMConfigurationError, LLMServiceError

logger = structlog.get_logger(__name__)

PERPLEXITY_BASE_URL = "https://api.perplexity.ai"

# Heuristic cost order, cheapest first
PERPLEXITY_CHEAP_CANDIDATES = [
    "sonar-small-chat",
    "llama-3.1-sonar-small-128k-chat",
    "sonar",
    "sonar-medium-chat",
    "llama-3.1-sonar-large-128k-chat",
    "sonar-large-chat",
    "sonar-pro",
]


@dataclass
class ChatResult:
    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class ChatDelta:
    """One streamed piece: generated text, or the usage that closes the stream."""
    content: str = ""
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


def perplexity_candidates(configured: str, cheap_first: bool, force_model: Optional[str] = None) -> List[str]:
    configured = (configured or "").strip()
    if cheap_first:
        base = PERPLEXITY_CHEAP_CANDIDATES + ([configured] if configured else [])
    else:
        base = ([configured] if configured else []) + PERPLEXITY_CHEAP_CANDIDATES
    if force_model:
        base = [force_model] + base
    # Preserve order and uniqueness
    seen = set()
    return [m for m in base if m and not (m in seen or seen.add(m))]


def _is_invalid_model(resp_json) -> bool:
    err = resp_json.get("error", {}) if isinstance(resp_json, dict) else {}
    return isinstance(err, dict) and err.get("type") == "invalid_model"


def _json_or_text(raw: bytes):
    try:
        return json.loads(raw)
    except ValueError:
        return {"text": raw.decode("utf-8", "replace")}


class LLMClient:
    """Chat completions against OpenAI or Perplexity, buffered or streamed."""

    def __init__(
        self,
        provider: str = "openai",
        *,
        openai_api_key: str = "",
        openai_model: str = "gpt-4o-mini",
        perplexity_api_key: str = "",
        perplexity_model: str = "sonar",
        prefer_cheapest: bool = False,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout: float = 60.0,
    ):
        self.provider = (provider or "openai").lower()
        self.openai_api_key = openai_api_key
        self.openai_model = openai_model
        self.perplexity_api_key = perplexity_api_key
        self.perplexity_model = perplexity_model
        self.prefer_cheapest = prefer_cheapest
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._openai: AsyncOpenAI | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMClient":
        return cls(
            settings.LLM_PROVIDER,
            openai_api_key=settings.OPENAI_API_KEY,
            openai_model=settings.OPENAI_MODEL,
            perplexity_api_key=settings.PERPLEXITY_API_KEY,
            perplexity_model=settings.PERPLEXITY_MODEL,
            prefer_cheapest=settings.LLM_PREFER_CHEAPEST,
            temperature=settings.LLM_TEMPERATURE,
            max_tokens=settings.LLM_MAX_TOKENS,
        )

    async def complete(self, messages: List[Dict[str, str]]) -> ChatResult:
        if not messages:
            raise ValueError("messages must be a non-empty list")
        if self.provider == "perplexity":
            return await self._pplx_complete(messages)
        return await self._openai_complete(messages)

    async def stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[ChatDelta]:
        """Yield generated text as it arrives; the last delta carries usage when the provider reports it.

        Closing the iterator early closes the upstream connection.
        """
        if not messages:
            raise ValueError("messages must be a non-empty list")
        if self.provider == "perplexity":
            source = self._pplx_stream(messages)
        else:
            source = self._openai_stream(messages)
        async for delta in source:
            yield delta

    # OpenAI

    def _openai_client(self) -> AsyncOpenAI:
        if not self.openai_api_key:
            raise LLMConfigurationError(
                "OPENAI_API_KEY is not set. Please configure OPENAI_API_KEY in environment variables."
            )
        if self._openai is None:
            self._openai = AsyncOpenAI(api_key=self.openai_api_key)
        return self._openai

    async def _openai_complete(self, messages: List[Dict[str, str]]) -> ChatResult:
        client = self._openai_client()
        try:
            chat = await client.chat.completions.create(
                model=self.openai_model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.OpenAIError as e:
            raise LLMServiceError(f"OpenAI API error: {e}") from e
        usage = chat.usage
        return ChatResult(
            text=chat.choices[0].message.content or "",
            model=chat.model or self.openai_model,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
        )

    async def _openai_stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[ChatDelta]:
        client = self._openai_client()
        try:
            stream = await client.chat.completions.create(
                model=self.openai_model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )
        except openai.OpenAIError as e:
            raise LLMServiceError(f"OpenAI API error: {e}") from e
        async with stream:
            try:
                async for chunk in stream:
                    content = chunk.choices[0].delta.content if chunk.choices else None
                    if content:
                        yield ChatDelta(content=content)
                    if chunk.usage:
                        yield ChatDelta(
                            prompt_tokens=chunk.usage.prompt_tokens,
                            completion_tokens=chunk.usage.completion_tokens,
                        )
            except openai.OpenAIError as e:
                raise LLMServiceError(f"OpenAI stream error: {e}") from e

    # Perplexity

    def _pplx_headers(self) -> Dict[str, str]:
        if not self.perplexity_api_key:
            raise LLMConfigurationError(
                "PERPLEXITY_API_KEY is not set. Please configure PERPLEXITY_API_KEY in environment variables."
            )
        return {
            "Authorization": f"Bearer {self.perplexity_api_key}",
            "Content-Type": "application/json",
        }

    def _pplx_payload(self, model: str, messages: List[Dict[str, str]], stream: bool) -> dict:
        return {
            "model": model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }

    async def _pplx_complete(self, messages: List[Dict[str, str]]) -> ChatResult:
        headers = self._pplx_headers()
        models_to_try = perplexity_candidates(self.perplexity_model, self.prefer_cheapest)
        last_detail = None
        async with httpx.AsyncClient(base_url=PERPLEXITY_BASE_URL, timeout=httpx.Timeout(self.timeout)) as client:
            for model in models_to_try:
                try:
                    resp = await client.post(
                        "/chat/completions", json=self._pplx_payload(model, messages, False), headers=headers
                    )
                except httpx.TransportError as e:
                    raise LLMServiceError(f"Perplexity API connection error: {e}") from e
                if resp.status_code == 400:
                    detail = _json_or_text(resp.content)
                    if _is_invalid_model(detail):
                        last_detail = detail
                        continue
                if resp.status_code >= 400:
                    raise LLMServiceError(
                        f"Perplexity API error {resp.status_code}: {_json_or_text(resp.content)}"
                    )
                data = resp.json()
                content = (data.get("choices", [{}])[0].get("message", {}) or {}).get("content", "") or ""
                usage = data.get("usage") or {}
                return ChatResult(
                    text=content,
                    model=data.get("model") or model,
                    prompt_tokens=usage.get("prompt_tokens", 0),
                    completion_tokens=usage.get("completion_tokens", 0),
                )

        raise LLMServiceError(
            f"Perplexity API invalid_model for all candidates: {models_to_try}. Last detail: {last_detail}"
        )

    async def _pplx_stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[ChatDelta]:
        headers = self._pplx_headers()
        models_to_try = perplexity_candidates(self.perplexity_model, self.prefer_cheapest)
        last_detail = None
        async with httpx.AsyncClient(base_url=PERPLEXITY_BASE_URL, timeout=httpx.Timeout(self.timeout)) as client:
            for model in models_to_try:
                payload = self._pplx_payload(model, messages, True)
                try:
                    async with client.stream("POST", "/chat/completions", json=payload, headers=headers) as resp:
                        if resp.status_code >= 400:
                            detail = _json_or_text(await resp.aread())
                            if resp.status_code == 400 and _is_invalid_model(detail):
                                last_detail = detail
                                continue
                            raise LLMServiceError(f"Perplexity API error {resp.status_code}: {detail}")
                        usage = None
                        async for line in resp.aiter_lines():
                            if not line.startswith("data:"):
                                continue
                            data = line[len("data:"):].strip()
                            if data == "[DONE]":
                                break
                            event = json.loads(data)
                            choices = event.get("choices") or [{}]
                            content = (choices[0].get("delta") or {}).get("content")
                            if content:
                                yield ChatDelta(content=content)
                            # usage is cumulative; the last one seen wins
                            usage = event.get("usage") or usage
                        if usage:
                            yield ChatDelta(
                                prompt_tokens=usage.get("prompt_tokens", 0),
                                completion_tokens=usage.get("completion_tokens", 0),
                            )
                        return
                except httpx.TransportError as e:
                    raise LLMServiceError(f"Perplexity API connection error: {e}") from e

        raise LLMServiceError(
            f"Perplexity API invalid_model for all candidates: {models_to_try}. Last detail: {last_detail}"
        )
