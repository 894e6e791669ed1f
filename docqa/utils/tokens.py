"""Token counting for the OpenAI model family.

Uses tiktoken when an encoding can be loaded. Otherwise, or when constructed
with ``approximate=True``, counts are an ESTIMATE of ``ceil(words * 0.75)``
and splitting happens on whitespace-separated words.
"""

import math
from functools import lru_cache
from typing import List, Optional

import structlog
import tiktoken

logger = structlog.get_logger(__name__)

DEFAULT_ENCODING = "cl100k_base"


@lru_cache(maxsize=8)
def load_encoding(model: str) -> Optional[tiktoken.Encoding]:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        pass
    except Exception as e:
        # tiktoken fetches BPE files on first use; offline hosts end up here
        logger.warning("tokenizer_unavailable", model=model, error=str(e))
        return None
    try:
        return tiktoken.get_encoding(DEFAULT_ENCODING)
    except Exception as e:
        logger.warning("tokenizer_unavailable", model=model, encoding=DEFAULT_ENCODING, error=str(e))
        return None


class TokenCounter:
    TOKENS_PER_WORD = 0.75

    def __init__(self, model: str = "gpt-4", approximate: bool = False):
        self.model = model
        self._encoding = None if approximate else load_encoding(model)

    @property
    def exact(self) -> bool:
        return self._encoding is not None

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is not None:
            return len(self._encoding.encode(text, disallowed_special=()))
        return math.ceil(len(text.split()) * self.TOKENS_PER_WORD)

    def truncate(self, text: str, max_tokens: int) -> str:
        if max_tokens <= 0:
            return ""
        if self.count(text) <= max_tokens:
            return text
        if self._encoding is None:
            return " ".join(text.split()[: self._words_for(max_tokens)])
        tokens = self._encoding.encode(text, disallowed_special=())
        return self._decode_within(tokens[:max_tokens], max_tokens)

    def split_by_tokens(self, text: str, max_tokens: int, overlap_tokens: int = 0) -> List[str]:
        """Split into pieces of at most ``max_tokens``, each starting
        ``max_tokens - overlap_tokens`` tokens after the previous one."""
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if overlap_tokens < 0 or overlap_tokens >= max_tokens:
            raise ValueError("overlap_tokens must be in [0, max_tokens)")
        if not text.strip():
            return []
        if self.count(text) <= max_tokens:
            return [text.strip()]
        if self._encoding is None:
            return self._split_words(text, max_tokens, overlap_tokens)

        tokens = self._encoding.encode(text, disallowed_special=())
        step = max_tokens - overlap_tokens
        pieces = []
        start = 0
        while start < len(tokens):
            end = min(start + max_tokens, len(tokens))
            piece = self._decode_within(tokens[start:end], max_tokens)
            if piece:
                pieces.append(piece)
            if end == len(tokens):
                break
            start += step
        return pieces

    def _split_words(self, text: str, max_tokens: int, overlap_tokens: int) -> List[str]:
        words = text.split()
        size = self._words_for(max_tokens)
        step = min(size, self._words_for(max_tokens - overlap_tokens))
        pieces = []
        start = 0
        while start < len(words):
            end = min(start + size, len(words))
            pieces.append(" ".join(words[start:end]))
            if end == len(words):
                break
            start += step
        return pieces

    def _words_for(self, tokens: int) -> int:
        return max(1, int(tokens / self.TOKENS_PER_WORD))

    def _decode_within(self, tokens: List[int], max_tokens: int) -> str:
        # decode/encode is not an exact round trip at slice edges
        piece = self._encoding.decode(tokens).strip()
        while len(tokens) > 1 and self.count(piece) > max_tokens:
            tokens = tokens[:-1]
            piece = self._encoding.decode(tokens).strip()
        return piece
