"""Split cleaned document text into overlapping, token-bounded passages."""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..errors import ValidationError
from ..utils.text import PAGE_BREAK
from ..utils.tokens import TokenCounter

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


@dataclass
class TextChunk:
    content: str
    chunk_index: int
    page_number: Optional[int]
    tokens: int


def split_into_paragraphs(text: str) -> List[Tuple[int, str]]:
    """Return (1-based page, paragraph) pairs; pages are form-feed delimited."""
    paragraphs = []
    for page, segment in enumerate(text.split(PAGE_BREAK), start=1):
        for paragraph in _PARAGRAPH_BREAK.split(segment):
            paragraph = paragraph.strip()
            if paragraph:
                paragraphs.append((page, paragraph))
    return paragraphs


def split_into_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_END.split(text) if s.strip()]


class Chunker:
    """Paragraph-first chunker.

    Paragraphs are packed into a buffer until the next one would push it past
    ``max_tokens``. The next buffer starts with the tail of the chunk just
    emitted. That tail is cut with a words-per-token ratio, so the overlap is
    APPROXIMATE: it lands near ``overlap_tokens``, not exactly on it. When the
    tail plus the next paragraph would not fit, the tail is dropped so no chunk
    ever exceeds ``max_tokens``.
    """

    def __init__(self, counter: TokenCounter):
        self.counter = counter

    def chunk(
        self,
        text: str,
        max_tokens: int = 512,
        overlap_percentage: int = 20,
        preserve_sentences: bool = True,
    ) -> List[TextChunk]:
        if max_tokens <= 0:
            raise ValidationError("max_tokens must be positive")
        if not 0 <= overlap_percentage < 100:
            raise ValidationError("overlap_percentage must be in [0, 100)")
        overlap_tokens = max_tokens * overlap_percentage // 100

        chunks: List[TextChunk] = []
        current = ""
        current_page: Optional[int] = None

        for page, paragraph in split_into_paragraphs(text):
            if self.counter.count(paragraph) > max_tokens:
                if current:
                    self._emit(chunks, current, current_page)
                    current = ""
                for piece in self._split_large(paragraph, max_tokens, overlap_tokens, preserve_sentences):
                    self._emit(chunks, piece, page)
                continue

            if not current:
                current, current_page = paragraph, page
                continue

            candidate = current + "\n\n" + paragraph
            if self.counter.count(candidate) <= max_tokens:
                current = candidate
                continue

            self._emit(chunks, current, current_page)
            current = self._seed(current, paragraph, "\n\n", max_tokens, overlap_tokens)
            current_page = page

        if current:
            self._emit(chunks, current, current_page)
        return chunks

    def _split_large(self, paragraph: str, max_tokens: int, overlap_tokens: int, preserve_sentences: bool) -> List[str]:
        if not preserve_sentences:
            return self.counter.split_by_tokens(paragraph, max_tokens, overlap_tokens)

        pieces: List[str] = []
        current = ""
        for sentence in split_into_sentences(paragraph):
            if self.counter.count(sentence) > max_tokens:
                if current:
                    pieces.append(current)
                    current = ""
                # no boundary left to respect
                pieces.extend(self.counter.split_by_tokens(sentence, max_tokens, overlap_tokens))
                continue

            if not current:
                current = sentence
                continue

            candidate = current + " " + sentence
            if self.counter.count(candidate) <= max_tokens:
                current = candidate
                continue

            pieces.append(current)
            current = self._seed(current, sentence, " ", max_tokens, overlap_tokens)

        if current:
            pieces.append(current)
        return pieces

    def _seed(self, previous: str, following: str, joiner: str, max_tokens: int, overlap_tokens: int) -> str:
        if overlap_tokens <= 0:
            return following
        overlap = self.overlap_text(previous, overlap_tokens)
        if not overlap:
            return following
        seeded = overlap + joiner + following
        if self.counter.count(seeded) > max_tokens:
            return following
        return seeded

    def overlap_text(self, text: str, overlap_tokens: int) -> str:
        """Tail of ``text`` worth roughly ``overlap_tokens`` tokens."""
        tokens = self.counter.count(text)
        if tokens <= overlap_tokens:
            return text
        words = text.split()
        keep = (overlap_tokens * len(words) + tokens - 1) // tokens
        return " ".join(words[-keep:]) if keep else ""

    def _emit(self, chunks: List[TextChunk], content: str, page: Optional[int]) -> None:
        content = content.strip()
        if not content:
            return
        chunks.append(TextChunk(
            content=content,
            chunk_index=len(chunks),
            page_number=page,
            tokens=self.counter.count(content),
        ))
