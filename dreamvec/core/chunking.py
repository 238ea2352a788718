"""Narrative chunking for embedding generation."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

CHARS_PER_TOKEN = 4  # rough estimate for English narratives

# Chunking parameters (tokens)
CHUNK_SIZE_TOKENS = 750
CHUNK_OVERLAP_TOKENS = 100
MAX_TOKENS_PER_CHUNK = 1000  # narratives up to this size stay in one chunk


@dataclass
class Chunk:
    """A narrative chunk with position information."""

    index: int
    text: str
    char_start: int
    char_end: int
    token_count: int

    def to_dict(self) -> dict:
        return {
            "chunk_index": self.index,
            "chunk_text": self.text,
            "char_start": self.char_start,
            "char_end": self.char_end,
            "token_count": self.token_count,
        }


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token, never below 1 for non-empty text."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN))


def split_into_sentences(text: str) -> list[tuple[str, int, int]]:
    """Split text into sentences with position tracking.

    Returns list of (sentence, start, end) tuples.
    """
    # . ! ? followed by whitespace and an uppercase letter or a quote, or end of string
    pattern = r"(?<=[.!?])\s+(?=[A-Z\"'])|(?<=[.!?])$"

    sentences = []
    last_end = 0

    for match in re.finditer(pattern, text):
        sentence = text[last_end : match.start() + 1].strip()
        if sentence:
            sentences.append((sentence, last_end, match.start() + 1))
        last_end = match.end()

    if last_end < len(text):
        remaining = text[last_end:].strip()
        if remaining:
            sentences.append((remaining, last_end, len(text)))

    return sentences


def split_into_paragraphs(text: str) -> list[tuple[str, int, int]]:
    """Split text into paragraphs with position tracking.

    Paragraphs are separated by blank lines (2+ newlines).
    Returns list of (paragraph, start, end) tuples.
    """
    paragraphs = []
    pattern = r"\n\s*\n+"

    last_end = 0
    for match in re.finditer(pattern, text):
        para = text[last_end : match.start()].strip()
        if para:
            paragraphs.append((para, last_end, match.start()))
        last_end = match.end()

    if last_end < len(text):
        remaining = text[last_end:].strip()
        if remaining:
            paragraphs.append((remaining, last_end, len(text)))

    return paragraphs


def _hard_split(text: str, start: int, size: int) -> list[tuple[str, int, int]]:
    """Split an overlong sentence at word boundaries (or mid-word if unavoidable)."""
    pieces = []
    pos = 0
    while pos < len(text):
        end = min(pos + size, len(text))
        if end < len(text):
            space = text.rfind(" ", pos, end)
            if space > pos:
                end = space
        piece = text[pos:end].strip()
        if piece:
            pieces.append((piece, start + pos, start + end))
        pos = end
    return pieces


def chunk_narrative(
    text: str,
    chunk_size_tokens: int = CHUNK_SIZE_TOKENS,
    chunk_overlap_tokens: int = CHUNK_OVERLAP_TOKENS,
    max_tokens_per_chunk: int = MAX_TOKENS_PER_CHUNK,
) -> list[Chunk]:
    """Chunk a narrative into overlapping segments for embedding.

    Short narratives (estimated tokens <= max_tokens_per_chunk) become a
    single chunk. Longer ones are packed recursively:
    1. First by paragraphs
    2. Paragraphs that are too long are split by sentences
    3. Sentences that are too long are split at word boundaries

    Each chunk after the first starts with the tail of its predecessor so
    context survives chunk boundaries. The result depends only on the text
    and the parameters, so re-runs are reproducible.

    Args:
        text: The narrative text.
        chunk_size_tokens: Target chunk size.
        chunk_overlap_tokens: Overlap carried into the next chunk.
        max_tokens_per_chunk: Single-chunk ceiling.

    Returns:
        List of Chunk objects in order, indexes starting at 0.
    """
    if not text or not text.strip():
        return []

    text = text.strip()

    if estimate_tokens(text) <= max_tokens_per_chunk:
        return [Chunk(index=0, text=text, char_start=0, char_end=len(text), token_count=estimate_tokens(text))]

    chunk_size = chunk_size_tokens * CHARS_PER_TOKEN
    chunk_overlap = chunk_overlap_tokens * CHARS_PER_TOKEN

    chunks: list[Chunk] = []
    current_text = ""
    current_start = 0

    def flush() -> None:
        nonlocal current_text, current_start
        chunks.append(
            Chunk(
                index=len(chunks),
                text=current_text,
                char_start=current_start,
                char_end=current_start + len(current_text),
                token_count=estimate_tokens(current_text),
            )
        )
        overlap_text = current_text[-chunk_overlap:] if chunk_overlap > 0 else ""
        current_start = current_start + len(current_text) - len(overlap_text)
        current_text = overlap_text

    def add(piece: str, start: int, sep: str) -> None:
        nonlocal current_text, current_start
        if current_text and len(current_text) + len(sep) + len(piece) > chunk_size:
            flush()
            # carried overlap shrinks so the chunk stays within chunk_size
            excess = len(current_text) + len(sep) + len(piece) - chunk_size
            if excess > 0:
                current_text = current_text[excess:]
                current_start += excess
        if current_text:
            current_text += sep + piece
        else:
            current_text = piece
            current_start = start

    for para_text, para_start, _para_end in split_into_paragraphs(text):
        if len(para_text) <= chunk_size:
            add(para_text, para_start, "\n\n")
            continue

        first = True
        for sent_text, sent_rel_start, sent_rel_end in split_into_sentences(para_text):
            pieces = (
                _hard_split(sent_text, para_start + sent_rel_start, chunk_size)
                if len(sent_text) > chunk_size
                else [(sent_text, para_start + sent_rel_start, para_start + sent_rel_end)]
            )
            for piece, piece_start, _ in pieces:
                add(piece, piece_start, "\n\n" if first else " ")
                first = False

    if current_text and (not chunks or len(current_text) > chunk_overlap):
        chunks.append(
            Chunk(
                index=len(chunks),
                text=current_text,
                char_start=current_start,
                char_end=current_start + len(current_text),
                token_count=estimate_tokens(current_text),
            )
        )

    return chunks


def get_chunking_info(
    chunk_size_tokens: int = CHUNK_SIZE_TOKENS,
    chunk_overlap_tokens: int = CHUNK_OVERLAP_TOKENS,
    max_tokens_per_chunk: int = MAX_TOKENS_PER_CHUNK,
) -> dict:
    """Chunking parameters for the operations endpoint."""
    return {
        "chunk_size_tokens": chunk_size_tokens,
        "chunk_size_chars": chunk_size_tokens * CHARS_PER_TOKEN,
        "chunk_overlap_tokens": chunk_overlap_tokens,
        "chunk_overlap_percent": round(chunk_overlap_tokens / chunk_size_tokens * 100),
        "max_tokens_per_chunk": max_tokens_per_chunk,
    }
