"""Text chunking for chunk-level embeddings and search highlights.

Chunks are slices of the original text: ``text == source[start_char:end_char]``.
Consecutive chunks overlap by up to ``chunk_overlap`` characters, so the
source can be rebuilt from the first chunk plus each later chunk's text past
the previous ``end_char``.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Literal

# Chunking parameters
CHUNK_SIZE = 500  # characters (~125 tokens)
CHUNK_OVERLAP = 50
MIN_CHUNK_SIZE = 100
MAX_CHUNK_CHARS = 10_000  # hard cap on stored chunk text

SplitMode = Literal["sentence", "paragraph", "character"]

_ABBREVIATIONS = re.compile(
    r"\b(?:Mrs|Mr|Ms|Dr|Prof|Sr|Jr|vs|etc)\.|\b(?:i\.e|e\.g)\.",
    re.IGNORECASE,
)
_PLACEHOLDER = "\x00"
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_PARAGRAPH_BOUNDARY = re.compile(r"\n\s*\n+")


@dataclass
class Chunk:
    """A document chunk with position information."""

    id: str
    text: str
    index: int
    start_char: int
    end_char: int


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token for English.

    This is a simple heuristic. For exact counts, use tiktoken.
    """
    return len(text) // 4


def chunk_id(text: str, index: int) -> str:
    """Deterministic id from the chunk's first 50 characters and its index."""
    digest = hashlib.sha1(text[:50].encode("utf-8")).hexdigest()[:12]
    return f"chunk_{digest}_{index}"


def _append_span(text: str, start: int, end: int, spans: list[tuple[str, int, int]]) -> None:
    segment = text[start:end]
    stripped = segment.strip()
    if not stripped:
        return
    lead = len(segment) - len(segment.lstrip())
    s = start + lead
    spans.append((stripped, s, s + len(stripped)))


def _protect_abbreviations(text: str) -> str:
    # Placeholders are the same length as the dots they replace, so match
    # positions in the protected text are valid in the original.
    return _ABBREVIATIONS.sub(lambda m: m.group(0).replace(".", _PLACEHOLDER), text)


def split_into_sentences(text: str) -> list[tuple[str, int, int]]:
    """Split text into sentences with position tracking.

    Splits on ``.``, ``!`` or ``?`` followed by whitespace. Common
    abbreviations (Mr., Dr., e.g., ...) are not treated as boundaries.
    Returns list of (sentence, start, end) tuples.
    """
    protected = _protect_abbreviations(text)

    sentences: list[tuple[str, int, int]] = []
    last_end = 0
    for match in _SENTENCE_BOUNDARY.finditer(protected):
        _append_span(text, last_end, match.start(), sentences)
        last_end = match.end()

    # Add remaining text as last sentence
    _append_span(text, last_end, len(text), sentences)
    return sentences


def split_into_paragraphs(text: str) -> list[tuple[str, int, int]]:
    """Split text into paragraphs with position tracking.

    Paragraphs are separated by blank lines (2+ newlines).
    Returns list of (paragraph, start, end) tuples.
    """
    paragraphs: list[tuple[str, int, int]] = []
    last_end = 0
    for match in _PARAGRAPH_BOUNDARY.finditer(text):
        _append_span(text, last_end, match.start(), paragraphs)
        last_end = match.end()

    _append_span(text, last_end, len(text), paragraphs)
    return paragraphs


def _hard_split(spans: list[tuple[str, int, int]], limit: int) -> list[tuple[int, int]]:
    out: list[tuple[int, int]] = []
    for _, start, end in spans:
        while end - start > limit:
            out.append((start, start + limit))
            start += limit
        out.append((start, end))
    return out


def _chunk_by_characters(
    text: str, chunk_size: int, chunk_overlap: int, min_chunk_size: int
) -> list[tuple[int, int]]:
    stripped = text.strip()
    if not stripped:
        return []
    begin = len(text) - len(text.lstrip())
    finish = begin + len(stripped)
    stride = max(1, chunk_size - chunk_overlap)

    windows: list[tuple[int, int]] = []
    start = begin
    while start < finish:
        end = min(start + chunk_size, finish)
        if end - start < min_chunk_size:
            break
        windows.append((start, end))
        if end == finish:
            break
        start += stride
    return windows


def _accumulate(
    segments: list[tuple[int, int]], chunk_size: int, chunk_overlap: int, min_chunk_size: int
) -> list[tuple[int, int]]:
    windows: list[tuple[int, int]] = []
    buf_start: int | None = None
    buf_end = 0
    # Where the text not yet part of any flushed chunk begins
    fresh_start = 0

    for seg_start, seg_end in segments:
        if buf_start is None:
            buf_start, buf_end, fresh_start = seg_start, seg_end, seg_start
            continue

        # A short buffer is still flushed when keeping it would break the hard cap
        over_cap = seg_end - buf_start > MAX_CHUNK_CHARS
        if seg_end - buf_start > chunk_size and (buf_end - buf_start >= min_chunk_size or over_cap):
            windows.append((buf_start, buf_end))
            overlap = min(chunk_overlap, buf_end - buf_start - 1)
            buf_start = buf_end - overlap if overlap > 0 else seg_start
            if seg_end - buf_start > MAX_CHUNK_CHARS:
                buf_start = seg_start
            fresh_start = seg_start
        buf_end = seg_end

    if buf_start is None:
        return windows

    if buf_end - buf_start >= min_chunk_size:
        windows.append((buf_start, buf_end))
    elif windows and buf_end > fresh_start:
        # Short tail: extend the previous chunk so no text is lost
        prev_start, _ = windows[-1]
        if buf_end - prev_start <= MAX_CHUNK_CHARS:
            windows[-1] = (prev_start, buf_end)
        else:
            windows.append((buf_start, buf_end))
    return windows


def chunk_text(
    text: str,
    chunk_size: int = CHUNK_SIZE,
    chunk_overlap: int = CHUNK_OVERLAP,
    min_chunk_size: int = MIN_CHUNK_SIZE,
    split_by: SplitMode = "sentence",
) -> list[Chunk]:
    """Chunk text into overlapping segments for embedding.

    Segments (sentences, paragraphs) are accumulated greedily. The buffer
    is flushed once the next segment would push it past ``chunk_size`` and
    it already holds ``min_chunk_size`` characters; the next buffer starts
    with the last ``chunk_overlap`` characters of the flushed one. Segments
    longer than ``chunk_size`` are hard-split first.

    Args:
        text: The document text to chunk
        chunk_size: Target chunk size in characters
        chunk_overlap: Overlap between consecutive chunks in characters
        min_chunk_size: Minimum chunk size (avoid tiny chunks)
        split_by: "sentence", "paragraph" or "character"

    Returns:
        List of Chunk objects with position data. Empty when the text is
        shorter than ``min_chunk_size``.
    """
    if not text or not text.strip():
        return []
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    chunk_size = min(chunk_size, MAX_CHUNK_CHARS - max(chunk_overlap, 0))

    if split_by == "character":
        windows = _chunk_by_characters(text, chunk_size, chunk_overlap, min_chunk_size)
    else:
        if split_by == "paragraph":
            spans = split_into_paragraphs(text)
        elif split_by == "sentence":
            spans = split_into_sentences(text)
        else:
            raise ValueError(f"Unknown split mode: {split_by}")
        windows = _accumulate(_hard_split(spans, chunk_size), chunk_size, chunk_overlap, min_chunk_size)

    chunks = []
    for index, (start, end) in enumerate(windows):
        piece = text[start:end]
        chunks.append(Chunk(id=chunk_id(piece, index), text=piece, index=index, start_char=start, end_char=end))
    return chunks


def get_chunking_info() -> dict:
    """Describe the chunking defaults (exposed by the health endpoint)."""
    return {
        "chunk_size": CHUNK_SIZE,
        "chunk_size_tokens": estimate_tokens("x" * CHUNK_SIZE),
        "chunk_overlap": CHUNK_OVERLAP,
        "chunk_overlap_percent": round(CHUNK_OVERLAP / CHUNK_SIZE * 100),
        "min_chunk_size": MIN_CHUNK_SIZE,
        "max_chunk_chars": MAX_CHUNK_CHARS,
        "description": (
            f"Documents are split into chunks of ~{CHUNK_SIZE} characters "
            f"(~{estimate_tokens('x' * CHUNK_SIZE)} tokens) on sentence boundaries. "
            f"{round(CHUNK_OVERLAP / CHUNK_SIZE * 100)}% overlap keeps context at the edges."
        ),
    }
