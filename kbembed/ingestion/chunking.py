from __future__ import annotations

from dataclasses import dataclass
import re

from kbembed.services.text import sanitize_text


CHUNK_SIZE_CHARS = 1200
CHUNK_OVERLAP_CHARS = 200
MAX_CHUNKS_PER_SOURCE = 300

_PARAGRAPH_BREAK_RE = re.compile(r"\n{2,}")


@dataclass(frozen=True)
class TextChunk:
    chunk_index: int
    content: str


def _validate_chunk_params(*, chunk_size: int, chunk_overlap: int, max_chunks: int) -> None:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if chunk_overlap < 0:
        raise ValueError("chunk_overlap must be non-negative")
    if max_chunks <= 0:
        raise ValueError("max_chunks must be positive")


def chunk_text(
    text: str,
    *,
    chunk_size: int = CHUNK_SIZE_CHARS,
    chunk_overlap: int = CHUNK_OVERLAP_CHARS,
    max_chunks: int = MAX_CHUNKS_PER_SOURCE,
) -> list[TextChunk]:
    """Split text into paragraph-packed chunks.

    Paragraphs are joined with a blank line while the result fits in
    ``chunk_size``. A paragraph longer than ``chunk_size`` is cut into
    fixed-width slices advancing by ``chunk_size - chunk_overlap``.
    Output stops at ``max_chunks``.
    """
    _validate_chunk_params(chunk_size=chunk_size, chunk_overlap=chunk_overlap, max_chunks=max_chunks)
    normalized = sanitize_text(text)
    if not normalized:
        return []

    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK_RE.split(normalized) if p.strip()]
    contents: list[str] = []
    current = ""
    stride = max(1, chunk_size - chunk_overlap)

    for paragraph in paragraphs:
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) <= chunk_size:
            current = candidate
            continue

        if current:
            contents.append(current)
            if len(contents) >= max_chunks:
                break

        if len(paragraph) <= chunk_size:
            current = paragraph
            continue

        cursor = 0
        while cursor < len(paragraph) and len(contents) < max_chunks:
            piece = paragraph[cursor : cursor + chunk_size]
            contents.append(piece)
            # A short slice means the paragraph tail has been emitted.
            if len(piece) < chunk_size:
                break
            cursor += stride
        current = ""
        if len(contents) >= max_chunks:
            break
    else:
        if current:
            contents.append(current)

    return [TextChunk(chunk_index=index, content=content) for index, content in enumerate(contents[:max_chunks])]
