"""
Split oversized input text into ordered, boundary-aware chunks.

Break points are searched backwards from the chunk size, preferring a
paragraph break, then a line break, then a sentence end, and finally a hard
cut. A boundary earlier than half the chunk size is ignored so chunks never
degenerate into small fragments.
"""
from typing import Optional

from loguru import logger

from remote_job_client.models import Chunk, ChunkingConfig

PARAGRAPH_BREAK = "\n\n"
LINE_BREAK = "\n"
SENTENCE_END = ". "


def needs_chunking(text: str, threshold_to_chunk: int) -> bool:
    return len(text) > threshold_to_chunk


def _find_break(segment: str, chunk_size: int, min_ratio: float) -> int:
    """Return how many characters of `segment` belong to the next chunk"""
    if len(segment) <= chunk_size:
        return len(segment)

    window = segment[:chunk_size]
    earliest = int(chunk_size * min_ratio)

    for separator, keep in ((PARAGRAPH_BREAK, 0), (LINE_BREAK, 0), (SENTENCE_END, 1)):
        position = window.rfind(separator)
        if position >= earliest and position > 0:
            return position + keep

    return chunk_size


def _strip_span(text: str, start: int, end: int) -> tuple[int, int]:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def split(
    text: str,
    chunk_size: int,
    threshold_to_chunk: int,
    min_break_ratio: float = 0.5,
) -> list[Chunk]:
    """Split `text` into trimmed chunks of at most `chunk_size` characters"""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    if not needs_chunking(text, threshold_to_chunk):
        start, end = _strip_span(text, 0, len(text))
        if start == end:
            return []
        return [Chunk(index=0, total=1, text=text[start:end], start=start, end=end)]

    spans: list[tuple[int, int]] = []
    position = 0
    while position < len(text):
        cut = _find_break(text[position:], chunk_size, min_break_ratio)
        start, end = _strip_span(text, position, position + cut)
        if start < end:
            spans.append((start, end))
        position += cut

    chunks = [
        Chunk(index=i, total=len(spans), text=text[start:end], start=start, end=end)
        for i, (start, end) in enumerate(spans)
    ]
    logger.info(
        f"Split {len(text):,} chars into {len(chunks)} chunks: {[len(c.text) for c in chunks]}"
    )
    return chunks


def split_with_config(text: str, config: Optional[ChunkingConfig] = None) -> list[Chunk]:
    config = config or ChunkingConfig()
    return split(text, config.chunk_size, config.threshold_to_chunk, config.min_break_ratio)


def reassemble(text: str, chunks: list[Chunk]) -> str:
    """Rebuild the input by re-inserting the whitespace trimmed between chunks"""
    parts = []
    position = 0
    for chunk in chunks:
        parts.append(text[position:chunk.start])
        parts.append(chunk.text)
        position = chunk.end
    parts.append(text[position:])
    return "".join(parts)
