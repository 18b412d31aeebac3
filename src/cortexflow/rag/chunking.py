"""Document chunking strategies.

Every chunk produced here is an exact slice of the input text with
surrounding whitespace trimmed, so ``text[chunk.start_offset:chunk.end_offset]``
always equals ``chunk.content``.
"""

import math
import re
from typing import Optional

from .base import BaseChunker
from .config import ChunkingConfig
from .document import ChunkResult

BLANK_LINE = re.compile(r"\n[ \t\r\f\v]*\n")
SENTENCE_END = re.compile(r"[.!?]+(?=\s|$)")
MARKDOWN_HEADER = re.compile(r"^#{1,6}[ \t]+\S.*$", re.MULTILINE)
CODE_FENCE = re.compile(r"^(```|~~~)[^\n]*\n.*?^\1[ \t]*$", re.MULTILINE | re.DOTALL)
INITIALISM = re.compile(r"^(?:[A-Za-z]\.){2,}$|^[A-Z]\.$")

ABBREVIATIONS = frozenset({
    "mr.", "mrs.", "ms.", "dr.", "prof.", "sr.", "jr.", "st.", "mt.", "vs.",
    "inc.", "ltd.", "co.", "corp.", "dept.", "est.", "approx.", "fig.", "no.",
    "vol.", "cf.", "al.", "gen.", "gov.", "sen.", "rep.", "capt.", "lt.", "col.",
    "jan.", "feb.", "mar.", "apr.", "jun.", "jul.", "aug.", "sep.", "sept.",
    "oct.", "nov.", "dec.",
})

# Max input tokens per embedding model
MODEL_TOKEN_LIMITS = {
    "text-embedding-3-small": 8191,
    "text-embedding-3-large": 8191,
    "text-embedding-ada-002": 8191,
    "all-MiniLM-L6-v2": 512,
    "sentence-transformers/all-MiniLM-L6-v2": 512,
    "all-mpnet-base-v2": 512,
    "voyage-2": 4000,
    "embed-english-v3.0": 512,
}
RECOMMENDED_CHUNK_SIZE_CAP = 8000


def _span(text: str, start: int, end: int) -> Optional[ChunkResult]:
    """Trim whitespace from text[start:end]; None if nothing is left."""
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if start >= end:
        return None
    return ChunkResult(content=text[start:end], start_offset=start, end_offset=end)


def _paragraph_spans(text: str, start: int, end: int) -> list[ChunkResult]:
    spans = []
    pos = start
    for match in BLANK_LINE.finditer(text, start, end):
        span = _span(text, pos, match.start())
        if span:
            spans.append(span)
        pos = match.end()
    span = _span(text, pos, end)
    if span:
        spans.append(span)
    return spans


def _is_abbreviation(text: str, match: re.Match) -> bool:
    if set(match.group()) != {"."}:
        return False

    word_start = match.start()
    while word_start > 0 and not text[word_start - 1].isspace():
        word_start -= 1
    word = text[word_start : match.end()].lstrip("([{\"'")

    if word.lower() in ABBREVIATIONS or INITIALISM.match(word):
        return True

    # A lowercase word after the period means the sentence continues
    rest = text[match.end() :].lstrip()
    return bool(rest) and rest[0].islower()


def split_sentences(text: str) -> list[ChunkResult]:
    """Split text into sentence spans without breaking on abbreviations."""
    spans = []
    pos = 0
    for match in SENTENCE_END.finditer(text):
        if _is_abbreviation(text, match):
            continue
        span = _span(text, pos, match.end())
        if span:
            spans.append(span)
        pos = match.end()
    span = _span(text, pos, len(text))
    if span:
        spans.append(span)
    return spans


class FixedSizeChunker(BaseChunker):
    """Sliding window of ``chunk_size`` characters with overlap.

    Windows end at the last whitespace past ``min_chunk_size`` when there is
    one, so words are not cut in half unless a single token fills the window.
    """

    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 100, min_chunk_size: int = 5):
        if chunk_overlap >= chunk_size:
            raise ValueError("Overlap must be less than chunk_size")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.min_chunk_size = min_chunk_size

    def chunk(self, text: str) -> list[ChunkResult]:
        chunks = []
        start, length = 0, len(text)

        while start < length:
            end = min(start + self.chunk_size, length)
            if end < length:
                for i in range(end, start + self.min_chunk_size, -1):
                    if text[i].isspace():
                        end = i
                        break

            span = _span(text, start, end)
            if span:
                chunks.append(span)
            if end >= length:
                break

            next_start = end - self.chunk_overlap
            start = next_start if next_start > start else end

        return chunks


class SentenceChunker(BaseChunker):
    """Group consecutive sentences into chunks of up to ``chunk_size`` characters."""

    def __init__(self, chunk_size: int = 1000):
        self.chunk_size = chunk_size

    def chunk(self, text: str) -> list[ChunkResult]:
        groups: list[tuple[int, int]] = []
        for sentence in split_sentences(text):
            if groups and sentence.end_offset - groups[-1][0] <= self.chunk_size:
                groups[-1] = (groups[-1][0], sentence.end_offset)
            else:
                groups.append((sentence.start_offset, sentence.end_offset))

        return [
            ChunkResult(content=text[start:end], start_offset=start, end_offset=end)
            for start, end in groups
        ]


class ParagraphChunker(BaseChunker):
    """One chunk per blank-line separated paragraph."""

    def chunk(self, text: str) -> list[ChunkResult]:
        return _paragraph_spans(text, 0, len(text))


class SemanticChunker(BaseChunker):
    """Split on markdown structure.

    Sections start at markdown headers. Fenced code blocks are never split
    and headers inside them are ignored. A section larger than
    ``max_chunk_size`` is broken into its paragraphs and code blocks, which
    are regrouped up to ``max_chunk_size``. Text with no headers and no code
    fences is chunked by paragraph.
    """

    def __init__(self, max_chunk_size: int = 2000):
        self.max_chunk_size = max_chunk_size

    def chunk(self, text: str) -> list[ChunkResult]:
        fences = [(m.start(), m.end()) for m in CODE_FENCE.finditer(text)]
        headers = [
            m.start() for m in MARKDOWN_HEADER.finditer(text)
            if not any(start <= m.start() < end for start, end in fences)
        ]
        if not headers and not fences:
            return ParagraphChunker().chunk(text)

        boundaries = sorted({0, *headers, len(text)})
        chunks = []
        for start, end in zip(boundaries, boundaries[1:]):
            section = _span(text, start, end)
            if section is None:
                continue
            if section.size <= self.max_chunk_size:
                chunks.append(section)
            else:
                chunks.extend(self._regroup(text, self._blocks(text, start, end, fences)))
        return chunks

    def _blocks(self, text: str, start: int, end: int, fences: list[tuple[int, int]]) -> list[ChunkResult]:
        blocks = []
        pos = start
        for fence_start, fence_end in fences:
            if fence_start < start or fence_start >= end:
                continue
            blocks.extend(_paragraph_spans(text, pos, fence_start))
            fence = _span(text, fence_start, min(fence_end, end))
            if fence:
                blocks.append(fence)
            pos = min(fence_end, end)
        blocks.extend(_paragraph_spans(text, pos, end))
        return blocks

    def _regroup(self, text: str, blocks: list[ChunkResult]) -> list[ChunkResult]:
        groups: list[tuple[int, int]] = []
        for block in blocks:
            if groups and block.end_offset - groups[-1][0] <= self.max_chunk_size:
                groups[-1] = (groups[-1][0], block.end_offset)
            else:
                groups.append((block.start_offset, block.end_offset))
        return [
            ChunkResult(content=text[start:end], start_offset=start, end_offset=end)
            for start, end in groups
        ]


def make_chunker(config: ChunkingConfig) -> BaseChunker:
    """Create the chunker for ``config.strategy``."""
    if config.strategy == "fixed":
        return FixedSizeChunker(config.chunk_size, config.chunk_overlap, config.min_chunk_size)
    if config.strategy == "sentence":
        return SentenceChunker(config.chunk_size)
    if config.strategy == "semantic":
        return SemanticChunker(config.max_chunk_size)
    return ParagraphChunker()


def chunk_document(text: str, config: Optional[ChunkingConfig] = None) -> list[ChunkResult]:
    """Split text into ordered chunks using the configured strategy.

    Oversized chunks are re-split and undersized neighbours merged, so the
    result respects ``min_chunk_size``/``max_chunk_size`` whatever the
    strategy. Indices run from 0 in order.

    Args:
        text: Text to chunk
        config: Chunking configuration (defaults apply when None)

    Returns:
        Ordered chunks; empty for empty or whitespace-only text
    """
    if not text or not text.strip():
        return []

    config = config or ChunkingConfig()
    pieces: list[ChunkResult] = []
    for chunk in make_chunker(config).chunk(text):
        pieces.extend(split_oversized_chunk(chunk, config.max_chunk_size))

    return merge_small_chunks(
        pieces,
        config.min_chunk_size,
        max_size=config.max_chunk_size,
        text=text,
    )


def merge_small_chunks(
    chunks: list[ChunkResult],
    min_size: int,
    *,
    max_size: Optional[int] = None,
    text: Optional[str] = None,
) -> list[ChunkResult]:
    """Merge undersized chunks into their successors.

    A chunk shorter than ``min_size`` absorbs the next chunk while the
    combined size stays under ``3 * min_size`` (and within ``max_size`` when
    given). When the source ``text`` is supplied the merged content is the
    exact source slice; otherwise contents are joined with a blank line.

    Returns:
        Chunks in the original order, re-indexed from 0
    """
    merged: list[ChunkResult] = []
    current: Optional[ChunkResult] = None

    for chunk in chunks:
        if current is None:
            current = chunk
            continue

        if text is not None:
            combined = text[current.start_offset : chunk.end_offset]
        else:
            combined = current.content + "\n\n" + chunk.content

        fits = max_size is None or len(combined) <= max_size
        if current.size < min_size and len(combined) < min_size * 3 and fits:
            current = ChunkResult(
                content=combined,
                start_offset=current.start_offset,
                end_offset=max(current.end_offset, chunk.end_offset),
            )
        else:
            merged.append(current.model_copy(update={"index": len(merged)}))
            current = chunk

    if current is not None:
        merged.append(current.model_copy(update={"index": len(merged)}))

    return merged


def split_oversized_chunk(chunk: ChunkResult, max_size: int) -> list[ChunkResult]:
    """Re-split a chunk longer than ``max_size`` into fixed windows.

    Windows break at the last whitespace when possible and are hard-cut
    otherwise. Offsets stay absolute and the first piece starts at the
    input's ``start_offset``.
    """
    if max_size < 1:
        raise ValueError("max_size must be positive")
    if chunk.size <= max_size:
        return [chunk]

    content = chunk.content
    length = len(content)
    pieces: list[ChunkResult] = []
    start = 0

    while start < length:
        if pieces:
            while start < length and content[start].isspace():
                start += 1
            if start >= length:
                break

        end = min(start + max_size, length)
        if end < length:
            cut = end
            while cut > start and not content[cut].isspace():
                cut -= 1
            if cut > start:
                end = cut

        piece_end = end
        while piece_end > start and content[piece_end - 1].isspace():
            piece_end -= 1
        if piece_end > start:
            pieces.append(ChunkResult(
                content=content[start:piece_end],
                start_offset=chunk.start_offset + start,
                end_offset=chunk.start_offset + piece_end,
                index=len(pieces),
            ))
        start = end

    return pieces


def estimate_token_count(text: str) -> int:
    """Rough token estimate (~4 characters per token), for sizing only."""
    return math.ceil(len(text) / 4)


def get_recommended_chunk_size(model: str) -> int:
    """Recommended chunk size in characters for an embedding model."""
    max_tokens = MODEL_TOKEN_LIMITS.get(model, 512)
    # 80% of the limit leaves room for special tokens
    return min(int(max_tokens * 0.8 * 4), RECOMMENDED_CHUNK_SIZE_CAP)
