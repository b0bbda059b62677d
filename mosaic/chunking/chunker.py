"""
Mosaic - Length-Aware Chunker
------------------------------
Splits item text into ordered segments for embedding.

Strategy selection logic:
  - SMALL / MEDIUM docs (<= CHUNKING_THRESHOLD chars):
      KEEP_WHOLE -- the whole (trimmed) text is one chunk.  A typical note is
      a few hundred characters; splitting it only multiplies embedding calls
      without improving search.

  - LARGE docs (> CHUNKING_THRESHOLD chars):
      SLIDING_WINDOW -- windows of MAX_CHUNK_SIZE characters with
      CHUNK_OVERLAP characters carried into the next window.  A window that
      ends before the end of the text is cut back to the last '.' or newline
      when that break point lies past 30% of the window, so chunks end on
      sentence / paragraph boundaries instead of mid-sentence.

Both strategies respect MAX_CHUNKS_PER_ITEM, and the sliding window is
bounded by an iteration ceiling so degenerate parameters (overlap >= size)
still terminate.
"""
from __future__ import annotations

import math
from typing import Any

from loguru import logger

from mosaic.chunking.schemas import Chunk


# ── Constants ─────────────────────────────────────────────────────────────────

CHUNKING_THRESHOLD = 20000   # Only documents longer than this are split
MAX_CHUNK_SIZE = 1000        # Characters per window
CHUNK_OVERLAP = 200          # Characters shared between consecutive windows
MAX_CHUNKS_PER_ITEM = 50     # Embedding budget per item
MIN_BREAK_RATIO = 0.3        # Break points before 30% of the window are ignored


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 characters per token for English text)."""
    return math.ceil(len(text) / 4)


def split_into_chunks(
    text: Any,
    max_chunk_size: int = MAX_CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
    threshold: int = CHUNKING_THRESHOLD,
    max_chunks: int = MAX_CHUNKS_PER_ITEM,
) -> list[str]:
    """
    Split text into ordered, non-empty, trimmed chunks.

    Args:
        text: Input text. Anything that is not a non-empty string yields [].
        max_chunk_size: Window size in characters.
        overlap: Characters repeated at the start of the next window.
        threshold: Texts at or below this length are returned whole.
        max_chunks: Hard cap on the number of chunks emitted.

    Returns:
        List of chunk strings in document order.
    """
    if not isinstance(text, str) or not text:
        return []

    stripped = text.strip()
    if not stripped:
        return []

    if len(text) <= threshold or len(text) <= max_chunk_size:
        return [stripped]

    length = len(text)
    stride = max(1, max_chunk_size - overlap)
    max_iterations = math.ceil(length / stride) + 10

    chunks: list[str] = []
    start = 0
    iterations = 0

    while start < length and iterations < max_iterations:
        iterations += 1
        end = min(start + max_chunk_size, length)

        if end < length:
            break_point = max(text.rfind(".", start, end), text.rfind("\n", start, end))
            if break_point > start + max_chunk_size * MIN_BREAK_RATIO:
                end = break_point + 1

        chunk = text[start:end].strip()
        if chunk:
            chunks.append(chunk)

        if end >= length or len(chunks) >= max_chunks:
            break

        start = max(start + 1, end - overlap)
    else:
        logger.warning(
            f"[Chunker] Iteration ceiling hit ({max_iterations}) for {length} chars "
            f"| size={max_chunk_size} overlap={overlap}"
        )

    return chunks[:max_chunks]


# ── Main Chunker ──────────────────────────────────────────────────────────────

class TextChunker:
    """
    Applies split_into_chunks() with configured parameters.

    Usage:
        chunker = TextChunker.from_config(cfg)
        pieces = chunker.split(item.raw_text)
    """

    def __init__(
        self,
        max_chunk_size: int = MAX_CHUNK_SIZE,
        overlap: int = CHUNK_OVERLAP,
        threshold: int = CHUNKING_THRESHOLD,
        max_chunks: int = MAX_CHUNKS_PER_ITEM,
    ) -> None:
        self.max_chunk_size = max_chunk_size
        self.overlap = overlap
        self.threshold = threshold
        self.max_chunks = max_chunks

    @classmethod
    def from_config(cls, config: dict) -> "TextChunker":
        cfg = config.get("chunking", {})
        return cls(
            max_chunk_size=cfg.get("max_chunk_size", MAX_CHUNK_SIZE),
            overlap=cfg.get("overlap", CHUNK_OVERLAP),
            threshold=cfg.get("threshold", CHUNKING_THRESHOLD),
            max_chunks=cfg.get("max_chunks", MAX_CHUNKS_PER_ITEM),
        )

    def split(self, text: Any) -> list[str]:
        pieces = split_into_chunks(
            text,
            max_chunk_size=self.max_chunk_size,
            overlap=self.overlap,
            threshold=self.threshold,
            max_chunks=self.max_chunks,
        )
        if isinstance(text, str):
            strategy = "keep_whole" if len(pieces) <= 1 else "sliding_window"
            logger.debug(f"[Chunker] {len(text)} chars | {strategy} -> {len(pieces)} chunk(s)")
        return pieces

    @staticmethod
    def build_chunks(
        item_id: str,
        texts: list[str],
        embeddings: list[list[float] | None],
    ) -> list[Chunk]:
        """Pair chunk texts with their embeddings, numbering them in order."""
        if len(texts) != len(embeddings):
            raise ValueError(
                f"Mismatch: {len(texts)} chunk texts vs {len(embeddings)} embeddings"
            )
        return [
            Chunk(
                item_id=item_id,
                order_index=i,
                text=text,
                embedding=embedding,
                token_estimate=estimate_tokens(text),
            )
            for i, (text, embedding) in enumerate(zip(texts, embeddings))
        ]
