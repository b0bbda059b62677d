"""
Hybrid Search
--------------
Searches a user's items through their chunks.

  dense  -- faiss.IndexFlatIP over L2-normalised chunk embeddings (inner
            product == cosine), hits kept when cosine > threshold
  text   -- rank_bm25 over title + summary + text of every item, used when
            dense search finds nothing or when mode="text"

Results are de-duplicated by item (best chunk wins), optionally filtered
to items carrying every requested tag, and returned best score first.
The index is built per query from the database; corpora are personal-scale.
"""
from __future__ import annotations

import re
from typing import Literal, Optional

import faiss
import numpy as np
from langsmith import traceable
from loguru import logger
from pydantic import BaseModel, Field
from rank_bm25 import BM25Okapi

from mosaic.chunking.schemas import Chunk
from mosaic.embedding.embedder import Embedder
from mosaic.errors import ExternalServiceError
from mosaic.schemas import SourceItem
from mosaic.storage.items import ItemRepository
from mosaic.utils.helpers import normalise_tag, truncate_text

SIMILARITY_THRESHOLD = 0.7
TOP_K = 10

SearchMode = Literal["hybrid", "dense", "text"]


def _bm25_tokens(text: str) -> list[str]:
    """Lowercase, replace punctuation with spaces, drop one-character tokens."""
    normalised = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    return [t for t in normalised.split() if len(t) > 1]


class SearchHit(BaseModel):
    item_id: str
    item_type: str
    title: Optional[str] = None
    snippet: str = ""
    score: float
    match: Literal["dense", "text"]
    tags: list[str] = Field(default_factory=list)


class ChunkIndex:
    """FAISS inner-product index over one user's chunk embeddings."""

    def __init__(self, dimensions: int) -> None:
        self.dimensions = dimensions
        self.faiss_index = faiss.IndexFlatIP(dimensions)
        self.chunks: list[Chunk] = []

    @classmethod
    def from_chunks(cls, chunks: list[Chunk]) -> "ChunkIndex | None":
        usable = [c for c in chunks if c.embedding]
        if not usable:
            return None
        dims = len(usable[0].embedding)
        usable = [c for c in usable if len(c.embedding) == dims]

        matrix = np.array([c.embedding for c in usable], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        matrix = np.ascontiguousarray(matrix / np.where(norms == 0, 1, norms), dtype=np.float32)

        index = cls(dims)
        index.faiss_index.add(matrix)
        index.chunks = usable
        return index

    def search(self, query_vec: np.ndarray, top_k: int) -> list[tuple[Chunk, float]]:
        qv = np.ascontiguousarray(query_vec.reshape(1, -1), dtype=np.float32)
        k = min(top_k, self.faiss_index.ntotal)
        scores, indices = self.faiss_index.search(qv, k)
        return [
            (self.chunks[idx], float(score))
            for score, idx in zip(scores[0], indices[0])
            if idx >= 0
        ]


class HybridSearcher:
    def __init__(
        self,
        items: ItemRepository,
        embedder: Embedder,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        top_k: int = TOP_K,
    ) -> None:
        self.items = items
        self.embedder = embedder
        self.similarity_threshold = similarity_threshold
        self.top_k = top_k

    @classmethod
    def from_config(cls, items: ItemRepository, embedder: Embedder, config: dict) -> "HybridSearcher":
        cfg = config.get("search", {})
        return cls(
            items,
            embedder,
            similarity_threshold=cfg.get("similarity_threshold", SIMILARITY_THRESHOLD),
            top_k=cfg.get("top_k", TOP_K),
        )

    @traceable(name="search", run_type="retriever")
    def search(
        self,
        user_id: str,
        query: str,
        tags: list[str] | None = None,
        limit: int | None = None,
        mode: SearchMode = "hybrid",
    ) -> list[SearchHit]:
        query = (query or "").strip()
        if not query:
            return []
        limit = limit or self.top_k
        items = {item.id: item for item in self.items.list_items(user_id)}
        if tags:
            wanted = {normalise_tag(t) for t in tags}
            items = {k: v for k, v in items.items() if wanted <= set(v.tags)}
        if not items:
            return []

        hits: list[SearchHit] = []
        if mode in ("hybrid", "dense"):
            hits = self._dense(user_id, query, items, limit)
        if not hits and mode in ("hybrid", "text"):
            hits = self._text(query, items, limit)

        logger.info(f"[Search] user={user_id} | '{truncate_text(query, 60)}' | mode={mode} -> {len(hits)} hits")
        return hits

    def _dense(self, user_id: str, query: str, items: dict[str, SourceItem], limit: int) -> list[SearchHit]:
        chunks = [c for c in self.items.user_chunks(user_id) if c.item_id in items]
        index = ChunkIndex.from_chunks(chunks)
        if index is None:
            return []

        try:
            query_vec = self.embedder.embed_texts([query])[0]
        except ExternalServiceError as exc:
            logger.warning(f"[Search] Query embedding failed, falling back to text search: {exc}")
            return []
        if len(query_vec) != index.dimensions:
            logger.warning(f"[Search] Query dimension {len(query_vec)} != index {index.dimensions}")
            return []

        best: dict[str, SearchHit] = {}
        for chunk, score in index.search(query_vec, top_k=max(limit * 5, 50)):
            if score <= self.similarity_threshold or chunk.item_id in best:
                continue
            best[chunk.item_id] = self._hit(items[chunk.item_id], chunk.text, score, "dense")
        return sorted(best.values(), key=lambda h: h.score, reverse=True)[:limit]

    def _text(self, query: str, items: dict[str, SourceItem], limit: int) -> list[SearchHit]:
        docs = list(items.values())
        corpus = [
            _bm25_tokens(" ".join(p for p in (d.title, d.summary, d.raw_text) if p)) for d in docs
        ]
        tokens = _bm25_tokens(query)
        if not tokens or not any(corpus):
            return []

        bm25 = BM25Okapi([c or [""] for c in corpus])
        scores = bm25.get_scores(tokens)
        order = np.argsort(scores)[::-1][:limit]

        hits = []
        for i in order:
            # BM25 IDF can be zero or negative on tiny corpora; require a real token overlap
            if scores[i] <= 0 and not set(tokens) & set(corpus[i]):
                continue
            doc = docs[i]
            hits.append(self._hit(doc, doc.summary or doc.raw_text or "", float(scores[i]), "text"))
        return hits

    @staticmethod
    def _hit(item: SourceItem, text: str, score: float, match: str) -> SearchHit:
        return SearchHit(
            item_id=item.id,
            item_type=item.item_type.value,
            title=item.title,
            snippet=truncate_text(text, 200),
            score=score,
            match=match,
            tags=item.tags,
        )
