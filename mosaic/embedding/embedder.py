"""
OpenAI Embedding Client with LangSmith instrumentation
---------------------------------------------------------
Wraps the OpenAI text-embedding-3-small API with:
  - A single shared embedding policy (one model, one dimensionality) so that
    cosine similarity between any two stored vectors is meaningful
  - LangSmith run tracing for cost / latency observability
  - Token usage logging

There are no automatic retries: a failed call surfaces as
ExternalServiceError and the caller decides whether the step degrades or
the whole run fails.
"""
from __future__ import annotations

import time

import numpy as np
from langsmith import traceable
from loguru import logger
from openai import OpenAI, OpenAIError

from mosaic.config import require_api_key
from mosaic.errors import ExternalServiceError

MODEL = "text-embedding-3-small"
DIMENSIONS = 1536          # text-embedding-3-small native dimensions
MAX_INPUT_CHARS = 8000     # Keeps a single input well inside the 8191-token context


class Embedder:
    """
    Generates embeddings with text-embedding-3-small.

    embed() returns the raw vector for storage; embed_texts() returns an
    L2-normalised (N, DIMENSIONS) float32 matrix for search.
    """

    def __init__(
        self,
        model: str = MODEL,
        dimensions: int = DIMENSIONS,
        client: OpenAI | None = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self._client = client or OpenAI(api_key=require_api_key("OPENAI_API_KEY"))
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0

    @classmethod
    def from_config(cls, config: dict) -> "Embedder":
        cfg = config.get("openai", {})
        return cls(
            model=cfg.get("embedding_model", MODEL),
            dimensions=cfg.get("embedding_dimensions", DIMENSIONS),
        )

    @traceable(name="embed", run_type="embedding")
    def embed(self, text: str) -> list[float]:
        """Embed a single string. Returns a list of `dimensions` floats."""
        return self._embed_batch([text])[0]

    @traceable(name="embed_texts", run_type="embedding")
    def embed_texts(self, texts: list[str]) -> np.ndarray:
        """Embed a list of strings and return an (N, DIMENSIONS) float32 array."""
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)

        matrix = np.array(self._embed_batch(texts), dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms = np.where(norms == 0, 1, norms)
        return (matrix / norms).astype(np.float32)

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Call the OpenAI Embeddings API once for a batch of inputs."""
        # Replace empty strings with a space to avoid API errors
        safe_texts = [t[:MAX_INPUT_CHARS] if t.strip() else " " for t in texts]
        start = time.perf_counter()
        try:
            response = self._client.embeddings.create(model=self.model, input=safe_texts)
        except OpenAIError as exc:
            raise ExternalServiceError("embedding", str(exc)) from exc
        elapsed = time.perf_counter() - start

        embeddings = [item.embedding for item in sorted(response.data, key=lambda x: x.index)]
        for vector in embeddings:
            if len(vector) != self.dimensions:
                raise ExternalServiceError(
                    "embedding",
                    f"Embedding dimension mismatch: got {len(vector)}, expected {self.dimensions}",
                )

        tokens_used = response.usage.total_tokens if response.usage else 0
        self.total_tokens_used += tokens_used
        self.total_api_calls += 1
        logger.debug(
            f"[Embedder] API call: {len(texts)} texts, {tokens_used} tokens, {elapsed:.2f}s"
        )
        return [list(map(float, v)) for v in embeddings]

    def usage_summary(self) -> dict:
        return {
            "model": self.model,
            "total_api_calls": self.total_api_calls,
            "total_tokens_used": self.total_tokens_used,
            # text-embedding-3-small: $0.020 per million tokens
            "estimated_cost_usd": round(self.total_tokens_used / 1_000_000 * 0.020, 6),
        }
