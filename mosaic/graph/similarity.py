"""Cosine similarity helpers shared by the resolver, graph assembler and projection engine."""
from __future__ import annotations

from typing import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine of the angle between a and b. 0.0 for missing, empty, zero or mismatched vectors."""
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def cosine_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Full (N, N) pairwise cosine-similarity matrix. Zero vectors get similarity 0."""
    if len(vectors) == 0:
        return np.zeros((0, 0), dtype=np.float64)
    matrix = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    unit = matrix / np.where(norms == 0, 1.0, norms)
    return unit @ unit.T
