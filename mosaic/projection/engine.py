"""
Projection Engine
------------------
Lays out graph nodes in 2D from their embeddings.

  random  -- centre on the mean, project onto two orthonormal random
             directions. O(n*d), linear structure only.
  force   -- similarity-driven spring layout.  Every pair (i, j) pulls or
             pushes towards the target distance 2 + (1 - cos(i, j)) * 8, all
             points updated together once per iteration.

Both normalise each axis to [-10, 10] from the observed min / max; a zero
range (one node, or identical coordinates) is treated as a range of 1.
Results are persisted per (user, item_type, item_id), overwriting earlier
positions.
"""
from __future__ import annotations

from typing import Optional

import numpy as np
from langsmith import traceable
from loguru import logger

from mosaic.graph.assembler import GraphAssembler
from mosaic.graph.schemas import GraphNode
from mosaic.graph.similarity import cosine_matrix
from mosaic.schemas import Projection
from mosaic.storage.projections import ProjectionRepository

ITERATIONS = 50
LEARNING_RATE = 0.1
FORCE_SCALE = 0.1
MIN_TARGET_DISTANCE = 2.0
TARGET_DISTANCE_SPAN = 8.0
BOUND = 10.0


def normalize_positions(points: np.ndarray) -> np.ndarray:
    """Map each column of an (N, 2) array onto [-BOUND, BOUND]."""
    points = np.asarray(points, dtype=np.float64)
    if points.size == 0:
        return points.reshape(0, 2)
    mins = points.min(axis=0)
    ranges = points.max(axis=0) - mins
    ranges = np.where(ranges == 0, 1.0, ranges)
    return ((points - mins) / ranges - 0.5) * (2 * BOUND)


def random_projection(embeddings: np.ndarray, seed: Optional[int] = None) -> np.ndarray:
    """Centre the embeddings and project them onto two random orthonormal directions."""
    matrix = np.asarray(embeddings, dtype=np.float64)
    if len(matrix) == 0:
        return np.zeros((0, 2))

    rng = np.random.default_rng(seed)
    centred = matrix - matrix.mean(axis=0)

    # Gram-Schmidt on two uniform random vectors
    basis = rng.uniform(-1.0, 1.0, size=(2, matrix.shape[1]))
    basis[0] /= np.linalg.norm(basis[0])
    basis[1] -= basis[1].dot(basis[0]) * basis[0]
    norm = np.linalg.norm(basis[1])
    if norm > 0:
        basis[1] /= norm

    return normalize_positions(centred @ basis.T)


def similarity_layout(
    embeddings: np.ndarray,
    iterations: int = ITERATIONS,
    learning_rate: float = LEARNING_RATE,
    seed: Optional[int] = None,
) -> np.ndarray:
    """Force-directed layout driven by pairwise cosine similarity."""
    matrix = np.asarray(embeddings, dtype=np.float64)
    n = len(matrix)
    if n == 0:
        return np.zeros((0, 2))

    rng = np.random.default_rng(seed)
    positions = rng.uniform(-BOUND, BOUND, size=(n, 2))
    target = MIN_TARGET_DISTANCE + (1.0 - cosine_matrix(matrix)) * TARGET_DISTANCE_SPAN

    for _ in range(iterations):
        delta = positions[None, :, :] - positions[:, None, :]          # delta[i, j] = p_j - p_i
        dist = np.sqrt((delta ** 2).sum(axis=2)) + 0.01
        magnitude = (dist - target) * FORCE_SCALE
        np.fill_diagonal(magnitude, 0.0)
        # Too far apart -> move towards j, too close -> move away
        forces = ((delta / dist[:, :, None]) * magnitude[:, :, None]).sum(axis=1)
        positions = positions + forces * learning_rate

    return normalize_positions(positions)


class ProjectionEngine:
    def __init__(
        self,
        assembler: GraphAssembler,
        repository: ProjectionRepository,
        method: str = "force",
        iterations: int = ITERATIONS,
        learning_rate: float = LEARNING_RATE,
        seed: Optional[int] = None,
    ) -> None:
        self.assembler = assembler
        self.repository = repository
        self.method = method
        self.iterations = iterations
        self.learning_rate = learning_rate
        self.seed = seed

    @classmethod
    def from_config(
        cls,
        assembler: GraphAssembler,
        repository: ProjectionRepository,
        config: dict,
    ) -> "ProjectionEngine":
        cfg = config.get("projection", {})
        return cls(
            assembler,
            repository,
            method=cfg.get("method", "force"),
            iterations=cfg.get("iterations", ITERATIONS),
            learning_rate=cfg.get("learning_rate", LEARNING_RATE),
            seed=cfg.get("seed"),
        )

    def layout(self, nodes: list[GraphNode], method: str | None = None) -> list[Projection]:
        """Compute positions for every node that has an embedding."""
        method = method or self.method
        embedded = [n for n in nodes if n.embedding]
        if not embedded:
            return []

        dims = {len(n.embedding) for n in embedded}
        if len(dims) > 1:
            # Keep the dominant dimensionality; the others cannot share one space
            dominant = max(dims, key=lambda d: sum(len(n.embedding) == d for n in embedded))
            skipped = [n.id for n in embedded if len(n.embedding) != dominant]
            logger.warning(f"[Projection] Skipping {len(skipped)} nodes with mismatched embedding size")
            embedded = [n for n in embedded if len(n.embedding) == dominant]

        matrix = np.array([n.embedding for n in embedded], dtype=np.float64)
        if method == "random":
            points = random_projection(matrix, seed=self.seed)
        elif method == "force":
            points = similarity_layout(
                matrix,
                iterations=self.iterations,
                learning_rate=self.learning_rate,
                seed=self.seed,
            )
        else:
            raise ValueError(f"Unknown projection method '{method}'")

        return [
            Projection(item_type=node.type, item_id=node.id, x=float(x), y=float(y))
            for node, (x, y) in zip(embedded, points)
        ]

    @traceable(name="project_graph", run_type="chain")
    def project_graph(self, user_id: str, method: str | None = None) -> list[Projection]:
        graph = self.assembler.build_graph(user_id)
        positions = self.layout(graph.nodes, method)
        self.repository.save(user_id, positions)
        logger.info(
            f"[Projection] user={user_id} | method={method or self.method} | "
            f"{len(positions)}/{len(graph.nodes)} nodes positioned"
        )
        return positions
