"""
Graph schemas - the derived node / edge structure of a user's mosaic.

Nothing here is persisted: a KnowledgeGraph is rebuilt on every request.
Edges are undirected; source_id / target_id only record the order in which
the pair was visited.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class EdgeType(str, Enum):
    EXPLICIT = "explicit"
    SIMILAR = "similar"
    SHARED_TAGS = "shared_tags"
    TEMPORAL = "temporal"


NodeType = Literal["note", "task", "event", "entity"]


class GraphNode(BaseModel):
    id: str
    type: NodeType
    title: str
    content: str = ""
    embedding: Optional[list[float]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @property
    def is_entity(self) -> bool:
        return self.type == "entity"


class GraphEdge(BaseModel):
    source_id: str
    target_id: str
    type: EdgeType
    label: str

    def key(self) -> tuple[str, str, str, str]:
        a, b = sorted((self.source_id, self.target_id))
        return a, b, self.type.value, self.label


class KnowledgeGraph(BaseModel):
    user_id: str
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)

    def node(self, node_id: str) -> GraphNode | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def has_edge(self, a: str, b: str, edge_type: EdgeType | str | None = None) -> bool:
        """Order-independent edge lookup, optionally restricted to one edge type."""
        wanted = EdgeType(edge_type) if edge_type is not None else None
        pair = {a, b}
        return any(
            {e.source_id, e.target_id} == pair and (wanted is None or e.type == wanted)
            for e in self.edges
        )

    def edges_of_type(self, edge_type: EdgeType | str) -> list[GraphEdge]:
        wanted = EdgeType(edge_type)
        return [e for e in self.edges if e.type == wanted]

    def summary(self) -> dict[str, int]:
        counts = {"nodes": len(self.nodes)}
        for edge_type in EdgeType:
            counts[edge_type.value] = len(self.edges_of_type(edge_type))
        return counts
