"""
Knowledge Graph Assembler
--------------------------
Builds the node / edge set of a user's mosaic.

Nodes:
  - every processed note, every task, every event, every entity
  - item embedding = the first chunk's embedding; when missing it is
    computed on demand from summary / content (not persisted)

Edges (recomputed on every call, all-pairs by construction):
  explicit     item -> entity for every provenance link, labelled with the
               entity's relationship types (default "mentions"); entity <->
               entity for every stored relationship; item <-> item when two
               different items mention the same entity
  similar      cosine > threshold for every pair that is not entity-entity
  shared_tags  pairs of notes whose tag sets intersect
  temporal     |created_at difference| < window (exclusive)
"""
from __future__ import annotations

from collections import defaultdict
from datetime import timedelta
from typing import Any, Optional

import numpy as np
from langsmith import traceable
from loguru import logger

from mosaic.embedding.embedder import Embedder
from mosaic.entities.store import EntityStore
from mosaic.errors import ExternalServiceError
from mosaic.generation.prompts import DEFAULT_TITLE
from mosaic.graph.schemas import EdgeType, GraphEdge, GraphNode, KnowledgeGraph
from mosaic.graph.similarity import cosine_matrix, cosine_similarity
from mosaic.schemas import ItemStatus, ItemType, SourceItem
from mosaic.storage.items import ItemRepository
from mosaic.storage.projections import ProjectionRepository

SIMILARITY_THRESHOLD = 0.7
TEMPORAL_WINDOW_HOURS = 24
DEFAULT_RELATIONSHIP = "mentions"
ON_DEMAND_EMBED_CHARS = 8000


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class GraphAssembler:
    def __init__(
        self,
        items: ItemRepository,
        entities: EntityStore,
        embedder: Embedder | None = None,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        temporal_window_hours: float = TEMPORAL_WINDOW_HOURS,
    ) -> None:
        self.items = items
        self.entities = entities
        self.embedder = embedder
        self.similarity_threshold = similarity_threshold
        self.temporal_window = timedelta(hours=temporal_window_hours)

    @classmethod
    def from_config(
        cls,
        items: ItemRepository,
        entities: EntityStore,
        embedder: Embedder | None,
        config: dict,
    ) -> "GraphAssembler":
        cfg = config.get("graph", {})
        return cls(
            items,
            entities,
            embedder,
            similarity_threshold=cfg.get("similarity_threshold", SIMILARITY_THRESHOLD),
            temporal_window_hours=cfg.get("temporal_window_hours", TEMPORAL_WINDOW_HOURS),
        )

    # --- Public API -----------------------------------------------------------

    @traceable(name="build_graph", run_type="chain")
    def build_graph(self, user_id: str) -> KnowledgeGraph:
        nodes = self._item_nodes(user_id) + self._entity_nodes(user_id)
        graph = KnowledgeGraph(user_id=user_id, nodes=nodes)

        edges: dict[tuple, GraphEdge] = {}

        def add(a: str, b: str, edge_type: EdgeType, label: str | None = None) -> None:
            if a == b:
                return
            edge = GraphEdge(source_id=a, target_id=b, type=edge_type, label=label or edge_type.value)
            edges.setdefault(edge.key(), edge)

        for a, b, label in self._explicit_pairs(user_id, {n.id for n in nodes}):
            add(a, b, EdgeType.EXPLICIT, label)
        for a, b in self._similar_pairs(nodes):
            add(a, b, EdgeType.SIMILAR)
        for a, b in self._shared_tag_pairs(nodes):
            add(a, b, EdgeType.SHARED_TAGS)
        for a, b in self._temporal_pairs(nodes):
            add(a, b, EdgeType.TEMPORAL)

        graph.edges = list(edges.values())
        logger.info(f"[GraphAssembler] user={user_id} | {graph.summary()}")
        return graph

    def export_graph(self, user_id: str, projections: ProjectionRepository | None = None) -> dict[str, Any]:
        """JSON-ready nodes (with stored projections attached) and edges."""
        graph = self.build_graph(user_id)
        positions = {}
        if projections is not None:
            positions = {(p.item_type, p.item_id): p for p in projections.load(user_id)}

        nodes = []
        for node in graph.nodes:
            data = node.model_dump(mode="json")
            pos = positions.get((node.type, node.id))
            data["x"] = pos.x if pos else None
            data["y"] = pos.y if pos else None
            nodes.append(data)

        return {
            "user_id": user_id,
            "nodes": nodes,
            "edges": [e.model_dump(mode="json") for e in graph.edges],
            "summary": graph.summary(),
        }

    # --- Nodes ----------------------------------------------------------------

    def _item_nodes(self, user_id: str) -> list[GraphNode]:
        notes = self.items.list_items(user_id, ItemType.NOTE, ItemStatus.PROCESSED)
        tasks = self.items.list_items(user_id, ItemType.TASK)
        events = self.items.list_items(user_id, ItemType.EVENT)

        nodes: list[GraphNode] = []
        for item in notes + tasks + events:
            content = self._content(item)
            embedding = self.items.first_chunk_embedding(item.id)
            if embedding is None:
                embedding = self._embed_on_demand(item, content)
            if embedding is None and not content:
                continue
            nodes.append(
                GraphNode(
                    id=item.id,
                    type=item.item_type.value,
                    title=item.title or (DEFAULT_TITLE if item.item_type == ItemType.NOTE else ""),
                    content=content,
                    embedding=embedding,
                    metadata=self._metadata(item),
                    created_at=item.created_at,
                )
            )
        return nodes

    def _entity_nodes(self, user_id: str) -> list[GraphNode]:
        return [
            GraphNode(
                id=entity.id,
                type="entity",
                title=entity.name,
                content=entity.description or f"{entity.type.value}: {entity.name}",
                embedding=entity.embedding,
                metadata={"entity_type": entity.type.value, "properties": entity.properties},
                created_at=entity.created_at,
            )
            for entity in self.entities.list_entities(user_id)
        ]

    @staticmethod
    def _content(item: SourceItem) -> str:
        if item.item_type == ItemType.NOTE:
            return item.summary or item.raw_text or ""
        parts = [item.title, item.raw_text]
        if item.item_type == ItemType.EVENT:
            parts.append(item.location)
        return " ".join(p for p in parts if p).strip()

    @staticmethod
    def _metadata(item: SourceItem) -> dict[str, Any]:
        meta: dict[str, Any] = {**item.metadata, "source_type": item.source_type.value}
        if item.item_type == ItemType.NOTE:
            meta.update(tags=list(item.tags), language=item.language)
        elif item.item_type == ItemType.TASK:
            meta.update(
                priority=item.priority,
                status=item.task_status,
                due_date=_iso(item.due_date),
            )
        else:
            meta.update(
                location=item.location,
                start_datetime=_iso(item.start_datetime),
                end_datetime=_iso(item.end_datetime),
                all_day=item.all_day,
            )
        return meta

    def _embed_on_demand(self, item: SourceItem, content: str) -> Optional[list[float]]:
        text = content or item.title or ""
        if not text or self.embedder is None:
            return None
        try:
            return self.embedder.embed(text[:ON_DEMAND_EMBED_CHARS])
        except ExternalServiceError as exc:
            logger.warning(f"[GraphAssembler] On-demand embedding failed for {item.id}: {exc}")
            return None

    # --- Edges ----------------------------------------------------------------

    def _explicit_pairs(self, user_id: str, node_ids: set[str]) -> list[tuple[str, str, str]]:
        relationships = self.entities.list_relationships(user_id)
        sources = self.entities.list_sources(user_id)

        rel_types: dict[str, set[str]] = defaultdict(set)
        pairs: list[tuple[str, str, str]] = []
        for rel in relationships:
            rel_types[rel.source_entity_id].add(rel.relationship_type)
            rel_types[rel.target_entity_id].add(rel.relationship_type)
            if rel.source_entity_id in node_ids and rel.target_entity_id in node_ids:
                pairs.append((rel.source_entity_id, rel.target_entity_id, rel.relationship_type))

        mentioned_by: dict[str, list[str]] = defaultdict(list)
        for link in sources:
            if link.source_id not in node_ids or link.entity_id not in node_ids:
                continue
            if link.source_id not in mentioned_by[link.entity_id]:
                mentioned_by[link.entity_id].append(link.source_id)
            for label in sorted(rel_types[link.entity_id]) or [DEFAULT_RELATIONSHIP]:
                pairs.append((link.source_id, link.entity_id, label))

        for entity_id, item_ids in mentioned_by.items():
            label = min(rel_types[entity_id]) if rel_types[entity_id] else DEFAULT_RELATIONSHIP
            for i in range(len(item_ids)):
                for j in range(i + 1, len(item_ids)):
                    pairs.append((item_ids[i], item_ids[j], label))
        return pairs

    def _similar_pairs(self, nodes: list[GraphNode]) -> list[tuple[str, str]]:
        embedded = [n for n in nodes if n.embedding]
        if len(embedded) < 2:
            return []
        try:
            sims = cosine_matrix([n.embedding for n in embedded])
        except ValueError:
            sims = np.array(
                [[cosine_similarity(a.embedding, b.embedding) for b in embedded] for a in embedded]
            )

        pairs = []
        for i in range(len(embedded)):
            for j in range(i + 1, len(embedded)):
                if embedded[i].is_entity and embedded[j].is_entity:
                    continue
                if sims[i, j] > self.similarity_threshold:
                    pairs.append((embedded[i].id, embedded[j].id))
        return pairs

    @staticmethod
    def _shared_tag_pairs(nodes: list[GraphNode]) -> list[tuple[str, str]]:
        notes = [(n.id, set(n.metadata.get("tags") or [])) for n in nodes if n.type == "note"]
        return [
            (notes[i][0], notes[j][0])
            for i in range(len(notes))
            for j in range(i + 1, len(notes))
            if notes[i][1] & notes[j][1]
        ]

    def _temporal_pairs(self, nodes: list[GraphNode]) -> list[tuple[str, str]]:
        pairs = []
        for i in range(len(nodes)):
            for j in range(i + 1, len(nodes)):
                if abs(nodes[i].created_at - nodes[j].created_at) < self.temporal_window:
                    pairs.append((nodes[i].id, nodes[j].id))
        return pairs
