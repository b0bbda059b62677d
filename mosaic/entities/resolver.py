"""
Entity Resolver
----------------
Merges near-duplicate entities of one user.

Pass structure (single pass, order dependent):
  - entities are grouped by type and walked in creation order
  - every unordered pair inside a group is compared by cosine similarity
  - when similarity > threshold the later entity is merged into the earlier
    one and is excluded from every further comparison in the same pass

A merge is one transaction:
  1. relationships pointing at the duplicate are repointed at the primary.
     If repointing collides with an existing (source, target, type) row the
     properties are folded into that row and the duplicate's row is deleted.
     A relationship that would become a self-loop is deleted.
  2. provenance rows of the duplicate are repointed at the primary
  3. the duplicate entity row is deleted

Running the resolver again without new data performs no further merges.
"""
from __future__ import annotations

from collections import defaultdict

from langsmith import traceable
from loguru import logger
from sqlalchemy import or_, select, update

from mosaic.entities.schemas import ResolutionReport, StoredEntity
from mosaic.entities.store import EntityStore
from mosaic.graph.similarity import cosine_matrix
from mosaic.storage.database import Database
from mosaic.storage.models import EntityRelationshipRow, EntityRow, EntitySourceRow
from mosaic.utils.helpers import utcnow

SIMILARITY_THRESHOLD = 0.85


class EntityResolver:
    def __init__(self, db: Database, threshold: float = SIMILARITY_THRESHOLD) -> None:
        self.db = db
        self.store = EntityStore(db)
        self.threshold = threshold

    @classmethod
    def from_config(cls, db: Database, config: dict) -> "EntityResolver":
        return cls(db, threshold=config.get("resolution", {}).get("similarity_threshold", SIMILARITY_THRESHOLD))

    @traceable(name="resolve_entities", run_type="chain")
    def resolve_and_merge(self, user_id: str) -> ResolutionReport:
        entities = self.store.list_entities(user_id)
        report = ResolutionReport(user_id=user_id, entities_seen=len(entities))

        groups: dict[str, list[StoredEntity]] = defaultdict(list)
        for entity in entities:
            if entity.embedding:
                groups[entity.type.value].append(entity)

        for entity_type, group in groups.items():
            if len(group) < 2:
                continue
            try:
                sims = cosine_matrix([e.embedding for e in group])
            except ValueError:
                logger.warning(
                    f"[Resolver] Skipping type '{entity_type}': embeddings have mixed dimensions"
                )
                continue

            merged: set[int] = set()
            for i in range(len(group)):
                if i in merged:
                    continue
                for j in range(i + 1, len(group)):
                    if j in merged:
                        continue
                    report.pairs_compared += 1
                    if sims[i, j] > self.threshold:
                        self.merge_entities(group[i].id, group[j].id)
                        merged.add(j)
                        report.merges.append((group[i].id, group[j].id))
                        logger.info(
                            f"[Resolver] Merged '{group[j].name}' into '{group[i].name}' "
                            f"({entity_type}, similarity={sims[i, j]:.3f})"
                        )

        logger.info(
            f"[Resolver] user={user_id} | {report.entities_seen} entities, "
            f"{report.pairs_compared} pairs compared, {report.merged_count} merged"
        )
        return report

    def merge_entities(self, primary_id: str, duplicate_id: str) -> None:
        """Fold duplicate_id into primary_id in a single transaction."""
        if primary_id == duplicate_id:
            raise ValueError("Cannot merge an entity into itself")

        with self.db.session() as session:
            rels = session.scalars(
                select(EntityRelationshipRow).where(
                    or_(
                        EntityRelationshipRow.source_entity_id == duplicate_id,
                        EntityRelationshipRow.target_entity_id == duplicate_id,
                    )
                )
            ).all()

            for rel in rels:
                source = primary_id if rel.source_entity_id == duplicate_id else rel.source_entity_id
                target = primary_id if rel.target_entity_id == duplicate_id else rel.target_entity_id
                if source == target:
                    session.delete(rel)
                    session.flush()
                    continue

                existing = session.scalars(
                    select(EntityRelationshipRow).where(
                        EntityRelationshipRow.source_entity_id == source,
                        EntityRelationshipRow.target_entity_id == target,
                        EntityRelationshipRow.relationship_type == rel.relationship_type,
                        EntityRelationshipRow.id != rel.id,
                    )
                ).first()
                if existing is not None:
                    existing.properties = {**(rel.properties or {}), **(existing.properties or {})}
                    session.delete(rel)
                else:
                    rel.source_entity_id = source
                    rel.target_entity_id = target
                session.flush()

            session.execute(
                update(EntitySourceRow)
                .where(EntitySourceRow.entity_id == duplicate_id)
                .values(entity_id=primary_id)
            )

            primary = session.get(EntityRow, primary_id)
            if primary is not None:
                primary.updated_at = utcnow()
            duplicate = session.get(EntityRow, duplicate_id)
            if duplicate is not None:
                session.delete(duplicate)
