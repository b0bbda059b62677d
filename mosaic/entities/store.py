"""
Entity Store
-------------
Persists extracted entities, their relationships and provenance links.

  store_entity        -- upsert by (user_id, lower(name), type)
  store_relationship  -- upsert by (source, target, type), properties merged
  link_source         -- append-only provenance row
  store_extraction    -- all of the above for one extraction result, using a
                         fresh ExtractionBatch to resolve relationship names

Merge rules for an existing entity: description is replaced only by a
non-empty new value, properties are shallow-merged with new keys winning,
the embedding is overwritten when a new one is given and updated_at is bumped.
"""
from __future__ import annotations

from typing import Optional

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mosaic.entities.batch import ExtractionBatch
from mosaic.entities.schemas import EntitySourceLink, StoredEntity, StoredRelationship, StoreReport
from mosaic.schemas import EntityType, ExtractedEntity, ExtractedRelationship, ExtractionResult
from mosaic.storage.database import Database
from mosaic.storage.models import EntityRelationshipRow, EntityRow, EntitySourceRow
from mosaic.utils.helpers import utcnow

EXCERPT_CHARS = 500


def to_entity(row: EntityRow) -> StoredEntity:
    return StoredEntity(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        type=EntityType(row.type),
        description=row.description,
        properties=dict(row.properties or {}),
        embedding=row.embedding,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def to_relationship(row: EntityRelationshipRow) -> StoredRelationship:
    return StoredRelationship(
        id=row.id,
        source_entity_id=row.source_entity_id,
        target_entity_id=row.target_entity_id,
        relationship_type=row.relationship_type,
        properties=dict(row.properties or {}),
    )


def to_source(row: EntitySourceRow) -> EntitySourceLink:
    return EntitySourceLink(
        id=row.id,
        entity_id=row.entity_id,
        source_type=row.source_type,
        source_id=row.source_id,
        extracted_from=row.extracted_from,
    )


class EntityStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    # --- Writes ---------------------------------------------------------------

    def store_entity(
        self,
        user_id: str,
        entity: ExtractedEntity,
        embedding: Optional[list[float]] = None,
    ) -> str:
        with self.db.session() as session:
            return self._upsert_entity(session, user_id, entity, embedding)

    def store_relationship(
        self,
        source_entity_id: str,
        target_entity_id: str,
        relationship_type: str,
        properties: Optional[dict] = None,
    ) -> str:
        with self.db.session() as session:
            return self._upsert_relationship(
                session, source_entity_id, target_entity_id, relationship_type, properties or {}
            )

    def link_source(
        self,
        entity_id: str,
        source_type: str,
        source_id: str,
        extracted_from: Optional[str] = None,
    ) -> str:
        row = EntitySourceRow(
            entity_id=entity_id,
            source_type=source_type,
            source_id=source_id,
            extracted_from=(extracted_from or "")[:EXCERPT_CHARS] or None,
        )
        with self.db.session() as session:
            session.add(row)
            session.flush()
            return row.id

    def store_extraction(
        self,
        user_id: str,
        result: ExtractionResult,
        embeddings: list[Optional[list[float]]],
        source_type: str,
        source_id: str,
        excerpt: Optional[str] = None,
    ) -> StoreReport:
        """
        Store one extraction result and link every entity to its source.

        embeddings[i] belongs to result.entities[i] (None when that embedding
        call failed).  Relationship endpoints are looked up in this call's
        ExtractionBatch only.
        """
        if len(embeddings) != len(result.entities):
            raise ValueError(
                f"Mismatch: {len(result.entities)} entities vs {len(embeddings)} embeddings"
            )

        batch = ExtractionBatch(user_id=user_id, source_type=source_type, source_id=source_id)
        report = StoreReport()

        for entity, embedding in zip(result.entities, embeddings):
            if not entity.name.strip():
                continue
            try:
                entity_id = self.store_entity(user_id, entity, embedding)
            except SQLAlchemyError as exc:
                logger.warning(f"[EntityStore] Failed to store entity '{entity.name}': {exc}")
                continue
            batch.register(entity.name, entity_id)
            report.entities_stored += 1
            self.link_source(entity_id, source_type, source_id, excerpt)
            report.sources_linked += 1

        for rel in result.relationships:
            if self._store_batch_relationship(batch, rel):
                report.relationships_stored += 1
            else:
                report.relationships_dropped += 1

        logger.info(
            f"[EntityStore] {source_type} {source_id[:8]} | "
            f"{report.entities_stored} entities, {report.relationships_stored} relationships "
            f"({report.relationships_dropped} dropped)"
        )
        return report

    def _store_batch_relationship(self, batch: ExtractionBatch, rel: ExtractedRelationship) -> bool:
        source_id = batch.resolve(rel.source)
        target_id = batch.resolve(rel.target)
        if not source_id or not target_id:
            logger.debug(
                f"[EntityStore] Dropping relationship {rel.source} -[{rel.type}]-> {rel.target}: "
                f"endpoint not in this extraction"
            )
            return False
        if source_id == target_id:
            return False
        try:
            self.store_relationship(source_id, target_id, rel.type, rel.properties)
        except SQLAlchemyError as exc:
            logger.warning(f"[EntityStore] Failed to store relationship: {exc}")
            return False
        return True

    @staticmethod
    def _upsert_entity(
        session: Session,
        user_id: str,
        entity: ExtractedEntity,
        embedding: Optional[list[float]],
    ) -> str:
        name = entity.name.strip()
        name_key = name.lower()
        row = session.scalars(
            select(EntityRow).where(
                EntityRow.user_id == user_id,
                EntityRow.name_key == name_key,
                EntityRow.type == entity.type.value,
            )
        ).first()

        if row is None:
            now = utcnow()
            row = EntityRow(
                user_id=user_id,
                name=name,
                name_key=name_key,
                type=entity.type.value,
                description=entity.description or None,
                properties=dict(entity.properties),
                embedding=embedding,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return row.id

        if entity.description:
            row.description = entity.description
        row.properties = {**(row.properties or {}), **entity.properties}
        if embedding is not None:
            row.embedding = embedding
        row.updated_at = utcnow()
        return row.id

    @staticmethod
    def _upsert_relationship(
        session: Session,
        source_entity_id: str,
        target_entity_id: str,
        relationship_type: str,
        properties: dict,
    ) -> str:
        row = session.scalars(
            select(EntityRelationshipRow).where(
                EntityRelationshipRow.source_entity_id == source_entity_id,
                EntityRelationshipRow.target_entity_id == target_entity_id,
                EntityRelationshipRow.relationship_type == relationship_type,
            )
        ).first()
        if row is None:
            row = EntityRelationshipRow(
                source_entity_id=source_entity_id,
                target_entity_id=target_entity_id,
                relationship_type=relationship_type,
                properties=dict(properties),
            )
            session.add(row)
            session.flush()
        else:
            row.properties = {**(row.properties or {}), **properties}
        return row.id

    # --- Reads ----------------------------------------------------------------

    def list_entities(self, user_id: str, entity_type: EntityType | None = None) -> list[StoredEntity]:
        stmt = select(EntityRow).where(EntityRow.user_id == user_id)
        if entity_type is not None:
            stmt = stmt.where(EntityRow.type == EntityType(entity_type).value)
        stmt = stmt.order_by(EntityRow.created_at, EntityRow.id)
        with self.db.session() as session:
            return [to_entity(r) for r in session.scalars(stmt)]

    def get_entity(self, entity_id: str) -> StoredEntity | None:
        with self.db.session() as session:
            row = session.get(EntityRow, entity_id)
            return to_entity(row) if row else None

    def list_relationships(self, user_id: str) -> list[StoredRelationship]:
        stmt = (
            select(EntityRelationshipRow)
            .join(EntityRow, EntityRow.id == EntityRelationshipRow.source_entity_id)
            .where(EntityRow.user_id == user_id)
            .order_by(EntityRelationshipRow.created_at, EntityRelationshipRow.id)
        )
        with self.db.session() as session:
            return [to_relationship(r) for r in session.scalars(stmt)]

    def list_sources(self, user_id: str) -> list[EntitySourceLink]:
        stmt = (
            select(EntitySourceRow)
            .join(EntityRow, EntityRow.id == EntitySourceRow.entity_id)
            .where(EntityRow.user_id == user_id)
            .order_by(EntitySourceRow.created_at, EntitySourceRow.id)
        )
        with self.db.session() as session:
            return [to_source(r) for r in session.scalars(stmt)]

    def count_references(self, entity_id: str) -> tuple[int, int]:
        """(relationship rows, source rows) that still point at entity_id."""
        with self.db.session() as session:
            rels = session.scalars(
                select(EntityRelationshipRow.id).where(
                    or_(
                        EntityRelationshipRow.source_entity_id == entity_id,
                        EntityRelationshipRow.target_entity_id == entity_id,
                    )
                )
            ).all()
            sources = session.scalars(
                select(EntitySourceRow.id).where(EntitySourceRow.entity_id == entity_id)
            ).all()
            return len(rels), len(sources)
