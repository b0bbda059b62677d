"""
SQLAlchemy ORM models.

Embedding vectors are stored as JSON float arrays so the schema runs on any
SQL backend (SQLite by default).  Uniqueness rules that the pipeline relies
on are declared as table constraints:

  entities               (user_id, name_key, type)   name_key = lower(name)
  entity_relationships   (source, target, type)
  mosaic_projections     (user_id, item_type, item_id)
"""
from __future__ import annotations

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase

from mosaic.utils.helpers import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for every ORM model."""
    pass


class ItemRow(Base):
    """Notes, tasks and calendar events share one table, keyed by item_type."""
    __tablename__ = "items"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    item_type = Column(String(16), nullable=False)
    title = Column(String(255))
    raw_text = Column(Text)
    summary = Column(Text)
    language = Column(String(32))
    status = Column(String(16), nullable=False, default="raw")
    file_url = Column(Text)
    meta = Column("metadata", JSON, nullable=False, default=dict)

    priority = Column(String(16))
    due_date = Column(DateTime)
    task_status = Column(String(16))

    location = Column(String(255))
    start_datetime = Column(DateTime)
    end_datetime = Column(DateTime)
    all_day = Column(Boolean, nullable=False, default=False)

    source_type = Column(String(16), nullable=False, default="manual")
    source_item_id = Column(String(36), ForeignKey("items.id", ondelete="SET NULL"))

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_items_user_type", "user_id", "item_type"),
        Index("idx_items_user_status", "user_id", "status"),
    )


class TagRow(Base):
    __tablename__ = "tags"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ItemTagRow(Base):
    __tablename__ = "item_tags"

    item_id = Column(String(36), ForeignKey("items.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)


class ChunkRow(Base):
    __tablename__ = "chunks"

    id = Column(String(36), primary_key=True, default=_uuid)
    item_id = Column(String(36), ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_text = Column(Text, nullable=False)
    embedding = Column(JSON(none_as_null=True))
    order_index = Column(Integer, nullable=False)
    token_estimate = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("item_id", "order_index", name="uq_chunk_order"),
    )


class EntityRow(Base):
    __tablename__ = "entities"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    name_key = Column(String(255), nullable=False)
    type = Column(String(32), nullable=False)
    description = Column(Text)
    properties = Column(JSON, nullable=False, default=dict)
    embedding = Column(JSON(none_as_null=True))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "name_key", "type", name="uq_entity_user_name_type"),
    )


class EntityRelationshipRow(Base):
    __tablename__ = "entity_relationships"

    id = Column(String(36), primary_key=True, default=_uuid)
    source_entity_id = Column(String(36), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False, index=True)
    target_entity_id = Column(String(36), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False, index=True)
    relationship_type = Column(String(64), nullable=False)
    properties = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "source_entity_id", "target_entity_id", "relationship_type",
            name="uq_entity_relationship",
        ),
    )


class EntitySourceRow(Base):
    """Provenance link; append-only, never de-duplicated."""
    __tablename__ = "entity_sources"

    id = Column(String(36), primary_key=True, default=_uuid)
    entity_id = Column(String(36), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False, index=True)
    source_type = Column(String(16), nullable=False)
    source_id = Column(String(36), nullable=False, index=True)
    extracted_from = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ProcessingLogRow(Base):
    __tablename__ = "processing_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    item_id = Column(String(36), nullable=False, index=True)
    operation = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="started")
    message = Column(Text)
    error_details = Column(JSON(none_as_null=True))
    processing_time_ms = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ProjectionRow(Base):
    __tablename__ = "mosaic_projections"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    item_type = Column(String(16), nullable=False)
    item_id = Column(String(36), nullable=False)
    x = Column(Float, nullable=False)
    y = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "item_type", "item_id", name="uq_projection_item"),
    )
