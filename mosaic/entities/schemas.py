"""
Entity schemas - stored entities, relationships and provenance links as the
graph assembler and resolver see them.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from mosaic.schemas import EntityType


class StoredEntity(BaseModel):
    id: str
    user_id: str
    name: str
    type: EntityType
    description: Optional[str] = None
    properties: dict[str, Any] = Field(default_factory=dict)
    embedding: Optional[list[float]] = None
    created_at: datetime
    updated_at: datetime


class StoredRelationship(BaseModel):
    id: str
    source_entity_id: str
    target_entity_id: str
    relationship_type: str
    properties: dict[str, Any] = Field(default_factory=dict)


class EntitySourceLink(BaseModel):
    id: str
    entity_id: str
    source_type: str                 # note | task | event
    source_id: str
    extracted_from: Optional[str] = None


class StoreReport(BaseModel):
    """Counts from storing one extraction result."""

    entities_stored: int = 0
    relationships_stored: int = 0
    relationships_dropped: int = 0
    sources_linked: int = 0


class ResolutionReport(BaseModel):
    user_id: str
    entities_seen: int = 0
    pairs_compared: int = 0
    merges: list[tuple[str, str]] = Field(default_factory=list)   # (primary, duplicate)

    @property
    def merged_count(self) -> int:
        return len(self.merges)
