"""
Core Pydantic schemas for the Mosaic pipeline.

All stages share these models: the storage layer converts ORM rows into
them, the extractor validates LLM output against them, and the orchestrator
reports its results through them.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator


# --- Enumerations ------------------------------------------------------------

class ItemType(str, Enum):
    NOTE = "note"
    TASK = "task"
    EVENT = "event"


class ItemStatus(str, Enum):
    RAW = "raw"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


class ItemOrigin(str, Enum):
    MANUAL = "manual"
    AI_GENERATED = "ai_generated"
    WEB = "web"
    TELEGRAM = "telegram"
    UPLOAD = "upload"


class EntityType(str, Enum):
    PERSON = "person"
    ORGANIZATION = "organization"
    LOCATION = "location"
    CONCEPT = "concept"
    DATE = "date"
    EVENT = "event"


class LogStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


# --- Source Items -------------------------------------------------------------

class SourceItem(BaseModel):
    """
    A note, task or calendar event as seen by the pipeline.

    One polymorphic record: task-only fields (priority, due_date, task_status)
    and event-only fields (location, start/end, all_day) are None elsewhere.
    raw_text holds a note body, or the description of a task or event.
    """

    id: str
    user_id: str
    item_type: ItemType
    title: Optional[str] = None
    raw_text: Optional[str] = None
    summary: Optional[str] = None
    language: Optional[str] = None
    status: ItemStatus = ItemStatus.RAW
    file_url: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Task fields
    priority: Optional[str] = None
    due_date: Optional[datetime] = None
    task_status: Optional[str] = None

    # Event fields
    location: Optional[str] = None
    start_datetime: Optional[datetime] = None
    end_datetime: Optional[datetime] = None
    all_day: bool = False

    # Provenance
    source_type: ItemOrigin = ItemOrigin.MANUAL
    source_item_id: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    tags: list[str] = Field(default_factory=list)

    def analysis_text(self) -> str:
        """Text handed to entity extraction, composed per item type."""
        if self.item_type == ItemType.NOTE:
            parts = [self.title, self.raw_text, self.summary]
        elif self.item_type == ItemType.TASK:
            parts = [self.title, self.raw_text]
        else:
            parts = [self.title, self.raw_text, self.location]
        return " ".join(p for p in parts if p).strip()


# --- LLM Extraction Results ---------------------------------------------------

class ExtractedTask(BaseModel):
    title: str
    description: Optional[str] = None
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    due_date: Optional[str] = None

    @field_validator("priority", mode="before")
    @classmethod
    def _default_priority(cls, v: Any) -> str:
        v = str(v or "medium").lower()
        return v if v in {"low", "medium", "high", "urgent"} else "medium"


class ExtractedEvent(BaseModel):
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_datetime: str
    end_datetime: Optional[str] = None
    all_day: bool = False

    @field_validator("all_day", mode="before")
    @classmethod
    def _default_all_day(cls, v: Any) -> Any:
        return False if v is None else v


class SummaryExtraction(BaseModel):
    """Result of the summary / tags / tasks / events structured-generation call."""

    summary: str = "No summary available"
    tags: list[str] = Field(default_factory=list)
    language: str = "unknown"
    tasks: list[ExtractedTask] = Field(default_factory=list)
    calendar_events: list[ExtractedEvent] = Field(default_factory=list)


class ExtractedEntity(BaseModel):
    name: str
    type: EntityType
    description: Optional[str] = None
    properties: dict[str, Any] = Field(default_factory=dict)
    confidence: float = 1.0

    @field_validator("properties", mode="before")
    @classmethod
    def _default_properties(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("confidence", mode="before")
    @classmethod
    def _default_confidence(cls, v: Any) -> Any:
        return 1.0 if v is None else v

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, v: Any) -> Any:
        return v.lower().strip() if isinstance(v, str) else v

    def embedding_text(self) -> str:
        return f"{self.type.value}: {self.name}. {self.description or ''}".strip()


class ExtractedRelationship(BaseModel):
    source: str
    target: str
    type: str = "related_to"
    properties: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, v: Any) -> Any:
        return v or "related_to"

    @field_validator("properties", mode="before")
    @classmethod
    def _default_properties(cls, v: Any) -> Any:
        return {} if v is None else v


class ExtractionResult(BaseModel):
    entities: list[ExtractedEntity] = Field(default_factory=list)
    relationships: list[ExtractedRelationship] = Field(default_factory=list)


# --- Pipeline Outputs ---------------------------------------------------------

class ProcessingOutcome(BaseModel):
    """What process_item() reports back to its caller."""

    item_id: str
    success: bool
    status: ItemStatus
    summary: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    chunk_count: int = 0
    task_count: int = 0
    event_count: int = 0
    entity_extraction_ok: bool = False
    processing_time_ms: int = 0
    message: str = ""


class ProcessingLogEntry(BaseModel):
    id: str
    item_id: str
    operation: str
    status: LogStatus
    message: Optional[str] = None
    error_details: Optional[dict[str, Any]] = None
    processing_time_ms: Optional[int] = None
    created_at: datetime
    item_title: Optional[str] = None


class ProcessingStats(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: int = 0
    avg_processing_time_ms: Optional[float] = None


class Projection(BaseModel):
    item_type: str
    item_id: str
    x: float
    y: float
