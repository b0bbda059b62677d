"""Pytest configuration and fixtures."""
from __future__ import annotations

import os
from datetime import datetime, timedelta
from typing import Optional
from unittest.mock import MagicMock

import pytest

from mosaic.chunking.chunker import TextChunker
from mosaic.chunking.schemas import Chunk
from mosaic.embedding.embedder import Embedder
from mosaic.entities.service import EntityExtractionService
from mosaic.entities.store import EntityStore
from mosaic.generation.transcriber import Transcriber
from mosaic.processing.orchestrator import ProcessingOrchestrator
from mosaic.schemas import ItemStatus, ItemType
from mosaic.storage.database import Database
from mosaic.storage.items import ItemRepository
from mosaic.storage.processing_logs import ProcessingLogRepository
from mosaic.storage.projections import ProjectionRepository
from tests.fakes import DIMS, USER, FakeEmbeddingClient, ScriptedExtractor


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["ANTHROPIC_API_KEY"] = "test-anthropic-key"
    os.environ.pop("MOSAIC_DATABASE_URL", None)
    os.environ.pop("MOSAIC_LOG_LEVEL", None)


@pytest.fixture
def db():
    database = Database("sqlite:///:memory:")
    database.create_all()
    yield database
    database.engine.dispose()


@pytest.fixture
def items(db):
    return ItemRepository(db)


@pytest.fixture
def logs(db):
    return ProcessingLogRepository(db)


@pytest.fixture
def projections(db):
    return ProjectionRepository(db)


@pytest.fixture
def entity_store(db):
    return EntityStore(db)


@pytest.fixture
def embedding_client():
    return FakeEmbeddingClient()


@pytest.fixture
def embedder(embedding_client):
    return Embedder(model="text-embedding-3-small", dimensions=DIMS, client=embedding_client)


@pytest.fixture
def extractor():
    return ScriptedExtractor()


@pytest.fixture
def transcriber():
    fake = Transcriber(client=MagicMock())
    fake.transcribe_url = MagicMock(return_value="Call the dentist on Monday to move the appointment.")
    return fake


@pytest.fixture
def entity_service(entity_store, items, extractor, embedder):
    return EntityExtractionService(entity_store, items, extractor, embedder)


@pytest.fixture
def orchestrator(items, logs, embedder, extractor, entity_service, transcriber):
    return ProcessingOrchestrator(
        items,
        logs,
        TextChunker(),
        embedder,
        extractor,
        entity_service,
        transcriber=transcriber,
        embedding_delay=0,
    )


@pytest.fixture
def make_note(items):
    """Create a note, optionally processed, tagged and with one embedded chunk."""

    def _make(
        text: str = "note text",
        embedding: Optional[list[float]] = None,
        created_at: Optional[datetime] = None,
        tags: tuple[str, ...] = (),
        status: ItemStatus = ItemStatus.PROCESSED,
        user_id: str = USER,
        title: Optional[str] = None,
        summary: Optional[str] = None,
    ):
        note = items.create_item(
            user_id,
            ItemType.NOTE,
            title=title or text[:20],
            raw_text=text,
            status=status,
            created_at=created_at,
        )
        if summary:
            items.update_item(note.id, summary=summary)
        for tag in tags:
            items.add_tag(note.id, tag)
        if embedding is not None:
            items.replace_chunks(
                note.id,
                [Chunk(item_id=note.id, order_index=0, text=text, embedding=embedding)],
            )
        return items.get_item(note.id)

    return _make


@pytest.fixture
def t0() -> datetime:
    return datetime(2025, 3, 1, 9, 0, 0)


@pytest.fixture
def far_apart(t0):
    """Timestamps spaced a week apart, so no temporal edges appear."""

    def _at(i: int) -> datetime:
        return t0 + timedelta(days=7 * i)

    return _at
