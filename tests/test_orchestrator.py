"""End-to-end tests for the processing orchestrator and its status transitions."""

import asyncio
from unittest.mock import MagicMock

import pytest

from mosaic.chunking.chunker import TextChunker
from mosaic.errors import AlreadyProcessingError, InvalidTransitionError, ItemNotFoundError
from mosaic.generation.prompts import TITLE_PROMPT
from mosaic.processing.orchestrator import ProcessingOrchestrator, needs_title
from mosaic.schemas import ItemOrigin, ItemStatus, ItemType, LogStatus
from tests.fakes import USER

MILK_SUMMARY = {
    "summary": "Reminder to buy milk.",
    "tags": ["groceries", "errands"],
    "language": "en",
    "tasks": [{"title": "Buy milk", "priority": "medium", "due_date": "2025-08-15T17:00:00Z"}],
    "calendar_events": [],
}


def _raw_note(items, text="Buy milk tomorrow at 5pm at the store", **kwargs):
    return items.create_item(USER, ItemType.NOTE, title=kwargs.pop("title", "Shopping"), raw_text=text, **kwargs)


# --- Happy path ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_note_is_processed_end_to_end(orchestrator, items, logs, extractor):
    extractor.summary = MILK_SUMMARY
    note = _raw_note(items)

    outcome = await orchestrator.process_item(note.id, source="web")

    assert outcome.success
    assert outcome.status == ItemStatus.PROCESSED
    assert outcome.chunk_count == 1
    assert outcome.task_count == 1
    assert outcome.entity_extraction_ok
    assert set(outcome.tags) == {"groceries", "errands"}

    stored = items.get_item(note.id)
    assert stored.status == ItemStatus.PROCESSED
    assert stored.summary == "Reminder to buy milk."
    assert stored.language == "en"
    assert len(stored.tags) >= 1

    [task] = items.list_items(USER, item_type=ItemType.TASK)
    assert task.title == "Buy milk"
    assert task.source_type == ItemOrigin.AI_GENERATED
    assert task.source_item_id == note.id
    assert task.task_status == "pending"
    assert task.due_date is not None

    chunks = items.get_chunks(note.id)
    assert len(chunks) == 1 and chunks[0].embedding is not None

    [log] = logs.logs_for_item(note.id)
    assert log.status == LogStatus.COMPLETED
    assert log.processing_time_ms is not None


@pytest.mark.asyncio
async def test_rerun_keeps_existing_tags(orchestrator, items, extractor):
    note = _raw_note(items, "Monthly budget review", status=ItemStatus.PROCESSED)
    items.add_tag(note.id, "finance")
    items.add_tag(note.id, "budget")
    extractor.summary = {"summary": "Budget review.", "tags": ["budget"], "language": "en"}

    outcome = await orchestrator.process_item(note.id, rerun=True)

    assert outcome.success
    assert {"finance", "budget"} <= set(items.get_tags(note.id))


@pytest.mark.asyncio
async def test_rerun_replaces_chunks(orchestrator, items):
    note = _raw_note(items)
    await orchestrator.process_item(note.id)
    first_ids = {c.chunk_id for c in items.get_chunks(note.id)}

    await orchestrator.process_item(note.id, rerun=True)

    chunks = items.get_chunks(note.id)
    assert len(chunks) == 1
    assert {c.chunk_id for c in chunks}.isdisjoint(first_ids)


@pytest.mark.asyncio
async def test_calendar_events_are_created_when_start_parses(orchestrator, items, extractor):
    extractor.summary = {
        "summary": "Dentist visit.",
        "tags": ["health"],
        "language": "en",
        "calendar_events": [
            {"title": "Dentist", "start_datetime": "2025-08-15T14:00:00Z", "location": "Main St"},
            {"title": "Someday", "start_datetime": "next week-ish"},
        ],
    }
    note = _raw_note(items, "Dentist on the 15th at 2pm on Main St")

    outcome = await orchestrator.process_item(note.id)

    assert outcome.event_count == 1
    [event] = items.list_items(USER, item_type=ItemType.EVENT)
    assert event.title == "Dentist"
    assert event.location == "Main St"
    assert event.status == ItemStatus.PROCESSED
    assert event.start_datetime.hour == 14


@pytest.mark.asyncio
async def test_tasks_do_not_spawn_downstream_items(orchestrator, items, extractor):
    extractor.summary = MILK_SUMMARY
    task = items.create_item(USER, ItemType.TASK, title="Call the plumber")

    outcome = await orchestrator.process_item(task.id)

    assert outcome.success
    assert outcome.task_count == 0
    assert [t.id for t in items.list_items(USER, item_type=ItemType.TASK)] == [task.id]


@pytest.mark.asyncio
async def test_entities_are_stored_for_the_item(orchestrator, items, entity_store, extractor):
    extractor.entities = {
        "entities": [
            {"name": "Alice", "type": "person"},
            {"name": "Acme", "type": "organization"},
        ],
        "relationships": [{"source": "Alice", "target": "Acme", "type": "works_at"}],
    }
    note = _raw_note(items, "Alice started at Acme today")

    outcome = await orchestrator.process_item(note.id)

    assert outcome.entity_extraction_ok
    assert {e.name for e in entity_store.list_entities(USER)} == {"Alice", "Acme"}
    assert {s.source_id for s in entity_store.list_sources(USER)} == {note.id}


@pytest.mark.asyncio
async def test_entity_failure_does_not_fail_the_run(orchestrator, items):
    orchestrator.entity_service = MagicMock()
    orchestrator.entity_service.extract_for_item.side_effect = RuntimeError("graph store down")
    note = _raw_note(items)

    outcome = await orchestrator.process_item(note.id)

    assert outcome.success
    assert not outcome.entity_extraction_ok
    assert items.get_item(note.id).status == ItemStatus.PROCESSED


# --- Titles, transcription --------------------------------------------------------

@pytest.mark.parametrize("title, expected", [
    (None, True),
    ("   ", True),
    ("Voice Message - 2025-03-01T10:00:00", True),
    ("Telegram Message - 2025-03-01T10:00:00Z", True),
    ("Groceries", False),
    ("Voice Message about groceries", False),
])
def test_needs_title(title, expected):
    assert needs_title(title) is expected


@pytest.mark.asyncio
async def test_generic_title_is_replaced(orchestrator, items, extractor):
    extractor.title = "Weekly Groceries"
    note = _raw_note(items, title="Voice Message - 2025-03-01T10:00:00")

    await orchestrator.process_item(note.id)

    assert items.get_item(note.id).title == "Weekly Groceries"


@pytest.mark.asyncio
async def test_meaningful_title_is_kept(orchestrator, items, extractor):
    note = _raw_note(items, title="Shopping list")
    await orchestrator.process_item(note.id)

    assert items.get_item(note.id).title == "Shopping list"
    assert TITLE_PROMPT not in extractor.prompts


@pytest.mark.asyncio
async def test_voice_note_is_transcribed_first(orchestrator, items, transcriber):
    note = items.create_item(
        USER,
        ItemType.NOTE,
        title="Voice Message - 2025-03-01T10:00:00",
        file_url="https://files.example.com/voice.ogg",
        metadata={"voice_duration": 7},
    )

    outcome = await orchestrator.process_item(note.id, source="telegram")

    assert outcome.success
    transcriber.transcribe_url.assert_called_once_with("https://files.example.com/voice.ogg")
    stored = items.get_item(note.id)
    assert stored.raw_text == "Call the dentist on Monday to move the appointment."
    assert stored.metadata == {"voice_duration": 7, "transcription_completed": True}


@pytest.mark.asyncio
async def test_voice_note_without_transcriber_fails(orchestrator, items, logs):
    orchestrator.transcriber = None
    note = items.create_item(
        USER, ItemType.NOTE, file_url="https://files.example.com/voice.ogg", metadata={"voice_duration": 3}
    )

    outcome = await orchestrator.process_item(note.id)

    assert not outcome.success
    [log] = logs.logs_for_item(note.id)
    assert log.error_details["error_type"] == "ConfigurationError"
    assert log.error_details["step"] == "resolve_text"


# --- Failures ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_embedding_outage_marks_item_as_error(orchestrator, items, logs, embedding_client):
    embedding_client.fail = True
    note = _raw_note(items)

    outcome = await orchestrator.process_item(note.id)

    assert not outcome.success
    assert outcome.status == ItemStatus.ERROR
    assert items.get_item(note.id).status == ItemStatus.ERROR
    assert items.get_chunks(note.id) == []

    logs_for_note = logs.logs_for_item(note.id)
    assert len(logs_for_note) == 1
    [log] = logs_for_note
    assert log.status == LogStatus.FAILED
    assert log.error_details["service"] == "embedding"
    assert log.error_details["step"] == "embed"
    assert "Traceback" in log.error_details["traceback"]


@pytest.mark.asyncio
async def test_partial_embedding_failure_keeps_going(items, logs, embedder, embedding_client, extractor, entity_service):
    orchestrator = ProcessingOrchestrator(
        items,
        logs,
        TextChunker(max_chunk_size=120, overlap=10, threshold=100),
        embedder,
        extractor,
        entity_service,
        embedding_delay=0,
    )
    text = " ".join(f"Sentence number {i} is about the garden." for i in range(12))
    note = _raw_note(items, text)
    embedding_client.fail_calls = {2}

    outcome = await orchestrator.process_item(note.id)

    assert outcome.success
    assert outcome.chunk_count > 2
    chunks = items.get_chunks(note.id)
    assert [c.order_index for c in chunks] == list(range(len(chunks)))
    assert chunks[1].embedding is None
    assert chunks[0].embedding is not None and chunks[2].embedding is not None


@pytest.mark.asyncio
async def test_cancelled_run_releases_the_item(orchestrator, items, logs, embedder, extractor, entity_service):
    slow = ProcessingOrchestrator(
        items,
        logs,
        TextChunker(max_chunk_size=120, overlap=10, threshold=100),
        embedder,
        extractor,
        entity_service,
        embedding_delay=5,
    )
    text = " ".join(f"Sentence number {i} is about the garden." for i in range(12))
    note = _raw_note(items, text)

    task = asyncio.create_task(slow.process_item(note.id))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert items.get_item(note.id).status == ItemStatus.ERROR
    [log] = logs.logs_for_item(note.id)
    assert log.status == LogStatus.FAILED
    assert log.error_details["error_type"] == "CancelledError"
    assert log.error_details["step"] == "embed"

    outcome = await orchestrator.process_item(note.id, rerun=True)
    assert outcome.success
    assert items.get_item(note.id).status == ItemStatus.PROCESSED


@pytest.mark.asyncio
async def test_summary_failure_is_terminal(orchestrator, items, logs, extractor):
    extractor.fail_summary = True
    note = _raw_note(items)

    outcome = await orchestrator.process_item(note.id)

    assert not outcome.success
    assert items.get_item(note.id).status == ItemStatus.ERROR
    assert items.get_chunks(note.id) == []
    [log] = logs.logs_for_item(note.id)
    assert log.error_details["step"] == "summary"
    assert log.error_details["service"] == "extraction"


@pytest.mark.asyncio
async def test_malformed_summary_uses_defaults(orchestrator, items, extractor):
    extractor.summary = "I'm sorry, here is a summary without JSON"
    note = _raw_note(items)

    outcome = await orchestrator.process_item(note.id)

    assert outcome.success
    assert outcome.tags == ["ai-generated"]
    assert items.get_item(note.id).language == "unknown"


@pytest.mark.asyncio
async def test_note_without_text_fails_validation(orchestrator, items, logs):
    note = items.create_item(USER, ItemType.NOTE, title="Empty", raw_text="   ")

    outcome = await orchestrator.process_item(note.id)

    assert not outcome.success
    [log] = logs.logs_for_item(note.id)
    assert log.error_details["error_type"] == "ValidationError"


@pytest.mark.asyncio
async def test_error_item_can_be_rerun(orchestrator, items, embedding_client):
    embedding_client.fail = True
    note = _raw_note(items)
    await orchestrator.process_item(note.id)

    embedding_client.fail = False
    with pytest.raises(InvalidTransitionError):
        await orchestrator.process_item(note.id)
    outcome = await orchestrator.process_item(note.id, rerun=True)

    assert outcome.success
    assert items.get_item(note.id).status == ItemStatus.PROCESSED


# --- Illegal starts ---------------------------------------------------------------

@pytest.mark.asyncio
async def test_item_already_processing_is_rejected(orchestrator, items, logs):
    note = _raw_note(items, status=ItemStatus.PROCESSING)

    with pytest.raises(AlreadyProcessingError):
        await orchestrator.process_item(note.id)
    with pytest.raises(AlreadyProcessingError):
        await orchestrator.process_item(note.id, rerun=True)

    assert logs.logs_for_item(note.id) == []
    assert items.get_item(note.id).status == ItemStatus.PROCESSING


@pytest.mark.asyncio
async def test_processed_item_needs_rerun(orchestrator, items, logs):
    note = _raw_note(items, status=ItemStatus.PROCESSED)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.process_item(note.id)

    assert logs.logs_for_item(note.id) == []
    assert items.get_item(note.id).status == ItemStatus.PROCESSED


@pytest.mark.asyncio
async def test_missing_item_is_rejected(orchestrator):
    with pytest.raises(ItemNotFoundError):
        await orchestrator.process_item("does-not-exist")
