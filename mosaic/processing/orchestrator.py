"""
Processing Orchestrator
------------------------
Runs the pipeline over one note / task / event and drives its status.

    raw | processed | error (rerun)
        |
        v  compare-and-swap -> processing, `started` log row
    0. resolve text (voice transcription when the item only has audio)
       generate a title for untitled notes                 (fail-soft)
    1. chunk
    2. embed every chunk, EMBEDDING_DELAY_SECONDS apart     (per-chunk fail-soft)
    3. summary / tags / language / tasks / events           (core step)
    4. replace the item's chunks                            (fail-soft)
    5. link tags, existing links are kept                   (per-tag fail-soft)
    6. create AI-generated tasks / events from notes        (per-item fail-soft)
    7. entity extraction                                    (fail-soft)
        |
        v
    processed + `completed` log row     or     error + `failed` log row

Top-level failures are: no text to process, a failed transcription, every
chunk embedding failing, and a failed summary call.  They are caught here,
never re-raised: the caller receives a ProcessingOutcome with success=False.
Illegal starts (AlreadyProcessingError / InvalidTransitionError) are raised
before any log row is written.

External clients are synchronous; they run in worker threads so a pool of
concurrent runs never blocks the event loop.
"""
from __future__ import annotations

import asyncio
import re
import time
import traceback
from typing import Any, Optional

from langsmith import traceable
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from mosaic.chunking.chunker import TextChunker
from mosaic.embedding.embedder import Embedder
from mosaic.entities.service import EntityExtractionService
from mosaic.errors import (
    AlreadyProcessingError,
    ConfigurationError,
    ExternalServiceError,
    InvalidTransitionError,
    ItemNotFoundError,
    ValidationError,
)
from mosaic.generation.extractor import BaseExtractor
from mosaic.generation.transcriber import Transcriber
from mosaic.processing.state import check_start, start_states
from mosaic.schemas import (
    ExtractedEvent,
    ExtractedTask,
    ItemStatus,
    ItemType,
    ProcessingOutcome,
    SourceItem,
    SummaryExtraction,
)
from mosaic.storage.items import ItemRepository
from mosaic.storage.processing_logs import ProcessingLogRepository
from mosaic.utils.helpers import parse_datetime

OPERATION = "process_item"
EMBEDDING_DELAY_SECONDS = 0.2
GENERIC_TITLE = re.compile(
    r"^(Voice Message|Telegram Message|Document|Image)\s*-\s*\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}"
)


def needs_title(title: Optional[str]) -> bool:
    return not title or not title.strip() or bool(GENERIC_TITLE.match(title.strip()))


class ProcessingOrchestrator:
    def __init__(
        self,
        items: ItemRepository,
        logs: ProcessingLogRepository,
        chunker: TextChunker,
        embedder: Embedder,
        extractor: BaseExtractor,
        entity_service: EntityExtractionService,
        transcriber: Transcriber | None = None,
        embedding_delay: float = EMBEDDING_DELAY_SECONDS,
    ) -> None:
        self.items = items
        self.logs = logs
        self.chunker = chunker
        self.embedder = embedder
        self.extractor = extractor
        self.entity_service = entity_service
        self.transcriber = transcriber
        self.embedding_delay = embedding_delay

    # --- Entry point ----------------------------------------------------------

    @traceable(name="process_item", run_type="chain")
    async def process_item(
        self,
        item_id: str,
        rerun: bool = False,
        source: str = "unknown",
    ) -> ProcessingOutcome:
        self._begin(item_id, rerun)

        start = time.perf_counter()
        log_id = self.logs.start(item_id, OPERATION, f"Processing started (source={source}, rerun={rerun})")
        logger.info(f"[Orchestrator] {item_id[:8]} | started | source={source} rerun={rerun}")

        step = "load"
        try:
            item = self.items.get_item(item_id)
            if item is None:
                raise ItemNotFoundError(item_id)

            step = "resolve_text"
            text = await self._resolve_text(item)

            if item.item_type == ItemType.NOTE and needs_title(item.title):
                step = "generate_title"
                await self._generate_title(item, text)

            step = "chunk"
            pieces = self.chunker.split(text)

            step = "embed"
            embeddings = await self._embed_chunks(item_id, pieces)

            step = "summary"
            extraction = await asyncio.to_thread(self.extractor.extract_summary, text)
            self.items.update_item(
                item_id,
                summary=extraction.summary,
                language=extraction.language,
            )

            step = "persist"
            chunk_count = self._store_chunks(item_id, pieces, embeddings)
            tags = self._link_tags(item_id, extraction.tags)
            task_count, event_count = self._create_downstream(item, extraction)
            entity_ok = await self._extract_entities(item_id)

            self.items.set_status(item_id, ItemStatus.PROCESSED)
        except Exception as exc:
            return self._fail(item_id, log_id, step, exc, start)
        except BaseException as exc:
            self._fail(item_id, log_id, step, exc, start)
            raise

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        message = (
            f"Processed: {chunk_count} chunks, {len(tags)} tags, {task_count} tasks, "
            f"{event_count} events, entities={'ok' if entity_ok else 'failed'}"
        )
        self.logs.complete(log_id, message, elapsed_ms)
        logger.info(f"[Orchestrator] {item_id[:8]} | completed in {elapsed_ms}ms | {message}")

        return ProcessingOutcome(
            item_id=item_id,
            success=True,
            status=ItemStatus.PROCESSED,
            summary=extraction.summary,
            tags=tags,
            chunk_count=chunk_count,
            task_count=task_count,
            event_count=event_count,
            entity_extraction_ok=entity_ok,
            processing_time_ms=elapsed_ms,
            message=message,
        )

    def _begin(self, item_id: str, rerun: bool) -> None:
        """Validate the start transition and take the per-item lock."""
        item = self.items.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        check_start(item_id, item.status, rerun)

        if not self.items.try_begin_processing(item_id, start_states(rerun)):
            # Lost the race: someone moved the item since we read it
            current = self.items.get_item(item_id)
            status = current.status if current else item.status
            if status == ItemStatus.PROCESSING:
                raise AlreadyProcessingError(item_id)
            raise InvalidTransitionError(item_id, status.value, ItemStatus.PROCESSING.value)

    def _fail(
        self,
        item_id: str,
        log_id: str,
        step: str,
        exc: BaseException,
        start: float,
    ) -> ProcessingOutcome:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        details: dict[str, Any] = {
            "step": step,
            "error_type": type(exc).__name__,
            "message": str(exc),
            "traceback": traceback.format_exc(),
        }
        if isinstance(exc, ExternalServiceError):
            details["service"] = exc.service

        if isinstance(exc, (ExternalServiceError, ValidationError, ConfigurationError)):
            logger.error(f"[Orchestrator] {item_id[:8]} | failed at {step}: {exc}")
        elif not isinstance(exc, Exception):
            logger.warning(f"[Orchestrator] {item_id[:8]} | interrupted at {step} ({type(exc).__name__})")
        else:
            logger.exception(f"[Orchestrator] {item_id[:8]} | unexpected failure at {step}")

        try:
            self.items.set_status(item_id, ItemStatus.ERROR)
        except (LookupError, SQLAlchemyError) as status_exc:
            logger.error(f"[Orchestrator] {item_id[:8]} | could not mark item as error: {status_exc}")
        self.logs.fail(log_id, f"Processing failed at {step}: {exc}", details, elapsed_ms)

        return ProcessingOutcome(
            item_id=item_id,
            success=False,
            status=ItemStatus.ERROR,
            processing_time_ms=elapsed_ms,
            message=str(exc),
        )

    # --- Steps ----------------------------------------------------------------

    async def _resolve_text(self, item: SourceItem) -> str:
        text = (item.raw_text or "").strip()
        if not text and item.file_url and item.metadata.get("voice_duration"):
            if self.transcriber is None:
                raise ConfigurationError("Item has audio but no transcriber is configured")
            text = (await asyncio.to_thread(self.transcriber.transcribe_url, item.file_url)).strip()
            self.items.update_item(
                item.id,
                raw_text=text,
                metadata={**item.metadata, "transcription_completed": True},
            )
            logger.info(f"[Orchestrator] {item.id[:8]} | transcribed {len(text)} chars")

        if not text and item.item_type != ItemType.NOTE:
            text = item.analysis_text()
        if not text:
            raise ValidationError(f"Item {item.id} has no text to process")
        return text

    async def _generate_title(self, item: SourceItem, text: str) -> None:
        title = await asyncio.to_thread(self.extractor.generate_title, text)
        try:
            self.items.update_item(item.id, title=title)
        except SQLAlchemyError as exc:
            logger.warning(f"[Orchestrator] {item.id[:8]} | could not save title: {exc}")
            return
        logger.info(f"[Orchestrator] {item.id[:8]} | title -> '{title}'")

    async def _embed_chunks(self, item_id: str, pieces: list[str]) -> list[Optional[list[float]]]:
        embeddings: list[Optional[list[float]]] = []
        for i, piece in enumerate(pieces):
            if i > 0 and self.embedding_delay > 0:
                await asyncio.sleep(self.embedding_delay)
            try:
                embeddings.append(await asyncio.to_thread(self.embedder.embed, piece))
            except ExternalServiceError as exc:
                logger.warning(f"[Orchestrator] {item_id[:8]} | chunk {i} embedding failed: {exc}")
                embeddings.append(None)

        if pieces and all(e is None for e in embeddings):
            raise ExternalServiceError(
                "embedding", f"All {len(pieces)} chunk embeddings failed"
            )
        return embeddings

    def _store_chunks(
        self,
        item_id: str,
        pieces: list[str],
        embeddings: list[Optional[list[float]]],
    ) -> int:
        chunks = TextChunker.build_chunks(item_id, pieces, embeddings)
        try:
            return self.items.replace_chunks(item_id, chunks)
        except SQLAlchemyError as exc:
            logger.warning(f"[Orchestrator] {item_id[:8]} | storing chunks failed: {exc}")
            return 0

    def _link_tags(self, item_id: str, tags: list[str]) -> list[str]:
        added = 0
        for tag in tags:
            try:
                added += int(self.items.add_tag(item_id, tag))
            except (ValueError, SQLAlchemyError) as exc:
                logger.warning(f"[Orchestrator] {item_id[:8]} | tag '{tag}' skipped: {exc}")
        logger.debug(f"[Orchestrator] {item_id[:8]} | {added} new tag link(s)")
        return self.items.get_tags(item_id)

    def _create_downstream(self, item: SourceItem, extraction: SummaryExtraction) -> tuple[int, int]:
        if item.item_type != ItemType.NOTE:
            return 0, 0

        tasks = sum(self._create_task(item, task) for task in extraction.tasks)
        events = sum(self._create_event(item, event) for event in extraction.calendar_events)
        return tasks, events

    def _create_task(self, parent: SourceItem, task: ExtractedTask) -> bool:
        if not task.title.strip():
            return False
        try:
            self.items.create_generated_item(
                parent,
                ItemType.TASK,
                title=task.title.strip(),
                description=task.description,
                priority=task.priority,
                due_date=parse_datetime(task.due_date),
                task_status="pending",
            )
        except (TypeError, ValueError, SQLAlchemyError) as exc:
            logger.warning(f"[Orchestrator] {parent.id[:8]} | task '{task.title}' skipped: {exc}")
            return False
        return True

    def _create_event(self, parent: SourceItem, event: ExtractedEvent) -> bool:
        start = parse_datetime(event.start_datetime)
        if not event.title.strip() or start is None:
            logger.warning(
                f"[Orchestrator] {parent.id[:8]} | event '{event.title}' skipped: "
                f"unusable start '{event.start_datetime}'"
            )
            return False
        try:
            self.items.create_generated_item(
                parent,
                ItemType.EVENT,
                title=event.title.strip(),
                description=event.description,
                location=event.location,
                start_datetime=start,
                end_datetime=parse_datetime(event.end_datetime),
                all_day=event.all_day,
            )
        except (TypeError, ValueError, SQLAlchemyError) as exc:
            logger.warning(f"[Orchestrator] {parent.id[:8]} | event '{event.title}' skipped: {exc}")
            return False
        return True

    async def _extract_entities(self, item_id: str) -> bool:
        item = self.items.get_item(item_id)
        if item is None:
            return False
        try:
            await asyncio.to_thread(self.entity_service.extract_for_item, item)
        except Exception as exc:
            logger.warning(f"[Orchestrator] {item_id[:8]} | entity extraction failed: {exc}")
            return False
        return True
