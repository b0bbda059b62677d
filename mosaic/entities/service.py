"""
Entity extraction for notes, tasks and events.

extract_for_item() is fail-soft end to end: extraction failures return an
empty result, a failed entity embedding stores the entity without a vector,
and storage problems are logged per entity.  extract_all() runs it over
every item a user owns.
"""
from __future__ import annotations

from typing import Optional

from loguru import logger

from mosaic.embedding.embedder import Embedder
from mosaic.entities.schemas import StoreReport
from mosaic.entities.store import EXCERPT_CHARS, EntityStore
from mosaic.errors import ExternalServiceError
from mosaic.generation.extractor import BaseExtractor
from mosaic.schemas import SourceItem
from mosaic.storage.items import ItemRepository


class EntityExtractionService:
    def __init__(
        self,
        store: EntityStore,
        items: ItemRepository,
        extractor: BaseExtractor,
        embedder: Embedder,
    ) -> None:
        self.store = store
        self.items = items
        self.extractor = extractor
        self.embedder = embedder

    def extract_for_item(self, item: SourceItem) -> StoreReport:
        text = item.analysis_text()
        if not text:
            logger.debug(f"[EntityStore] {item.item_type.value} {item.id[:8]} has no text, skipping")
            return StoreReport()

        result = self.extractor.extract_entities(text)
        if not result.entities:
            return StoreReport()

        embeddings: list[Optional[list[float]]] = []
        for entity in result.entities:
            try:
                embeddings.append(self.embedder.embed(entity.embedding_text()))
            except ExternalServiceError as exc:
                logger.warning(f"[EntityStore] No embedding for entity '{entity.name}': {exc}")
                embeddings.append(None)

        return self.store.store_extraction(
            item.user_id,
            result,
            embeddings,
            source_type=item.item_type.value,
            source_id=item.id,
            excerpt=text[:EXCERPT_CHARS],
        )

    def extract_all(self, user_id: str) -> dict[str, int]:
        """Run extraction over every note, task and event of the user."""
        totals = {"items": 0, "failed": 0, "entities": 0, "relationships": 0}
        for item in self.items.list_items(user_id):
            totals["items"] += 1
            try:
                report = self.extract_for_item(item)
            except Exception:
                logger.exception(f"[EntityStore] Extraction failed for {item.id}")
                totals["failed"] += 1
                continue
            totals["entities"] += report.entities_stored
            totals["relationships"] += report.relationships_stored

        logger.info(
            f"[EntityStore] extract_all user={user_id} | {totals['items']} items, "
            f"{totals['entities']} entities, {totals['relationships']} relationships, "
            f"{totals['failed']} failed"
        )
        return totals
