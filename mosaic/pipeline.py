"""
Mosaic Pipeline
----------------
Wires every component from one config dict:

    Database
      |-- ItemRepository / ProcessingLogRepository / ProjectionRepository
      |-- EntityStore -> EntityResolver
    Embedder + Extractor (+ Transcriber)
      |-- EntityExtractionService
      |-- ProcessingOrchestrator -> ProcessingWorkerPool
      |-- GraphAssembler -> ProjectionEngine
      |-- HybridSearcher

The CLI builds one MosaicPipeline per command.  External clients are only
constructed here, so a missing API key fails with ConfigurationError before
any item is touched.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from mosaic.chunking.chunker import TextChunker
from mosaic.embedding.embedder import Embedder
from mosaic.entities.resolver import EntityResolver
from mosaic.entities.schemas import ResolutionReport
from mosaic.entities.service import EntityExtractionService
from mosaic.entities.store import EntityStore
from mosaic.generation.extractor import BaseExtractor, make_extractor
from mosaic.generation.transcriber import Transcriber
from mosaic.graph.assembler import GraphAssembler
from mosaic.graph.schemas import KnowledgeGraph
from mosaic.processing.orchestrator import ProcessingOrchestrator
from mosaic.processing.worker import ProcessingWorkerPool
from mosaic.projection.engine import ProjectionEngine
from mosaic.retrieval.search import HybridSearcher
from mosaic.schemas import ProcessingOutcome, Projection
from mosaic.storage.database import Database
from mosaic.storage.items import ItemRepository
from mosaic.storage.processing_logs import ProcessingLogRepository
from mosaic.storage.projections import ProjectionRepository


@dataclass
class MosaicPipeline:
    config: dict
    db: Database
    items: ItemRepository
    logs: ProcessingLogRepository
    projections: ProjectionRepository
    entities: EntityStore
    resolver: EntityResolver
    embedder: Embedder
    extractor: BaseExtractor
    entity_service: EntityExtractionService
    orchestrator: ProcessingOrchestrator
    assembler: GraphAssembler
    projection_engine: ProjectionEngine
    searcher: HybridSearcher

    @classmethod
    def build(
        cls,
        config: dict,
        db: Database | None = None,
        embedder: Embedder | None = None,
        extractor: BaseExtractor | None = None,
        transcriber: Transcriber | None = None,
    ) -> "MosaicPipeline":
        db = db or Database.from_config(config)
        embedder = embedder or Embedder.from_config(config)
        extractor = extractor or make_extractor(config)
        if transcriber is None:
            transcriber = Transcriber.from_config(config)

        items = ItemRepository(db)
        logs = ProcessingLogRepository(db)
        projections = ProjectionRepository(db)
        entities = EntityStore(db)
        entity_service = EntityExtractionService(entities, items, extractor, embedder)

        orchestrator = ProcessingOrchestrator(
            items,
            logs,
            TextChunker.from_config(config),
            embedder,
            extractor,
            entity_service,
            transcriber=transcriber,
            embedding_delay=config.get("processing", {}).get("embedding_delay_seconds", 0.2),
        )
        assembler = GraphAssembler.from_config(items, entities, embedder, config)

        return cls(
            config=config,
            db=db,
            items=items,
            logs=logs,
            projections=projections,
            entities=entities,
            resolver=EntityResolver.from_config(db, config),
            embedder=embedder,
            extractor=extractor,
            entity_service=entity_service,
            orchestrator=orchestrator,
            assembler=assembler,
            projection_engine=ProjectionEngine.from_config(assembler, projections, config),
            searcher=HybridSearcher.from_config(items, embedder, config),
        )

    # --- Caller-facing operations ---------------------------------------------

    async def process_item(self, item_id: str, rerun: bool = False, source: str = "cli") -> ProcessingOutcome:
        return await self.orchestrator.process_item(item_id, rerun=rerun, source=source)

    def worker_pool(self) -> ProcessingWorkerPool:
        return ProcessingWorkerPool(
            self.orchestrator,
            max_workers=self.config.get("processing", {}).get("max_workers", 4),
        )

    def resolve_entities(self, user_id: str) -> ResolutionReport:
        return self.resolver.resolve_and_merge(user_id)

    def build_graph(self, user_id: str) -> KnowledgeGraph:
        return self.assembler.build_graph(user_id)

    def export_graph(self, user_id: str) -> dict[str, Any]:
        return self.assembler.export_graph(user_id, self.projections)

    def project_graph(self, user_id: str, method: str | None = None) -> list[Projection]:
        return self.projection_engine.project_graph(user_id, method)
