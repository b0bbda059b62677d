"""Tests for entity upserts, relationship storage and provenance links."""

from types import SimpleNamespace

import pytest

from mosaic.entities.batch import ExtractionBatch
from mosaic.entities.service import EntityExtractionService
from mosaic.schemas import (
    EntityType,
    ExtractedEntity,
    ExtractedRelationship,
    ExtractionResult,
    ItemType,
)
from tests.fakes import USER, ScriptedExtractor, unit


def _entity(name, type_="person", description=None, **properties):
    return ExtractedEntity(name=name, type=type_, description=description, properties=properties)


def test_batch_resolves_case_and_whitespace_insensitively():
    batch = ExtractionBatch(user_id=USER, source_type="note", source_id="n1")
    batch.register(" Alice ", "e1")
    batch.register("ACME", "e2")
    batch.register("alice", "e1")

    assert batch.resolve("alice") == "e1"
    assert batch.resolve("Acme ") == "e2"
    assert batch.resolve("Bob") is None
    assert batch.entity_ids() == ["e1", "e2"]
    assert len(batch) == 2


def test_store_entity_upserts_by_name_and_type(entity_store):
    first = entity_store.store_entity(
        USER, _entity("Alice", description="Engineer", team="core"), unit(1)
    )
    second = entity_store.store_entity(USER, _entity("alice ", description="", role="lead"), None)

    assert first == second
    stored = entity_store.get_entity(first)
    assert stored.name == "Alice"
    assert stored.description == "Engineer"
    assert stored.properties == {"team": "core", "role": "lead"}
    assert stored.embedding == unit(1)
    assert stored.updated_at >= stored.created_at


def test_store_entity_new_values_win(entity_store):
    entity_id = entity_store.store_entity(USER, _entity("Alice", description="Old", team="core"), unit(1))
    entity_store.store_entity(USER, _entity("Alice", description="New", team="infra"), unit(0, 1))

    stored = entity_store.get_entity(entity_id)
    assert stored.description == "New"
    assert stored.properties == {"team": "infra"}
    assert stored.embedding == unit(0, 1)


def test_same_name_different_type_or_user_are_distinct(entity_store):
    person = entity_store.store_entity(USER, _entity("Jordan", "person"))
    place = entity_store.store_entity(USER, _entity("Jordan", "location"))
    other_user = entity_store.store_entity("someone-else", _entity("Jordan", "person"))

    assert len({person, place, other_user}) == 3
    assert [e.type for e in entity_store.list_entities(USER, EntityType.LOCATION)] == [EntityType.LOCATION]


def test_store_relationship_merges_properties(entity_store):
    a = entity_store.store_entity(USER, _entity("Alice"))
    b = entity_store.store_entity(USER, _entity("Acme", "organization"))

    first = entity_store.store_relationship(a, b, "works_at", {"since": 2020})
    second = entity_store.store_relationship(a, b, "works_at", {"role": "cto"})

    assert first == second
    [rel] = entity_store.list_relationships(USER)
    assert rel.properties == {"since": 2020, "role": "cto"}


def test_store_extraction_links_sources_and_resolves_names(entity_store):
    result = ExtractionResult(
        entities=[_entity("Alice"), _entity("Acme", "organization"), _entity("   ")],
        relationships=[
            ExtractedRelationship(source="alice", target="ACME", type="works_at"),
            ExtractedRelationship(source="Alice", target="Bob", type="knows"),
            ExtractedRelationship(source="Alice", target="Alice", type="self"),
        ],
    )

    report = entity_store.store_extraction(
        USER, result, [unit(1), None, None], "note", "note-1", excerpt="x" * 900
    )

    assert report.entities_stored == 2
    assert report.sources_linked == 2
    assert report.relationships_stored == 1
    assert report.relationships_dropped == 2

    sources = entity_store.list_sources(USER)
    assert {s.source_id for s in sources} == {"note-1"}
    assert all(len(s.extracted_from) == 500 for s in sources)


def test_relationships_do_not_resolve_across_extractions(entity_store):
    entity_store.store_extraction(
        USER, ExtractionResult(entities=[_entity("Alice")]), [None], "note", "n1"
    )
    report = entity_store.store_extraction(
        USER,
        ExtractionResult(
            entities=[_entity("Acme", "organization")],
            relationships=[ExtractedRelationship(source="Alice", target="Acme", type="works_at")],
        ),
        [None],
        "note",
        "n2",
    )

    assert report.relationships_stored == 0
    assert report.relationships_dropped == 1
    assert entity_store.list_relationships(USER) == []


def test_source_links_are_append_only(entity_store):
    result = ExtractionResult(entities=[_entity("Alice")])
    entity_store.store_extraction(USER, result, [None], "note", "n1")
    entity_store.store_extraction(USER, result, [None], "note", "n1")

    [entity] = entity_store.list_entities(USER)
    assert entity_store.count_references(entity.id) == (0, 2)


def test_store_extraction_rejects_misaligned_embeddings(entity_store):
    with pytest.raises(ValueError):
        entity_store.store_extraction(
            USER, ExtractionResult(entities=[_entity("Alice")]), [], "note", "n1"
        )


def test_service_embeds_each_entity_and_tolerates_failures(items, entity_store, embedder, embedding_client):
    extractor = ScriptedExtractor(entities={
        "entities": [
            {"name": "Alice", "type": "person", "description": "Engineer"},
            {"name": "Acme", "type": "organization"},
        ],
        "relationships": [{"source": "Alice", "target": "Acme", "type": "works_at"}],
    })
    service = EntityExtractionService(entity_store, items, extractor, embedder)
    note = items.create_item(USER, ItemType.NOTE, title="Work", raw_text="Alice works at Acme")

    embedding_client.fail_calls = {2}
    report = service.extract_for_item(note)

    assert report.entities_stored == 2
    assert report.relationships_stored == 1
    by_name = {e.name: e for e in entity_store.list_entities(USER)}
    assert by_name["Alice"].embedding is not None
    assert by_name["Acme"].embedding is None


def test_service_extract_all_counts_failures(items, entity_store, embedder):
    extractor = ScriptedExtractor(entities={"entities": [{"name": "Paris", "type": "location"}]})
    service = EntityExtractionService(entity_store, items, extractor, embedder)
    items.create_item(USER, ItemType.NOTE, raw_text="Trip to Paris")
    items.create_item(USER, ItemType.TASK, title="Book Paris hotel")
    items.create_item(USER, ItemType.NOTE, raw_text="")

    totals = service.extract_all(USER)

    assert totals["items"] == 3
    assert totals["failed"] == 0
    assert totals["entities"] == 2
    assert len(entity_store.list_entities(USER)) == 1
    assert len(entity_store.list_sources(USER)) == 2


def test_service_skips_items_without_text(items, entity_store, embedder):
    extractor = ScriptedExtractor()
    service = EntityExtractionService(entity_store, items, extractor, embedder)
    empty = SimpleNamespace(analysis_text=lambda: "", item_type=ItemType.NOTE, id="empty-item")

    assert service.extract_for_item(empty).entities_stored == 0
    assert extractor.prompts == []
