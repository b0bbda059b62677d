"""Tests for knowledge-graph assembly: nodes and the four edge types."""

from datetime import timedelta

import pytest

from mosaic.graph.assembler import GraphAssembler
from mosaic.graph.schemas import EdgeType, GraphEdge
from mosaic.graph.similarity import cosine_matrix, cosine_similarity
from mosaic.schemas import ExtractedEntity, ExtractedRelationship, ExtractionResult, ItemStatus, ItemType, Projection
from tests.fakes import USER, unit


@pytest.fixture
def assembler(items, entity_store):
    return GraphAssembler(items, entity_store)


def _labels(graph, a, b, edge_type=EdgeType.EXPLICIT):
    return {
        e.label for e in graph.edges_of_type(edge_type)
        if {e.source_id, e.target_id} == {a, b}
    }


# --- Similarity helpers -----------------------------------------------------------

def test_cosine_similarity_edge_cases():
    assert cosine_similarity(unit(1), unit(1)) == pytest.approx(1.0)
    assert cosine_similarity(unit(1), unit(0, 1)) == pytest.approx(0.0)
    assert cosine_similarity(None, unit(1)) == 0.0
    assert cosine_similarity([], []) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


def test_cosine_matrix_handles_zero_rows():
    sims = cosine_matrix([[1.0, 0.0], [0.0, 0.0], [2.0, 0.0]])
    assert sims.shape == (3, 3)
    assert sims[0, 2] == pytest.approx(1.0)
    assert sims[0, 1] == 0.0
    assert cosine_matrix([]).shape == (0, 0)


# --- Edges -----------------------------------------------------------------------

def test_similar_edge_requires_cosine_above_threshold(assembler, make_note, far_apart):
    a = make_note("alpha", embedding=unit(1, 0), created_at=far_apart(0))
    b = make_note("beta", embedding=unit(0.8, 0.6), created_at=far_apart(1))
    c = make_note("gamma", embedding=unit(0, 1), created_at=far_apart(2))

    graph = assembler.build_graph(USER)

    assert graph.has_edge(a.id, b.id, EdgeType.SIMILAR)          # cos 0.8
    assert not graph.has_edge(b.id, c.id, EdgeType.SIMILAR)      # cos 0.6
    assert not graph.has_edge(a.id, c.id)
    assert graph.summary() == {"nodes": 3, "explicit": 0, "similar": 1, "shared_tags": 0, "temporal": 0}


def test_has_edge_is_order_independent(assembler, make_note, far_apart):
    a = make_note("alpha", embedding=unit(1), created_at=far_apart(0))
    b = make_note("beta", embedding=unit(1), created_at=far_apart(1))

    graph = assembler.build_graph(USER)

    assert graph.has_edge(a.id, b.id, "similar")
    assert graph.has_edge(b.id, a.id, EdgeType.SIMILAR)
    assert not graph.has_edge(a.id, b.id, EdgeType.TEMPORAL)


def test_temporal_window_is_exclusive(assembler, make_note, t0):
    a = make_note("alpha", embedding=unit(1), created_at=t0)
    b = make_note("beta", embedding=unit(0, 1), created_at=t0 + timedelta(hours=24))
    c = make_note("gamma", embedding=unit(0, 0, 1), created_at=t0 + timedelta(hours=47))

    graph = assembler.build_graph(USER)

    assert not graph.has_edge(a.id, b.id, EdgeType.TEMPORAL)
    assert graph.has_edge(b.id, c.id, EdgeType.TEMPORAL)
    assert not graph.has_edge(a.id, c.id, EdgeType.TEMPORAL)


def test_custom_temporal_window(items, entity_store, make_note, t0):
    a = make_note("alpha", embedding=unit(1), created_at=t0)
    b = make_note("beta", embedding=unit(0, 1), created_at=t0 + timedelta(hours=30))

    graph = GraphAssembler(items, entity_store, temporal_window_hours=48).build_graph(USER)
    assert graph.has_edge(a.id, b.id, EdgeType.TEMPORAL)


def test_shared_tag_edges_between_notes(assembler, make_note, far_apart):
    a = make_note("alpha", embedding=unit(1), created_at=far_apart(0), tags=("travel", "paris"))
    b = make_note("beta", embedding=unit(0, 1), created_at=far_apart(1), tags=("Travel",))
    c = make_note("gamma", embedding=unit(0, 0, 1), created_at=far_apart(2), tags=("work",))

    graph = assembler.build_graph(USER)

    assert graph.has_edge(a.id, b.id, EdgeType.SHARED_TAGS)
    assert not graph.has_edge(a.id, c.id, EdgeType.SHARED_TAGS)
    assert not graph.has_edge(b.id, c.id, EdgeType.SHARED_TAGS)
    assert graph.node(a.id).metadata["tags"] == ["paris", "travel"]


def test_explicit_edges_from_entities(assembler, entity_store, make_note, far_apart):
    first = make_note("Alice joined Acme", embedding=unit(1), created_at=far_apart(0))
    second = make_note("Lunch with Alice", embedding=unit(0, 1), created_at=far_apart(1))

    entity_store.store_extraction(
        USER,
        ExtractionResult(
            entities=[
                ExtractedEntity(name="Alice", type="person"),
                ExtractedEntity(name="Acme", type="organization"),
            ],
            relationships=[ExtractedRelationship(source="Alice", target="Acme", type="works_at")],
        ),
        [unit(0, 0, 1), unit(0, 0, 0, 1)],
        "note",
        first.id,
    )
    entity_store.store_extraction(
        USER,
        ExtractionResult(entities=[ExtractedEntity(name="Alice", type="person"), ExtractedEntity(name="Oslo", type="location")]),
        [None, unit(0, 0, 0, 0, 1)],
        "note",
        second.id,
    )
    ids = {e.name: e.id for e in entity_store.list_entities(USER)}

    graph = assembler.build_graph(USER)

    assert _labels(graph, ids["Alice"], ids["Acme"]) == {"works_at"}
    assert _labels(graph, first.id, ids["Alice"]) == {"works_at"}
    assert _labels(graph, first.id, ids["Acme"]) == {"works_at"}
    assert _labels(graph, second.id, ids["Oslo"]) == {"mentions"}
    # Both notes mention Alice
    assert _labels(graph, first.id, second.id) == {"works_at"}
    assert not graph.has_edge(first.id, ids["Oslo"])
    assert len(graph.nodes) == 5
    assert graph.node(ids["Alice"]).is_entity


def test_entity_pairs_never_get_similarity_edges(assembler, entity_store):
    a = entity_store.store_entity(USER, ExtractedEntity(name="Alice", type="person"), unit(1))
    b = entity_store.store_entity(USER, ExtractedEntity(name="Alicia", type="person"), unit(1))

    graph = assembler.build_graph(USER)
    assert not graph.has_edge(a, b, EdgeType.SIMILAR)


def test_edges_are_deduplicated_per_type_and_label():
    first = GraphEdge(source_id="a", target_id="b", type=EdgeType.SIMILAR, label="similar")
    reverse = GraphEdge(source_id="b", target_id="a", type=EdgeType.SIMILAR, label="similar")
    assert first.key() == reverse.key()


# --- Nodes -----------------------------------------------------------------------

def test_unprocessed_notes_are_excluded(assembler, items, make_note, far_apart):
    done = make_note("done", embedding=unit(1), created_at=far_apart(0))
    make_note("raw", embedding=unit(1), created_at=far_apart(1), status=ItemStatus.RAW)
    make_note("broken", embedding=unit(1), created_at=far_apart(2), status=ItemStatus.ERROR)
    task = items.create_item(USER, ItemType.TASK, title="Pending task", status=ItemStatus.RAW)

    graph = assembler.build_graph(USER)

    assert {n.id for n in graph.nodes} == {done.id, task.id}
    task_node = graph.node(task.id)
    assert task_node.content == "Pending task"
    assert task_node.embedding is None


def test_missing_embedding_is_computed_on_demand(items, entity_store, embedder, embedding_client, make_note):
    note = make_note("no chunks yet", summary="A summary to embed")
    embedding_client.vectors["A summary to embed"] = unit(0, 3, 4)

    graph = GraphAssembler(items, entity_store, embedder).build_graph(USER)

    assert graph.node(note.id).embedding == unit(0, 3, 4)
    # Not persisted
    assert items.first_chunk_embedding(note.id) is None


def test_on_demand_embedding_failure_keeps_node_without_vector(items, entity_store, embedder, embedding_client, make_note):
    note = make_note("content")
    embedding_client.fail = True

    graph = GraphAssembler(items, entity_store, embedder).build_graph(USER)
    assert graph.node(note.id).embedding is None


def test_items_without_content_or_embedding_are_skipped(assembler, items):
    items.create_item(USER, ItemType.NOTE, title=None, raw_text="", status=ItemStatus.PROCESSED)
    assert assembler.build_graph(USER).nodes == []


def test_event_node_content_and_metadata(assembler, items, t0):
    event = items.create_item(
        USER,
        ItemType.EVENT,
        title="Dentist",
        raw_text="Check-up",
        location="Main St",
        start_datetime=t0,
    )
    node = assembler.build_graph(USER).node(event.id)

    assert node.type == "event"
    assert node.content == "Dentist Check-up Main St"
    assert node.metadata["start_datetime"] == t0.isoformat()
    assert node.metadata["location"] == "Main St"


def test_other_users_items_are_invisible(assembler, make_note):
    make_note("mine", embedding=unit(1))
    make_note("theirs", embedding=unit(1), user_id="someone-else")
    assert len(assembler.build_graph(USER).nodes) == 1


def test_export_graph_attaches_positions(assembler, projections, make_note, far_apart):
    a = make_note("alpha", embedding=unit(1), created_at=far_apart(0))
    b = make_note("beta", embedding=unit(1), created_at=far_apart(1))
    projections.save(USER, [Projection(item_type="note", item_id=a.id, x=1.5, y=-2.0)])

    exported = assembler.export_graph(USER, projections)

    nodes = {n["id"]: n for n in exported["nodes"]}
    assert (nodes[a.id]["x"], nodes[a.id]["y"]) == (1.5, -2.0)
    assert nodes[b.id]["x"] is None
    assert exported["edges"][0]["type"] == "similar"
    assert exported["summary"]["similar"] == 1


def test_from_config(items, entity_store):
    assembler = GraphAssembler.from_config(
        items, entity_store, None, {"graph": {"similarity_threshold": 0.5, "temporal_window_hours": 6}}
    )
    assert assembler.similarity_threshold == 0.5
    assert assembler.temporal_window == timedelta(hours=6)
