"""Tests for map drafts and publishing."""

import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from src.core.db import SQLiteConversationStore
from src.core.errors import ConversationFlowError, ErrorKind
from src.flow.defaults import default_graph
from src.flow.maps import DEFAULT_MAP_NAME, ConversationMapService, new_map, publish_map
from src.flow.models import MapStatus

VARIANT = ("brand_1", "campaign_1", "exp_1")

CUSTOM_GRAPH = {
    "startNodeId": "hello",
    "maxDepth": 2,
    "nodes": [
        {"id": "hello", "body": "Hello {{firstName}}"},
        {"id": "bye", "kind": "terminal"},
    ],
    "edges": [
        {"id": "e1", "fromNodeId": "hello", "toNodeId": "bye", "trigger": "fallback"},
        {"id": "e2", "fromNodeId": "hello", "toNodeId": "nowhere", "trigger": "fallback"},
    ],
}


def make_service(tmpdir: str) -> ConversationMapService:
    return ConversationMapService(SQLiteConversationStore(Path(tmpdir) / "test.db"))


def test_new_map_starts_as_unpublished_default_draft():
    conversation_map = new_map(*VARIANT, name="  ")

    assert conversation_map.name == DEFAULT_MAP_NAME
    assert conversation_map.status == MapStatus.DRAFT
    assert conversation_map.draft_graph == default_graph()
    assert conversation_map.published_graph is None
    assert conversation_map.published_revision == 0
    assert not conversation_map.is_published


def test_publish_map_bumps_revision_and_copies_draft():
    now = datetime(2026, 3, 2, tzinfo=timezone.utc)
    draft = new_map(*VARIANT)

    once = publish_map(draft, now=now)
    twice = publish_map(once, now=now)

    assert once.published_revision == 1
    assert twice.published_revision == 2
    assert twice.published_graph == draft.draft_graph
    assert twice.draft_graph == draft.draft_graph
    assert twice.status == MapStatus.PUBLISHED
    assert twice.published_at == now


def test_archived_maps_cannot_be_published():
    archived = new_map(*VARIANT).model_copy(update={"status": MapStatus.ARCHIVED})

    with pytest.raises(ConversationFlowError) as exc_info:
        publish_map(archived)
    assert exc_info.value.kind == ErrorKind.MAP_ARCHIVED


def test_open_map_creates_once():
    with tempfile.TemporaryDirectory() as tmpdir:
        service = make_service(tmpdir)

        first = service.open_map(*VARIANT, name="Pilot flow")
        second = service.open_map(*VARIANT)

        assert first.id == second.id
        assert second.name == "Pilot flow"
        assert second.draft_graph == default_graph()


def test_get_map_raises_when_missing():
    with tempfile.TemporaryDirectory() as tmpdir:
        service = make_service(tmpdir)

        with pytest.raises(ConversationFlowError) as exc_info:
            service.get_map(*VARIANT)
        assert exc_info.value.kind == ErrorKind.MAP_NOT_FOUND


def test_save_draft_normalises_and_reports():
    with tempfile.TemporaryDirectory() as tmpdir:
        service = make_service(tmpdir)

        result = service.save_draft(*VARIANT, CUSTOM_GRAPH, name="Custom")

        draft = result.conversation_map.draft_graph
        assert result.conversation_map.name == "Custom"
        assert draft.start_node_id == "hello"
        assert [edge.id for edge in draft.edges] == ["e1"]
        assert [item.code for item in result.diagnostics] == ["edge_dropped_dangling"]
        assert service.get_map(*VARIANT).draft_graph == draft


def test_save_draft_leaves_published_graph_alone():
    with tempfile.TemporaryDirectory() as tmpdir:
        service = make_service(tmpdir)
        service.open_map(*VARIANT)
        published = service.publish(*VARIANT)

        service.save_draft(*VARIANT, CUSTOM_GRAPH)

        stored = service.get_map(*VARIANT)
        assert stored.published_graph == published.published_graph == default_graph()
        assert stored.published_revision == 1
        assert stored.draft_graph.start_node_id == "hello"


def test_publishing_twice_bumps_revision_by_two():
    with tempfile.TemporaryDirectory() as tmpdir:
        service = make_service(tmpdir)
        service.save_draft(*VARIANT, CUSTOM_GRAPH)
        draft_before = service.get_map(*VARIANT).draft_graph

        service.publish(*VARIANT)
        service.publish(*VARIANT)

        stored = service.get_map(*VARIANT)
        assert stored.published_revision == 2
        assert stored.draft_graph == draft_before
        assert stored.published_graph == draft_before
        assert service.graph_for_revision(stored.id, 1) == draft_before
        assert service.graph_for_revision(stored.id, 2) == draft_before


def test_get_published_requires_a_publish():
    with tempfile.TemporaryDirectory() as tmpdir:
        service = make_service(tmpdir)
        service.open_map(*VARIANT)

        with pytest.raises(ConversationFlowError) as exc_info:
            service.get_published(*VARIANT)
        assert exc_info.value.kind == ErrorKind.MAP_NOT_PUBLISHED

        service.publish(*VARIANT)
        assert service.get_published(*VARIANT).published_revision == 1


def test_archive_blocks_new_sessions_and_publishing():
    with tempfile.TemporaryDirectory() as tmpdir:
        service = make_service(tmpdir)
        service.open_map(*VARIANT)
        published = service.publish(*VARIANT)

        archived = service.archive(*VARIANT)

        assert archived.status == MapStatus.ARCHIVED
        # Snapshot stays readable for running sessions
        assert service.graph_for_revision(published.id, 1) == default_graph()
        with pytest.raises(ConversationFlowError) as exc_info:
            service.get_published(*VARIANT)
        assert exc_info.value.kind == ErrorKind.MAP_NOT_PUBLISHED
        with pytest.raises(ConversationFlowError) as exc_info:
            service.publish(*VARIANT)
        assert exc_info.value.kind == ErrorKind.MAP_ARCHIVED


def test_missing_revision_raises_map_not_found():
    with tempfile.TemporaryDirectory() as tmpdir:
        service = make_service(tmpdir)
        conversation_map = service.open_map(*VARIANT)

        with pytest.raises(ConversationFlowError) as exc_info:
            service.graph_for_revision(conversation_map.id, 3)
        assert exc_info.value.kind == ErrorKind.MAP_NOT_FOUND
