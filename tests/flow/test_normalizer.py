"""Tests for graph normalisation."""

import pytest

from src.flow.defaults import default_graph
from src.flow.models import EdgeTrigger, Intent, NodeKind
from src.flow.normalizer import normalize_graph, parse_graph, render_diagnostics


def raw_graph(**overrides) -> dict:
    graph = {
        "version": 1,
        "maxDepth": 3,
        "startNodeId": "a",
        "nodes": [
            {"id": "a", "kind": "message", "subject": "Hi", "body": "Hello {{firstName}}"},
            {"id": "b", "kind": "message", "body": "Follow up", "autoSend": False},
            {"id": "end", "kind": "terminal"},
        ],
        "edges": [
            {"id": "e1", "fromNodeId": "a", "toNodeId": "b", "trigger": "intent",
             "intent": "interest", "confidenceThreshold": 0.6, "priority": 1},
            {"id": "e2", "fromNodeId": "b", "toNodeId": "end", "trigger": "fallback"},
        ],
    }
    graph.update(overrides)
    return graph


def codes(result) -> list[str]:
    return [item.code for item in result.diagnostics]


def test_valid_graph_has_no_diagnostics():
    result = parse_graph(raw_graph())

    assert result.ok
    assert result.diagnostics == []
    assert result.graph.start_node_id == "a"
    assert result.graph.max_depth == 3
    assert [node.id for node in result.graph.nodes] == ["a", "b", "end"]
    assert result.graph.node("b").auto_send is False
    assert result.graph.edges[0].intent == Intent.INTEREST


def test_normalisation_is_idempotent():
    once = normalize_graph(raw_graph())
    twice = normalize_graph(once.to_json())

    assert twice == once


def test_normalising_a_graph_instance_returns_equal_graph():
    graph = default_graph()

    assert normalize_graph(graph) == graph


def test_snake_case_keys_are_accepted():
    result = parse_graph({
        "start_node_id": "a",
        "max_depth": 2,
        "nodes": [{"id": "a", "body": "Hi", "auto_send": False, "delay_minutes": 30}],
        "edges": [],
    })

    node = result.graph.node("a")
    assert node.auto_send is False
    assert node.delay_minutes == 30
    assert result.graph.max_depth == 2


def test_empty_message_body_drops_node_and_its_edges():
    graph = raw_graph()
    graph["nodes"][1]["body"] = "   "

    result = parse_graph(graph)

    assert "node_dropped_empty_body" in codes(result)
    assert result.graph.node("b") is None
    # Both edges touched node b
    assert result.graph.edges == ()
    assert codes(result).count("edge_dropped_dangling") == 2


def test_unknown_node_kind_becomes_message():
    graph = raw_graph()
    graph["nodes"][1]["kind"] = "sms"

    result = parse_graph(graph)

    assert result.graph.node("b").kind == NodeKind.MESSAGE
    assert "node_kind_coerced" in codes(result)


def test_terminal_nodes_lose_content_and_never_auto_send():
    graph = raw_graph()
    graph["nodes"][2].update({"subject": "Bye", "body": "Goodbye", "autoSend": True})

    result = parse_graph(graph)

    end = result.graph.node("end")
    assert end.subject == ""
    assert end.body == ""
    assert end.auto_send is False
    assert "terminal_content_cleared" in codes(result)


def test_node_without_id_gets_generated_id():
    graph = raw_graph()
    graph["nodes"].append({"body": "Orphan"})

    result = parse_graph(graph)

    assert len(result.graph.nodes) == 4
    assert result.graph.nodes[-1].id.startswith("node_")
    assert "node_id_generated" in codes(result)


def test_duplicate_node_id_keeps_first():
    graph = raw_graph()
    graph["nodes"].append({"id": "a", "body": "Second a"})

    result = parse_graph(graph)

    assert result.graph.node("a").body == "Hello {{firstName}}"
    assert len(result.graph.nodes) == 3
    assert "node_dropped_duplicate_id" in codes(result)


def test_no_valid_nodes_falls_back_to_default_graph():
    result = parse_graph({"nodes": [{"id": "x", "body": ""}]})

    assert result.graph == default_graph()
    assert "graph_replaced_with_default" in codes(result)


def test_garbage_input_falls_back_to_default_graph():
    assert normalize_graph(None) == default_graph()
    assert normalize_graph("not a graph") == default_graph()
    assert normalize_graph({"nodes": "nope"}) == default_graph()


def test_dangling_edges_are_dropped_not_rejected():
    graph = raw_graph()
    graph["edges"].append({"id": "e3", "fromNodeId": "a", "toNodeId": "ghost"})

    result = parse_graph(graph)

    node_ids = result.graph.node_ids()
    assert [edge.id for edge in result.graph.edges] == ["e1", "e2"]
    assert all(edge.from_node_id in node_ids and edge.to_node_id in node_ids
               for edge in result.graph.edges)
    assert "edge_dropped_dangling" in codes(result)


def test_edge_missing_endpoint_is_dropped():
    graph = raw_graph()
    graph["edges"].append({"id": "e3", "fromNodeId": "a"})

    result = parse_graph(graph)

    assert "edge_dropped_missing_endpoint" in codes(result)
    assert len(result.graph.edges) == 2


def test_unknown_trigger_and_intent_are_coerced():
    graph = raw_graph()
    graph["edges"][0].update({"trigger": "webhook", "intent": "angry"})

    result = parse_graph(graph)

    edge = result.graph.edges[0]
    assert edge.trigger == EdgeTrigger.FALLBACK
    assert edge.intent == Intent.NONE
    assert "edge_trigger_coerced" in codes(result)
    assert "edge_intent_coerced" in codes(result)


def test_numeric_fields_are_clamped():
    graph = raw_graph(maxDepth=12)
    graph["edges"][0].update({"confidenceThreshold": 1.7, "priority": 500, "waitMinutes": -5})

    result = parse_graph(graph)

    edge = result.graph.edges[0]
    assert result.graph.max_depth == 5
    assert edge.confidence_threshold == 1.0
    assert edge.priority == 100
    assert edge.wait_minutes == 0
    assert "value_clamped" in codes(result)


def test_non_numeric_values_use_defaults():
    graph = raw_graph(maxDepth="deep")
    graph["edges"][0]["confidenceThreshold"] = "high"

    result = parse_graph(graph)

    assert result.graph.max_depth == 5
    assert result.graph.edges[0].confidence_threshold == 0.7
    assert "value_defaulted" in codes(result)


def test_max_depth_stays_within_bounds():
    for raw_depth in (-3, 0, 1, 4, 99, None):
        graph = normalize_graph(raw_graph(maxDepth=raw_depth))
        assert 1 <= graph.max_depth <= 5


def test_missing_start_node_uses_first_node():
    result = parse_graph(raw_graph(startNodeId="missing"))

    assert result.graph.start_node_id == "a"
    assert "start_node_replaced" in codes(result)


def test_duplicate_edge_ids_are_regenerated():
    graph = raw_graph()
    graph["edges"].append({"id": "e1", "fromNodeId": "a", "toNodeId": "end", "trigger": "fallback"})

    result = parse_graph(graph)

    edge_ids = [edge.id for edge in result.graph.edges]
    assert len(edge_ids) == 3
    assert len(set(edge_ids)) == 3
    assert "edge_id_regenerated" in codes(result)


def test_render_diagnostics_lists_errors_first():
    graph = raw_graph(startNodeId="missing")
    graph["edges"].append({"id": "e3", "fromNodeId": "a", "toNodeId": "ghost"})

    rendered = render_diagnostics(parse_graph(graph).diagnostics)

    lines = rendered.splitlines()
    assert lines[0].startswith("- [ERROR] edge_dropped_dangling")
    assert "edge=e3" in lines[0]
    assert any("[WARNING] start_node_replaced" in line for line in lines)


def test_huge_integers_do_not_break_normalisation():
    graph = raw_graph()
    graph["nodes"][0]["delayMinutes"] = 10**400
    graph["edges"][0]["priority"] = -(10**400)

    result = parse_graph(graph)

    assert result.graph.node("a").delay_minutes == 0
    assert result.graph.edges[0].priority == 1
    assert codes(result).count("value_defaulted") == 2


def test_zero_max_depth_means_default():
    result = parse_graph(raw_graph(maxDepth=0))

    assert result.graph.max_depth == 5
    assert "value_defaulted" in codes(result)
    assert normalize_graph(raw_graph(maxDepth=-3)).max_depth == 1


MESSY_GRAPHS = [
    {
        "startNodeId": "missing",
        "maxDepth": "2.9",
        "nodes": [
            {"body": "No id here", "autoSend": "false", "position": {"x": "12.5", "y": None}},
            {"id": "b", "kind": "sms", "body": "Hi", "delayMinutes": 99999.4, "x": "left"},
            {"id": "end", "kind": "terminal", "subject": "Bye", "autoSend": "yes"},
        ],
        "edges": [
            {"id": "e1", "fromNodeId": "b", "toNodeId": "end", "priority": 2.7, "trigger": "webhook"},
            {"id": "e1", "fromNodeId": "b", "toNodeId": "end", "priority": 500, "trigger": "timer",
             "waitMinutes": "-10"},
            {"id": "e2", "fromNodeId": "b", "toNodeId": "ghost"},
            {"fromNodeId": "b", "toNodeId": "end", "trigger": "intent", "intent": "interest",
             "confidenceThreshold": "0.8"},
        ],
    },
    {
        "start_node_id": "a",
        "max_depth": 0,
        "nodes": [
            {"id": "a", "body": "Hello", "auto_send": 0, "delay_minutes": 10**400},
            {"id": "a", "body": "Duplicate"},
            {"id": "z", "body": ""},
        ],
        "edges": [
            {"id": "loop", "from_node_id": "a", "to_node_id": "a", "trigger": "intent",
             "intent": "angry", "confidence_threshold": None, "priority": 0},
            {"id": "gone", "from_node_id": "z", "to_node_id": "a"},
        ],
    },
    {"nodes": [{"id": "only", "kind": "terminal"}], "edges": "not a list", "maxDepth": 12},
    {"nodes": []},
]


@pytest.mark.parametrize("raw", MESSY_GRAPHS)
def test_normalising_messy_input_is_idempotent(raw):
    once = normalize_graph(raw)
    twice = normalize_graph(once.to_json())

    assert twice == once
    assert parse_graph(once.to_json()).ok
    node_ids = once.node_ids()
    assert once.start_node_id in node_ids
    assert all(edge.from_node_id in node_ids and edge.to_node_id in node_ids for edge in once.edges)
    assert len({edge.id for edge in once.edges}) == len(once.edges)
