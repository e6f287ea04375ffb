"""Edge resolution: which edge fires for a node and an inbound event."""

from typing import Optional

from src.flow.models import (
    ConversationFlowGraph,
    EdgeTrigger,
    FlowEdge,
    FlowEvent,
    IntentEvent,
    TimerElapsedEvent,
)


def outgoing_edges(graph: ConversationFlowGraph, node_id: str) -> list[FlowEdge]:
    """Edges leaving ``node_id``, lowest priority first.

    ``sorted`` is stable, so equal priorities keep their order in the graph.
    """
    edges = [edge for edge in graph.edges if edge.from_node_id == node_id]
    return sorted(edges, key=lambda edge: edge.priority)


def _matches(edge: FlowEdge, event: FlowEvent) -> bool:
    if isinstance(event, IntentEvent):
        return (
            edge.trigger == EdgeTrigger.INTENT
            and edge.intent == event.intent
            and event.confidence >= edge.confidence_threshold
        )
    if isinstance(event, TimerElapsedEvent):
        return edge.trigger == EdgeTrigger.TIMER and event.elapsed_minutes >= edge.wait_minutes
    return False


def resolve_edge(
    graph: ConversationFlowGraph,
    node_id: str,
    event: FlowEvent,
) -> Optional[FlowEdge]:
    """Pick the edge to follow from ``node_id`` for ``event``.

    Matching intent or timer edges win in priority order; otherwise the
    node's first fallback edge; otherwise None (stay and wait).
    """
    edges = outgoing_edges(graph, node_id)

    for edge in edges:
        if _matches(edge, event):
            return edge

    for edge in edges:
        if edge.trigger == EdgeTrigger.FALLBACK:
            return edge

    return None
