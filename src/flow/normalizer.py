"""Lenient parsing of raw conversation graphs.

Persisted graphs come from manual edits, partial saves and older schema
versions. Rather than rejecting a whole graph, every node and edge is
validated on its own: invalid elements are dropped or coerced, and each
decision is reported as a ``GraphDiagnostic``. ``normalize_graph`` always
returns a usable graph; ``parse_graph`` also returns what was changed.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import structlog

from src.flow.defaults import default_graph
from src.flow.models import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    DEFAULT_MAX_DEPTH,
    GRAPH_VERSION,
    MAX_DEPTH,
    MAX_PRIORITY,
    MAX_WAIT_MINUTES,
    MIN_DEPTH,
    MIN_PRIORITY,
    ConversationFlowGraph,
    EdgeTrigger,
    FlowEdge,
    FlowNode,
    Intent,
    NodeKind,
    create_id,
)

log = structlog.get_logger()

_TRIGGERS = {trigger.value: trigger for trigger in EdgeTrigger}
_INTENTS = {intent.value: intent for intent in Intent}
_FALSE_STRINGS = {"", "false", "0", "no", "off"}


@dataclass
class GraphDiagnostic:
    code: str
    severity: str  # "error" (element dropped) | "warning" (value coerced) | "info"
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None
    hint: Optional[str] = None


@dataclass
class GraphParseResult:
    graph: ConversationFlowGraph
    diagnostics: list[GraphDiagnostic] = field(default_factory=list)

    @property
    def errors(self) -> list[GraphDiagnostic]:
        return [item for item in self.diagnostics if item.severity == "error"]

    @property
    def warnings(self) -> list[GraphDiagnostic]:
        return [item for item in self.diagnostics if item.severity in {"warning", "info"}]

    @property
    def ok(self) -> bool:
        return not self.errors


def _as_record(value: Any) -> dict:
    if isinstance(value, Mapping):
        return dict(value)
    return {}


def _as_list(value: Any) -> list:
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def _pick(row: dict, *keys: str) -> Any:
    for key in keys:
        if row.get(key) is not None:
            return row[key]
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        value = value.value
    return str(value).strip()


def _number(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        num = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(num):
        return None
    return num


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    return bool(value)


def _clamp(
    value: Any,
    low: float,
    high: float,
    default: float,
    name: str,
    diagnostics: list[GraphDiagnostic],
    node_id: Optional[str] = None,
    edge_id: Optional[str] = None,
) -> float:
    num = _number(value)
    if num is None:
        if value is not None:
            diagnostics.append(GraphDiagnostic(
                code="value_defaulted",
                severity="warning",
                message=f"{name} is not a number, using {default}",
                node_id=node_id,
                edge_id=edge_id,
            ))
        return default

    clamped = max(low, min(high, num))
    if clamped != num:
        diagnostics.append(GraphDiagnostic(
            code="value_clamped",
            severity="warning",
            message=f"{name}={num} outside [{low}, {high}], clamped to {clamped}",
            node_id=node_id,
            edge_id=edge_id,
        ))
    return clamped


def _parse_node(value: Any, diagnostics: list[GraphDiagnostic]) -> Optional[FlowNode]:
    row = _as_record(value)
    node_id = _text(row.get("id"))
    if not node_id:
        node_id = create_id("node")
        diagnostics.append(GraphDiagnostic(
            code="node_id_generated",
            severity="info",
            message="node without id received a generated id",
            node_id=node_id,
        ))

    kind_raw = _text(row.get("kind")) or NodeKind.MESSAGE.value
    if kind_raw == NodeKind.TERMINAL.value:
        kind = NodeKind.TERMINAL
    else:
        kind = NodeKind.MESSAGE
        if kind_raw != NodeKind.MESSAGE.value:
            diagnostics.append(GraphDiagnostic(
                code="node_kind_coerced",
                severity="warning",
                message=f"unknown node kind '{kind_raw}' treated as message",
                node_id=node_id,
            ))

    subject = _text(row.get("subject"))
    body = _text(row.get("body"))

    if kind == NodeKind.MESSAGE and not body:
        diagnostics.append(GraphDiagnostic(
            code="node_dropped_empty_body",
            severity="error",
            message="message node has an empty body",
            node_id=node_id,
            hint="Write the message body or change the node to a terminal node.",
        ))
        return None

    auto_send = _flag(_pick(row, "autoSend", "auto_send"), default=True)
    if kind == NodeKind.TERMINAL:
        if subject or body:
            diagnostics.append(GraphDiagnostic(
                code="terminal_content_cleared",
                severity="warning",
                message="terminal node subject/body discarded",
                node_id=node_id,
            ))
        subject, body, auto_send = "", "", False

    delay = _clamp(
        _pick(row, "delayMinutes", "delay_minutes"), 0, MAX_WAIT_MINUTES, 0,
        "delayMinutes", diagnostics, node_id=node_id,
    )

    position = _as_record(row.get("position"))
    x = _number(row["x"] if row.get("x") is not None else position.get("x"))
    y = _number(row["y"] if row.get("y") is not None else position.get("y"))

    return FlowNode(
        id=node_id,
        kind=kind,
        title=_text(row.get("title")) or ("End" if kind == NodeKind.TERMINAL else "Message"),
        subject=subject,
        body=body,
        auto_send=auto_send,
        delay_minutes=int(delay),
        x=x if x is not None else 0.0,
        y=y if y is not None else 0.0,
    )


def _parse_edge(value: Any, diagnostics: list[GraphDiagnostic]) -> Optional[FlowEdge]:
    row = _as_record(value)
    edge_id = _text(row.get("id")) or create_id("edge")
    from_node_id = _text(_pick(row, "fromNodeId", "from_node_id"))
    to_node_id = _text(_pick(row, "toNodeId", "to_node_id"))

    if not from_node_id or not to_node_id:
        diagnostics.append(GraphDiagnostic(
            code="edge_dropped_missing_endpoint",
            severity="error",
            message="edge is missing fromNodeId or toNodeId",
            edge_id=edge_id,
        ))
        return None

    trigger_raw = _text(row.get("trigger")) or EdgeTrigger.FALLBACK.value
    trigger = _TRIGGERS.get(trigger_raw)
    if trigger is None:
        trigger = EdgeTrigger.FALLBACK
        diagnostics.append(GraphDiagnostic(
            code="edge_trigger_coerced",
            severity="warning",
            message=f"unknown trigger '{trigger_raw}' treated as fallback",
            edge_id=edge_id,
        ))

    intent_raw = _text(row.get("intent"))
    intent = _INTENTS.get(intent_raw)
    if intent is None:
        intent = Intent.NONE
        diagnostics.append(GraphDiagnostic(
            code="edge_intent_coerced",
            severity="warning",
            message=f"unknown intent '{intent_raw}' cleared",
            edge_id=edge_id,
        ))
    if trigger == EdgeTrigger.INTENT and intent == Intent.NONE:
        diagnostics.append(GraphDiagnostic(
            code="edge_intent_missing",
            severity="warning",
            message="intent edge has no intent and will only match unlabelled replies",
            edge_id=edge_id,
        ))

    wait = _clamp(
        _pick(row, "waitMinutes", "wait_minutes"), 0, MAX_WAIT_MINUTES, 0,
        "waitMinutes", diagnostics, edge_id=edge_id,
    )
    threshold = _clamp(
        _pick(row, "confidenceThreshold", "confidence_threshold"), 0.0, 1.0,
        DEFAULT_CONFIDENCE_THRESHOLD, "confidenceThreshold", diagnostics, edge_id=edge_id,
    )
    priority = _clamp(
        row.get("priority"), MIN_PRIORITY, MAX_PRIORITY, MIN_PRIORITY,
        "priority", diagnostics, edge_id=edge_id,
    )

    return FlowEdge(
        id=edge_id,
        from_node_id=from_node_id,
        to_node_id=to_node_id,
        trigger=trigger,
        intent=intent,
        wait_minutes=int(wait),
        confidence_threshold=float(threshold),
        priority=int(priority),
    )


def parse_graph(raw: Any) -> GraphParseResult:
    """Coerce arbitrary input into a valid graph, reporting every change."""
    if isinstance(raw, ConversationFlowGraph):
        raw = raw.to_json()
    row = _as_record(raw)
    diagnostics: list[GraphDiagnostic] = []

    nodes: list[FlowNode] = []
    node_ids: set[str] = set()
    for item in _as_list(row.get("nodes")):
        node = _parse_node(item, diagnostics)
        if node is None:
            continue
        if node.id in node_ids:
            diagnostics.append(GraphDiagnostic(
                code="node_dropped_duplicate_id",
                severity="error",
                message="a node with this id already exists",
                node_id=node.id,
            ))
            continue
        node_ids.add(node.id)
        nodes.append(node)

    if not nodes:
        diagnostics.append(GraphDiagnostic(
            code="graph_replaced_with_default",
            severity="error",
            message="no valid nodes survived, using the default graph",
            hint="Add at least one message node with a body.",
        ))
        log.warning("graph_replaced_with_default", diagnostics=len(diagnostics))
        return GraphParseResult(graph=default_graph(), diagnostics=diagnostics)

    edges: list[FlowEdge] = []
    edge_ids: set[str] = set()
    for item in _as_list(row.get("edges")):
        edge = _parse_edge(item, diagnostics)
        if edge is None:
            continue
        if edge.from_node_id not in node_ids or edge.to_node_id not in node_ids:
            diagnostics.append(GraphDiagnostic(
                code="edge_dropped_dangling",
                severity="error",
                message=f"edge {edge.from_node_id} -> {edge.to_node_id} references a missing node",
                edge_id=edge.id,
            ))
            continue
        if edge.id in edge_ids:
            new_id = create_id("edge")
            diagnostics.append(GraphDiagnostic(
                code="edge_id_regenerated",
                severity="warning",
                message=f"duplicate edge id '{edge.id}' replaced with '{new_id}'",
                edge_id=new_id,
            ))
            edge = edge.model_copy(update={"id": new_id})
        edge_ids.add(edge.id)
        edges.append(edge)

    start_candidate = _text(_pick(row, "startNodeId", "start_node_id"))
    if start_candidate in node_ids:
        start_node_id = start_candidate
    else:
        start_node_id = nodes[0].id
        diagnostics.append(GraphDiagnostic(
            code="start_node_replaced",
            severity="warning",
            message=f"start node '{start_candidate}' not found, using '{start_node_id}'",
            node_id=start_node_id,
        ))

    raw_depth = _pick(row, "maxDepth", "max_depth")
    if _number(raw_depth) == 0:
        # 0 means unset, not "clamp up to 1"
        diagnostics.append(GraphDiagnostic(
            code="value_defaulted",
            severity="warning",
            message=f"maxDepth is 0, using {DEFAULT_MAX_DEPTH}",
        ))
        raw_depth = None
    max_depth = _clamp(
        raw_depth, MIN_DEPTH, MAX_DEPTH, DEFAULT_MAX_DEPTH,
        "maxDepth", diagnostics,
    )

    graph = ConversationFlowGraph(
        version=GRAPH_VERSION,
        max_depth=int(max_depth),
        start_node_id=start_node_id,
        nodes=tuple(nodes),
        edges=tuple(edges),
    )
    if diagnostics:
        log.info(
            "graph_normalized",
            nodes=len(nodes),
            edges=len(edges),
            dropped=sum(1 for item in diagnostics if item.severity == "error"),
        )
    return GraphParseResult(graph=graph, diagnostics=diagnostics)


def normalize_graph(raw: Any) -> ConversationFlowGraph:
    """Return a usable graph for any input. Never raises."""
    return parse_graph(raw).graph


def render_diagnostic(diagnostic: GraphDiagnostic) -> str:
    location_bits: list[str] = []
    if diagnostic.node_id:
        location_bits.append(f"node={diagnostic.node_id}")
    if diagnostic.edge_id:
        location_bits.append(f"edge={diagnostic.edge_id}")

    location = f" ({', '.join(location_bits)})" if location_bits else ""
    hint = f" Hint: {diagnostic.hint}" if diagnostic.hint else ""
    return f"[{diagnostic.severity.upper()}] {diagnostic.code}: {diagnostic.message}{location}.{hint}".rstrip()


def render_diagnostics(diagnostics: list[GraphDiagnostic]) -> str:
    if not diagnostics:
        return ""

    order = {"error": 0, "warning": 1, "info": 2}
    sorted_items = sorted(
        diagnostics,
        key=lambda item: (order.get(item.severity, 9), item.code, item.node_id or item.edge_id or ""),
    )
    return "\n".join(f"- {render_diagnostic(item)}" for item in sorted_items)
