"""Conversation flow engine: graphs, maps, sessions."""

from src.flow.models import (
    ConversationEvent,
    ConversationFlowGraph,
    ConversationMap,
    ConversationSession,
    EdgeTrigger,
    FlowEdge,
    FlowNode,
    Intent,
    IntentEvent,
    MapStatus,
    NodeKind,
    SessionState,
    TimerElapsedEvent,
)
from src.flow.defaults import default_graph
from src.flow.normalizer import GraphDiagnostic, normalize_graph, parse_graph
from src.flow.resolver import resolve_edge
from src.flow.maps import ConversationMapService, DraftSaveResult, publish_map
from src.flow.sessions import Advance, Outcome, SessionManager, advance_session
