"""Conversation flow data model: graphs, maps, sessions and audit events."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

GRAPH_VERSION = 1
MIN_DEPTH = 1
MAX_DEPTH = 5
DEFAULT_MAX_DEPTH = 5
MAX_WAIT_MINUTES = 10080  # 7 days
MIN_PRIORITY = 1
MAX_PRIORITY = 100
DEFAULT_CONFIDENCE_THRESHOLD = 0.7


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def create_id(prefix: str) -> str:
    """Generate a short prefixed id, e.g. ``node_3f9a1c2b7d4e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class NodeKind(str, Enum):
    MESSAGE = "message"
    TERMINAL = "terminal"


class EdgeTrigger(str, Enum):
    INTENT = "intent"
    TIMER = "timer"
    FALLBACK = "fallback"


class Intent(str, Enum):
    QUESTION = "question"
    INTEREST = "interest"
    OBJECTION = "objection"
    UNSUBSCRIBE = "unsubscribe"
    OTHER = "other"
    NONE = ""


class MapStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class SessionState(str, Enum):
    ACTIVE = "active"
    WAITING_MANUAL = "waiting_manual"
    COMPLETED = "completed"
    FAILED = "failed"


CLOSED_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED})


class FlowModel(BaseModel):
    """Immutable model serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class FlowNode(FlowModel):
    id: str
    kind: NodeKind = NodeKind.MESSAGE
    title: str = "Message"
    subject: str = ""
    body: str = ""
    auto_send: bool = True
    delay_minutes: int = 0
    x: float = 0.0
    y: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.kind == NodeKind.TERMINAL


class FlowEdge(FlowModel):
    id: str
    from_node_id: str
    to_node_id: str
    trigger: EdgeTrigger = EdgeTrigger.FALLBACK
    intent: Intent = Intent.NONE
    wait_minutes: int = 0
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    priority: int = MIN_PRIORITY


class ConversationFlowGraph(FlowModel):
    version: int = GRAPH_VERSION
    max_depth: int = DEFAULT_MAX_DEPTH
    start_node_id: str
    nodes: tuple[FlowNode, ...] = ()
    edges: tuple[FlowEdge, ...] = ()

    def node(self, node_id: str) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self) -> set[str]:
        return {node.id for node in self.nodes}

    def terminal_nodes(self) -> list[FlowNode]:
        return [node for node in self.nodes if node.is_terminal]


class ConversationMap(FlowModel):
    id: str
    brand_id: str
    campaign_id: str
    experiment_id: str
    name: str = "Variant Conversation Flow"
    status: MapStatus = MapStatus.DRAFT
    draft_graph: ConversationFlowGraph
    published_graph: Optional[ConversationFlowGraph] = None
    published_revision: int = 0
    published_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_published(self) -> bool:
        return self.status == MapStatus.PUBLISHED and self.published_revision > 0


@dataclass(frozen=True)
class IntentEvent:
    """A classified inbound reply."""
    intent: Intent
    confidence: float

    kind = "intent"

    def to_payload(self) -> dict:
        return {"kind": self.kind, "intent": self.intent.value, "confidence": self.confidence}


@dataclass(frozen=True)
class TimerElapsedEvent:
    """Minutes elapsed since the session entered its current node."""
    elapsed_minutes: int

    kind = "timer_elapsed"

    def to_payload(self) -> dict:
        return {"kind": self.kind, "elapsedMinutes": self.elapsed_minutes}


FlowEvent = Union[IntentEvent, TimerElapsedEvent]


@dataclass(frozen=True)
class ConversationSession:
    """Live traversal of a published graph for one (run, lead) pair."""
    id: str
    run_id: str
    brand_id: str
    campaign_id: str
    lead_id: str
    map_id: str
    map_revision: int
    current_node_id: str
    state: SessionState = SessionState.ACTIVE
    turn_count: int = 0
    last_intent: Intent = Intent.NONE
    last_confidence: float = 0.0
    last_node_entered_at: datetime = field(default_factory=utc_now)
    ended_reason: str = ""
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_closed(self) -> bool:
        return self.state in CLOSED_STATES


@dataclass(frozen=True)
class ConversationEvent:
    """Append-only audit log entry for a session."""
    id: str
    session_id: str
    run_id: str
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
