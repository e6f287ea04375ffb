"""Per-lead conversation session lifecycle.

States:
    active          awaiting the next event, or ready to send
    waiting_manual  entered a node with autoSend=false; a human must approve
    completed       entered a terminal node
    failed          error, cancellation, or the turn limit was exceeded

``advance_session`` is the pure transition function. ``SessionManager``
wraps it with persistence, audit events and per-session serialisation.
Completed and failed sessions never transition again.
"""

import threading
import weakref
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from src.core.config import FlowConfig, UnsubscribePolicy
from src.core.errors import ConversationFlowError, ErrorKind
from src.flow.maps import ConversationMapService
from src.flow.models import (
    ConversationEvent,
    ConversationFlowGraph,
    ConversationSession,
    FlowEdge,
    FlowEvent,
    Intent,
    IntentEvent,
    SessionState,
    create_id,
    utc_now,
)
from src.flow.resolver import resolve_edge
from src.flow.store import ConversationStore

log = structlog.get_logger()

TERMINAL_REACHED = "terminal_reached"
MAX_DEPTH_EXCEEDED = "max_depth_exceeded"
UNSUBSCRIBE_UNROUTED = "unsubscribe_unrouted"
NODE_MISSING = "node_missing"


class Outcome(str, Enum):
    ADVANCED = "advanced"
    WAITING_MANUAL = "waiting_manual"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_TRANSITION = "no_transition"
    DEFERRED = "deferred"
    APPROVED = "approved"


@dataclass(frozen=True)
class Advance:
    """Result of applying one event to a session."""
    session: ConversationSession
    outcome: Outcome
    edge: Optional[FlowEdge] = None
    error: Optional[ConversationFlowError] = None


def session_closed_error(session: ConversationSession) -> ConversationFlowError:
    return ConversationFlowError(
        f"Conversation session is {session.state.value} and accepts no further events.",
        kind=ErrorKind.SESSION_CLOSED,
        hint="Start a new run to contact this lead again.",
        debug={"session_id": session.id, "state": session.state.value, "ended_reason": session.ended_reason},
    )


def _fail(
    session: ConversationSession,
    reason: str,
    kind: ErrorKind,
    message: str,
    now: datetime,
    edge: Optional[FlowEdge] = None,
) -> Advance:
    failed = replace(session, state=SessionState.FAILED, ended_reason=reason, updated_at=now)
    error = ConversationFlowError(
        message,
        kind=kind,
        debug={
            "session_id": session.id,
            "node_id": session.current_node_id,
            "turn_count": session.turn_count,
            "edge_id": edge.id if edge else None,
        },
    )
    return Advance(session=failed, outcome=Outcome.FAILED, edge=edge, error=error)


def _enter(
    session: ConversationSession,
    graph: ConversationFlowGraph,
    to_node_id: str,
    now: datetime,
    edge: Optional[FlowEdge] = None,
) -> Advance:
    if session.turn_count + 1 > graph.max_depth:
        return _fail(
            session,
            MAX_DEPTH_EXCEEDED,
            ErrorKind.TURN_LIMIT_EXCEEDED,
            f"Conversation reached its limit of {graph.max_depth} turns.",
            now,
            edge,
        )

    destination = graph.node(to_node_id)
    if destination is None:
        return _fail(session, NODE_MISSING, ErrorKind.NODE_MISSING, f"Node '{to_node_id}' is not in the graph.", now, edge)

    if destination.is_terminal:
        state, outcome, reason = SessionState.COMPLETED, Outcome.COMPLETED, TERMINAL_REACHED
    elif not destination.auto_send:
        state, outcome, reason = SessionState.WAITING_MANUAL, Outcome.WAITING_MANUAL, ""
    else:
        state, outcome, reason = SessionState.ACTIVE, Outcome.ADVANCED, ""

    moved = replace(
        session,
        state=state,
        current_node_id=destination.id,
        turn_count=session.turn_count + 1,
        last_node_entered_at=now,
        ended_reason=reason,
        updated_at=now,
    )
    return Advance(session=moved, outcome=outcome, edge=edge)


def advance_session(
    session: ConversationSession,
    graph: ConversationFlowGraph,
    event: FlowEvent,
    now: Optional[datetime] = None,
    unsubscribe_policy: UnsubscribePolicy = UnsubscribePolicy.FAIL,
) -> Advance:
    """Apply one inbound event to a session.

    Raises SESSION_CLOSED for completed or failed sessions. Every other
    problem is returned as a failed ``Advance`` carrying the error.
    """
    if session.is_closed:
        raise session_closed_error(session)

    now = now or utc_now()
    is_unsubscribe = False
    if isinstance(event, IntentEvent):
        is_unsubscribe = event.intent == Intent.UNSUBSCRIBE
        session = replace(
            session,
            last_intent=event.intent,
            last_confidence=max(0.0, min(1.0, float(event.confidence))),
            updated_at=now,
        )

    # The pending message has not been released yet; only an opt-out may skip ahead
    if session.state == SessionState.WAITING_MANUAL and not is_unsubscribe:
        return Advance(session=session, outcome=Outcome.DEFERRED)

    if graph.node(session.current_node_id) is None:
        return _fail(
            session,
            NODE_MISSING,
            ErrorKind.NODE_MISSING,
            f"Current node '{session.current_node_id}' is not in the bound graph.",
            now,
        )

    edge = resolve_edge(graph, session.current_node_id, event)
    if edge is not None:
        return _enter(session, graph, edge.to_node_id, now, edge)

    if is_unsubscribe:
        terminals = graph.terminal_nodes()
        if unsubscribe_policy == UnsubscribePolicy.ROUTE_TO_TERMINAL and terminals:
            return _enter(session, graph, terminals[0].id, now)
        return _fail(
            session,
            UNSUBSCRIBE_UNROUTED,
            ErrorKind.UNSUBSCRIBE_UNROUTED,
            "Unsubscribe reply matched no edge; conversation stopped.",
            now,
        )

    return Advance(session=session, outcome=Outcome.NO_TRANSITION)


def approve_session(session: ConversationSession, now: Optional[datetime] = None) -> ConversationSession:
    """Release a held message. The node's wait clock restarts at approval."""
    if session.is_closed:
        raise session_closed_error(session)
    if session.state != SessionState.WAITING_MANUAL:
        raise ConversationFlowError(
            "Only sessions waiting for manual approval can be approved.",
            kind=ErrorKind.INVALID_STATE,
            debug={"session_id": session.id, "state": session.state.value},
        )
    now = now or utc_now()
    return replace(session, state=SessionState.ACTIVE, last_node_entered_at=now, updated_at=now)


def cancel_session(
    session: ConversationSession,
    reason: str = "canceled",
    now: Optional[datetime] = None,
) -> ConversationSession:
    """Mark a session failed from outside, whatever node it is on."""
    if session.is_closed:
        raise session_closed_error(session)
    now = now or utc_now()
    return replace(session, state=SessionState.FAILED, ended_reason=reason or "canceled", updated_at=now)


class SessionManager:
    """Owns session state. All mutations go through this class."""

    def __init__(
        self,
        store: ConversationStore,
        maps: Optional[ConversationMapService] = None,
        config: Optional[FlowConfig] = None,
    ):
        self.store = store
        self.maps = maps or ConversationMapService(store)
        self.config = config or FlowConfig()
        # Entries vanish once no thread holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    def _record(self, session: ConversationSession, event_type: str, payload: dict) -> ConversationEvent:
        return self.store.append_event(ConversationEvent(
            id=create_id("flowevt"),
            session_id=session.id,
            run_id=session.run_id,
            event_type=event_type,
            payload=payload,
        ))

    def get_session(self, session_id: str) -> ConversationSession:
        session = self.store.get_session(session_id)
        if not session:
            raise ConversationFlowError(
                "Conversation session not found.",
                kind=ErrorKind.SESSION_NOT_FOUND,
                debug={"session_id": session_id},
            )
        return session

    def start_session(
        self,
        run_id: str,
        lead_id: str,
        brand_id: str,
        campaign_id: str,
        experiment_id: str,
    ) -> ConversationSession:
        """Create the lead's session on the experiment's published map.

        Returns the existing session if the lead already has one in this run.
        """
        existing = self.store.get_session_by_lead(run_id, lead_id)
        if existing:
            return existing

        published = self.maps.get_published(brand_id, campaign_id, experiment_id)
        graph = self.maps.graph_for_revision(published.id, published.published_revision)
        start = graph.node(graph.start_node_id)

        state, reason = SessionState.ACTIVE, ""
        if start.is_terminal:
            state, reason = SessionState.COMPLETED, TERMINAL_REACHED
        elif not start.auto_send:
            state = SessionState.WAITING_MANUAL

        session = ConversationSession(
            id=create_id("session"),
            run_id=run_id,
            brand_id=brand_id,
            campaign_id=campaign_id,
            lead_id=lead_id,
            map_id=published.id,
            map_revision=published.published_revision,
            current_node_id=start.id,
            state=state,
            ended_reason=reason,
        )
        created = self.store.create_session(session)
        if created is None:
            # Another worker created it between our read and insert
            return self.store.get_session_by_lead(run_id, lead_id)

        self._record(created, "session_started", {
            "mapId": created.map_id,
            "mapRevision": created.map_revision,
            "nodeId": created.current_node_id,
            "state": created.state.value,
        })
        log.info(
            "session_started",
            session_id=created.id,
            run_id=run_id,
            lead_id=lead_id,
            map_revision=created.map_revision,
        )
        return created

    def _apply(
        self,
        session_id: str,
        operation: str,
        transform: Callable[[ConversationSession], Advance],
    ) -> tuple[ConversationSession, Advance]:
        """Re-read, transform and commit with an optimistic check, retrying on conflict."""
        retries = max(0, self.config.max_update_retries)
        attempt = 0
        with self._lock_for(session_id):
            while True:
                current = self.get_session(session_id)
                result = transform(current)
                if result.session == current:
                    return current, result
                try:
                    self.store.update_session(result.session, current.turn_count, current.state)
                    return current, result
                except ConversationFlowError as e:
                    if e.kind != ErrorKind.CONCURRENT_UPDATE or attempt >= retries:
                        raise
                    attempt += 1
                    log.warning("session_update_conflict", session_id=session_id, operation=operation, attempt=attempt)

    def handle_event(self, session_id: str, event: FlowEvent) -> Advance:
        """Apply a classified reply or elapsed timer to a session."""
        def transform(current: ConversationSession) -> Advance:
            graph = self.maps.graph_for_session(current)
            return advance_session(current, graph, event, unsubscribe_policy=self.config.unsubscribe_policy)

        previous, result = self._apply(session_id, "handle_event", transform)
        self._record_advance(previous, result, event)
        return result

    def _record_advance(self, previous: ConversationSession, result: Advance, event: FlowEvent) -> None:
        session = result.session
        event_payload = event.to_payload()

        if result.outcome == Outcome.NO_TRANSITION:
            # Timer polls without a match are routine and not audited
            if isinstance(event, IntentEvent):
                self._record(session, "no_transition", {"nodeId": session.current_node_id, "event": event_payload})
            return

        if result.outcome == Outcome.DEFERRED:
            self._record(session, "event_deferred", {"nodeId": session.current_node_id, "event": event_payload})
            log.info("session_event_deferred", session_id=session.id, node_id=session.current_node_id)
            return

        if result.outcome == Outcome.FAILED:
            self._record(session, "session_failed", {
                "reason": session.ended_reason,
                "kind": result.error.kind.value if result.error else "",
                "nodeId": session.current_node_id,
                "edgeId": result.edge.id if result.edge else "",
                "event": event_payload,
            })
            log.warning(
                "session_failed",
                session_id=session.id,
                reason=session.ended_reason,
                node_id=session.current_node_id,
                turn_count=session.turn_count,
            )
            return

        self._record(session, "transition", {
            "edgeId": result.edge.id if result.edge else "",
            "trigger": result.edge.trigger.value if result.edge else "",
            "fromNodeId": previous.current_node_id,
            "toNodeId": session.current_node_id,
            "turnCount": session.turn_count,
            "event": event_payload,
        })
        if result.outcome == Outcome.WAITING_MANUAL:
            self._record(session, "waiting_manual", {"nodeId": session.current_node_id})
        elif result.outcome == Outcome.COMPLETED:
            self._record(session, "session_completed", {"reason": session.ended_reason})

        log.info(
            "session_advanced",
            session_id=session.id,
            outcome=result.outcome.value,
            from_node_id=previous.current_node_id,
            to_node_id=session.current_node_id,
            turn_count=session.turn_count,
        )

    def approve(self, session_id: str) -> ConversationSession:
        """Release the message held on a waiting_manual session."""
        _, result = self._apply(
            session_id,
            "approve",
            lambda current: Advance(session=approve_session(current), outcome=Outcome.APPROVED),
        )
        self._record(result.session, "manual_approved", {"nodeId": result.session.current_node_id})
        log.info("session_approved", session_id=session_id, node_id=result.session.current_node_id)
        return result.session

    def cancel(self, session_id: str, reason: str = "canceled") -> ConversationSession:
        _, result = self._apply(
            session_id,
            "cancel",
            lambda current: Advance(session=cancel_session(current, reason), outcome=Outcome.FAILED),
        )
        self._record(result.session, "session_failed", {
            "reason": result.session.ended_reason,
            "kind": "canceled",
            "nodeId": result.session.current_node_id,
        })
        log.info("session_canceled", session_id=session_id, reason=result.session.ended_reason)
        return result.session

    def cancel_run(self, run_id: str, reason: str = "run_canceled") -> list[ConversationSession]:
        """Fail every open session of a run."""
        canceled = []
        for session in self.store.list_sessions_by_run(run_id):
            if session.is_closed:
                continue
            try:
                canceled.append(self.cancel(session.id, reason))
            except ConversationFlowError as e:
                # Closed by a concurrent event in the meantime
                if e.kind != ErrorKind.SESSION_CLOSED:
                    raise
        log.info("run_canceled", run_id=run_id, sessions=len(canceled))
        return canceled
