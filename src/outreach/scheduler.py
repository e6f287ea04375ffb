"""Reply handling and the periodic timer tick."""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog

from src.core.errors import ConversationFlowError, ErrorKind
from src.flow.models import (
    ConversationFlowGraph,
    ConversationSession,
    EdgeTrigger,
    IntentEvent,
    SessionState,
    TimerElapsedEvent,
    utc_now,
)
from src.flow.sessions import Advance, Outcome, SessionManager, session_closed_error
from src.outreach.classifier import classify_reply
from src.outreach.composer import ComposedMessage, compose_node_message

log = structlog.get_logger()

Classifier = Callable[[str, str], Awaitable[IntentEvent]]

MESSAGE_OUTCOMES = (Outcome.ADVANCED, Outcome.WAITING_MANUAL)


@dataclass
class ReplyResult:
    event: IntentEvent
    advance: Advance
    message: Optional[ComposedMessage] = None


def elapsed_minutes(since: datetime, now: datetime) -> int:
    return max(0, math.floor((now - since).total_seconds() / 60))


def next_message(manager: SessionManager, advance: Advance, variables: dict) -> Optional[ComposedMessage]:
    """The message for the node a session just entered, if it sends one."""
    if advance.outcome not in MESSAGE_OUTCOMES:
        return None
    session = advance.session
    node = manager.maps.graph_for_session(session).node(session.current_node_id)
    return compose_node_message(node, variables, session.last_node_entered_at)


async def handle_reply(
    manager: SessionManager,
    run_id: str,
    lead_id: str,
    subject: str,
    body: str,
    variables: Optional[dict] = None,
    classifier: Optional[Classifier] = None,
) -> ReplyResult:
    """Classify an inbound reply and advance the lead's session."""
    session = manager.store.get_session_by_lead(run_id, lead_id)
    if not session:
        raise ConversationFlowError(
            "No conversation session for this lead in this run.",
            kind=ErrorKind.SESSION_NOT_FOUND,
            debug={"run_id": run_id, "lead_id": lead_id},
        )
    if session.is_closed:
        raise session_closed_error(session)

    classifier = classifier or classify_reply
    event = await classifier(subject, body)
    advance = manager.handle_event(session.id, event)

    log.info(
        "reply_handled",
        session_id=session.id,
        intent=event.intent.value,
        confidence=event.confidence,
        outcome=advance.outcome.value,
    )
    return ReplyResult(event=event, advance=advance, message=next_message(manager, advance, variables or {}))


def _has_timer_edge(graph: ConversationFlowGraph, node_id: str) -> bool:
    return any(
        edge.from_node_id == node_id and edge.trigger == EdgeTrigger.TIMER
        for edge in graph.edges
    )


def timer_candidates(manager: SessionManager, batch_size: int, errors: list) -> list[ConversationSession]:
    """Up to ``batch_size`` active sessions whose current node has a timer edge.

    Pages past sessions parked on reply-waiting nodes so they never crowd
    out sessions that are due.
    """
    candidates = []
    graphs: dict[tuple[str, int], ConversationFlowGraph] = {}
    offset = 0
    while len(candidates) < batch_size:
        page = manager.store.list_sessions_by_state(SessionState.ACTIVE, limit=batch_size, offset=offset)
        for session in page:
            key = (session.map_id, session.map_revision)
            try:
                if key not in graphs:
                    graphs[key] = manager.maps.graph_for_session(session)
            except ConversationFlowError as e:
                log.error("timer_tick_session_failed", session_id=session.id, error=str(e))
                errors.append(f"{session.id}: {e}")
                continue
            if _has_timer_edge(graphs[key], session.current_node_id):
                candidates.append(session)
                if len(candidates) == batch_size:
                    break
        if len(page) < batch_size:
            break
        offset += len(page)
    return candidates


def run_timer_tick(
    manager: SessionManager,
    now: Optional[datetime] = None,
    batch_size: int = 100,
) -> dict:
    """Feed elapsed-time events to active sessions waiting on a timer.

    Only sessions whose current node has a timer edge are polled; other
    nodes are waiting for a reply. One session failing never stops the tick.
    """
    now = now or utc_now()
    batch_size = max(1, int(batch_size))
    summary = {
        "polled": 0,
        "advanced": 0,
        "waiting_manual": 0,
        "completed": 0,
        "failed": 0,
        "no_transition": 0,
        "errors": [],
    }

    for session in timer_candidates(manager, batch_size, summary["errors"]):
        try:
            summary["polled"] += 1
            event = TimerElapsedEvent(elapsed_minutes=elapsed_minutes(session.last_node_entered_at, now))
            advance = manager.handle_event(session.id, event)
            summary[advance.outcome.value] = summary.get(advance.outcome.value, 0) + 1

        except Exception as e:
            log.error("timer_tick_session_failed", session_id=session.id, error=str(e))
            summary["errors"].append(f"{session.id}: {e}")

    log.info(
        "timer_tick_complete",
        polled=summary["polled"],
        advanced=summary["advanced"],
        completed=summary["completed"],
        failed=summary["failed"],
        errors=len(summary["errors"]),
    )
    return summary
