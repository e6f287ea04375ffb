"""Starter conversation graph used whenever no valid graph exists."""

from src.flow.models import (
    DEFAULT_MAX_DEPTH,
    ConversationFlowGraph,
    EdgeTrigger,
    FlowEdge,
    FlowNode,
    Intent,
    NodeKind,
)

START_NODE_ID = "node_start"
END_NODE_ID = "node_end"


def _intent_edge(to_node_id: str, intent: Intent, threshold: float, priority: int) -> FlowEdge:
    return FlowEdge(
        id=f"edge_start_{intent.value}",
        from_node_id=START_NODE_ID,
        to_node_id=to_node_id,
        trigger=EdgeTrigger.INTENT,
        intent=intent,
        confidence_threshold=threshold,
        priority=priority,
    )


def _fallback_edge(from_node_id: str) -> FlowEdge:
    return FlowEdge(
        id=f"edge_{from_node_id}_fallback",
        from_node_id=from_node_id,
        to_node_id=END_NODE_ID,
        trigger=EdgeTrigger.FALLBACK,
        confidence_threshold=0.0,
        priority=1,
    )


def default_graph() -> ConversationFlowGraph:
    """Build the starter template.

    The start message branches on interest, question and objection replies,
    routes unsubscribes straight to the end, and nudges after a day of
    silence. Every path reaches the terminal node.
    """
    start = FlowNode(
        id=START_NODE_ID,
        title="Start question",
        subject="Quick question",
        body="Hi {{firstName}},\n\nQuick question: are you currently focused on {{campaignGoal}}?",
        x=60,
        y=220,
    )
    interest = FlowNode(
        id="node_interest",
        title="Interest follow-up",
        subject="Great to hear",
        body="Great to hear, {{firstName}}.\n\nBased on your note, want a short 10-minute walkthrough?",
        x=420,
        y=80,
    )
    question = FlowNode(
        id="node_question",
        title="Question answer",
        subject="Answering your question",
        body="Great question.\n\nHere is the shortest answer for your context: {{shortAnswer}}.",
        auto_send=False,
        x=420,
        y=220,
    )
    objection = FlowNode(
        id="node_objection",
        title="Objection handling",
        subject="Makes sense",
        body="Totally fair.\n\nIf timing is the blocker, would revisiting in a few weeks help?",
        auto_send=False,
        x=420,
        y=360,
    )
    no_reply = FlowNode(
        id="node_no_reply",
        title="No-reply nudge",
        subject="Worth a quick check",
        body="Just circling back in case this slipped.\n\nShould I close this out for now?",
        delay_minutes=1440,
        x=780,
        y=220,
    )
    end = FlowNode(
        id=END_NODE_ID,
        kind=NodeKind.TERMINAL,
        title="End",
        auto_send=False,
        x=1120,
        y=220,
    )

    edges = [
        _intent_edge(interest.id, Intent.INTEREST, 0.65, 1),
        _intent_edge(question.id, Intent.QUESTION, 0.65, 2),
        _intent_edge(objection.id, Intent.OBJECTION, 0.7, 3),
        _intent_edge(end.id, Intent.UNSUBSCRIBE, 0.5, 4),
        FlowEdge(
            id="edge_start_timer",
            from_node_id=start.id,
            to_node_id=no_reply.id,
            trigger=EdgeTrigger.TIMER,
            wait_minutes=1440,
            confidence_threshold=0.0,
            priority=5,
        ),
        FlowEdge(
            id="edge_no_reply_timer",
            from_node_id=no_reply.id,
            to_node_id=end.id,
            trigger=EdgeTrigger.TIMER,
            wait_minutes=2880,
            confidence_threshold=0.0,
            priority=1,
        ),
        _fallback_edge(interest.id),
        _fallback_edge(question.id),
        _fallback_edge(objection.id),
    ]

    return ConversationFlowGraph(
        max_depth=DEFAULT_MAX_DEPTH,
        start_node_id=start.id,
        nodes=(start, interest, question, objection, no_reply, end),
        edges=tuple(edges),
    )
