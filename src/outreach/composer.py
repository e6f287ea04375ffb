"""Message composition for conversation nodes."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import structlog

from src.core.errors import ConversationFlowError, ErrorKind
from src.flow.models import FlowNode, utc_now

log = structlog.get_logger()

PLACEHOLDER_REGEX = re.compile(r"{{\s*([A-Za-z0-9_]+)\s*}}")


def template_variables(template: str) -> list[str]:
    """Placeholder names in order of first appearance."""
    names = []
    for match in PLACEHOLDER_REGEX.finditer(template or ""):
        if match.group(1) not in names:
            names.append(match.group(1))
    return names


def render_template(template: str, variables: dict) -> str:
    """Render a template with variable substitution. Missing values render empty."""
    def substitute(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return str(value) if value else ""

    return PLACEHOLDER_REGEX.sub(substitute, template or "")


@dataclass
class ComposedMessage:
    node_id: str
    subject: str
    body: str
    auto_send: bool
    send_after: datetime
    missing_variables: list[str] = field(default_factory=list)


def compose_node_message(
    node: FlowNode,
    variables: dict,
    entered_at: Optional[datetime] = None,
) -> ComposedMessage:
    """Render a node's subject and body for one lead.

    ``send_after`` is when the node was entered plus its delay.
    """
    if node.is_terminal:
        raise ConversationFlowError(
            "Terminal nodes have no message to send.",
            kind=ErrorKind.INVALID_STATE,
            debug={"node_id": node.id},
        )

    missing = [
        name
        for name in template_variables(f"{node.subject}\n{node.body}")
        if not variables.get(name)
    ]
    if missing:
        log.warning("template_variables_missing", node_id=node.id, missing=missing)

    entered_at = entered_at or utc_now()
    return ComposedMessage(
        node_id=node.id,
        subject=render_template(node.subject, variables).strip(),
        body=render_template(node.body, variables).strip(),
        auto_send=node.auto_send,
        send_after=entered_at + timedelta(minutes=node.delay_minutes),
        missing_variables=missing,
    )
