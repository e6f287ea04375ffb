"""Tests for node message composition."""

from datetime import datetime, timedelta, timezone

import pytest

from src.core.errors import ConversationFlowError, ErrorKind
from src.flow.defaults import default_graph
from src.flow.models import FlowNode, NodeKind
from src.outreach.composer import compose_node_message, render_template, template_variables


def test_render_template():
    template = "Hi {{firstName}}, how is {{ company }}?"

    result = render_template(template, {"firstName": "Jordan", "company": "Acme"})

    assert result == "Hi Jordan, how is Acme?"


def test_render_template_missing_values_render_empty():
    assert render_template("Hi {{firstName}}{{missing}}!", {"firstName": None}) == "Hi !"


def test_template_variables_in_order():
    assert template_variables("{{b}} {{a}} {{b}}") == ["b", "a"]


def test_compose_start_node_for_sample_lead():
    entered_at = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    start = default_graph().node("node_start")

    message = compose_node_message(start, {"firstName": "Jordan", "campaignGoal": "pipeline growth"}, entered_at)

    assert message.subject == "Quick question"
    assert message.body.startswith("Hi Jordan,")
    assert "pipeline growth" in message.body
    assert message.auto_send is True
    assert message.send_after == entered_at
    assert message.missing_variables == []


def test_compose_reports_missing_variables_and_delay():
    entered_at = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    node = FlowNode(id="n", subject="{{company}}", body="Hi {{firstName}}", delay_minutes=90, auto_send=False)

    message = compose_node_message(node, {"firstName": "Jordan"}, entered_at)

    assert message.subject == ""
    assert message.missing_variables == ["company"]
    assert message.auto_send is False
    assert message.send_after == entered_at + timedelta(minutes=90)


def test_terminal_nodes_cannot_be_composed():
    with pytest.raises(ConversationFlowError) as exc_info:
        compose_node_message(FlowNode(id="end", kind=NodeKind.TERMINAL), {})

    assert exc_info.value.kind == ErrorKind.INVALID_STATE
