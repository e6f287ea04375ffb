"""Reply pipeline: classify, compose, schedule."""

from src.outreach.classifier import classify_reply, detect_unsubscribe
from src.outreach.composer import ComposedMessage, compose_node_message, render_template
from src.outreach.scheduler import handle_reply, run_timer_tick
