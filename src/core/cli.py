"""Command-line interface for the conversation flow engine."""

import asyncio
import functools
import json
from collections import Counter
from pathlib import Path
from typing import Optional

import click
import structlog

from src.core.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from src.core.errors import ConversationFlowError
from src.core.storage import build_store, parse_timestamp
from src.flow.maps import ConversationMapService
from src.flow.models import ConversationFlowGraph, Intent, IntentEvent
from src.flow.normalizer import parse_graph, render_diagnostics
from src.flow.sessions import SessionManager
from src.outreach.classifier import classify_reply
from src.outreach.composer import compose_node_message
from src.outreach.scheduler import handle_reply, run_timer_tick

# Configure structlog for CLI output
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer()
    ]
)

log = structlog.get_logger()

INTENT_CHOICES = [intent.value for intent in Intent if intent != Intent.NONE]


def flow_errors(func):
    """Turn lifecycle errors into a readable CLI failure."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ConversationFlowError as e:
            log.error("command_failed", kind=e.kind.value, error=e.message, debug=e.debug)
            message = f"{e.message} [{e.kind.value}]"
            if e.hint:
                message += f"\nHint: {e.hint}"
            raise click.ClickException(message) from e
    return wrapper


def storage_options(func):
    func = click.option("--config", "config_path", type=click.Path(), default=str(DEFAULT_CONFIG_PATH),
                        help="Config directory path")(func)
    func = click.option("--db", "db_path", type=click.Path(), default=None,
                        help="Database path (defaults to storage.db_path)")(func)
    return func


def variant_options(func):
    func = click.option("--experiment", "experiment_id", required=True, help="Experiment id")(func)
    func = click.option("--campaign", "campaign_id", required=True, help="Campaign id")(func)
    func = click.option("--brand", "brand_id", required=True, help="Brand id")(func)
    return func


def open_manager(db_path: Optional[str], config_path: str) -> tuple[Settings, SessionManager]:
    settings = load_settings(Path(config_path))
    store = build_store(settings, Path(db_path) if db_path else None)
    manager = SessionManager(store, ConversationMapService(store), settings.flow)
    return settings, manager


def load_graph_file(graph_file: str):
    with open(graph_file) as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as e:
            raise click.ClickException(f"{graph_file} is not valid JSON: {e}") from e


def parse_vars(pairs: tuple) -> dict:
    variables = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="--var")
        variables[key.strip()] = value
    return variables


def echo_graph_summary(graph: ConversationFlowGraph) -> None:
    click.echo(f"  Start node: {graph.start_node_id}")
    click.echo(f"  Max depth:  {graph.max_depth}")
    click.echo(f"  Nodes:      {len(graph.nodes)} ({len(graph.terminal_nodes())} terminal)")
    click.echo(f"  Edges:      {len(graph.edges)}")


@click.group()
def cli():
    """Conversation Flow - per-lead reply state machines for outreach experiments."""


@cli.command()
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--strict", is_flag=True, help="Exit non-zero if any element was dropped")
def validate(graph_file: str, strict: bool):
    """Normalise a graph JSON file and report what changed."""
    result = parse_graph(load_graph_file(graph_file))

    click.echo(f"\nGraph: {graph_file}")
    echo_graph_summary(result.graph)

    if result.diagnostics:
        click.echo("\nDiagnostics:")
        click.echo(render_diagnostics(result.diagnostics))
    else:
        click.echo("\nNo issues found.")

    if strict and not result.ok:
        raise click.ClickException(f"{len(result.errors)} element(s) dropped during normalisation")


@cli.command("init-map")
@variant_options
@click.option("--name", default=None, help="Map name")
@storage_options
@flow_errors
def init_map(brand_id: str, campaign_id: str, experiment_id: str, name: Optional[str],
             db_path: Optional[str], config_path: str):
    """Create the experiment's map with the default graph."""
    _, manager = open_manager(db_path, config_path)
    conversation_map = manager.maps.open_map(brand_id, campaign_id, experiment_id, name)
    click.echo(f"Map: {conversation_map.id} ({conversation_map.name})")
    click.echo(f"  Status: {conversation_map.status.value}")


@cli.command("show-map")
@variant_options
@click.option("--json", "as_json", is_flag=True, help="Print the full map as JSON")
@storage_options
@flow_errors
def show_map(brand_id: str, campaign_id: str, experiment_id: str, as_json: bool,
             db_path: Optional[str], config_path: str):
    """Show an experiment's map."""
    _, manager = open_manager(db_path, config_path)
    conversation_map = manager.maps.get_map(brand_id, campaign_id, experiment_id)

    if as_json:
        click.echo(json.dumps(conversation_map.to_json(), indent=2))
        return

    click.echo(f"\nMap: {conversation_map.id} ({conversation_map.name})")
    click.echo(f"  Status:    {conversation_map.status.value}")
    click.echo(f"  Revision:  {conversation_map.published_revision}")
    if conversation_map.published_at:
        click.echo(f"  Published: {conversation_map.published_at.isoformat()}")
    click.echo("\nDraft graph:")
    echo_graph_summary(conversation_map.draft_graph)
    if conversation_map.published_graph:
        click.echo("\nPublished graph:")
        echo_graph_summary(conversation_map.published_graph)


@cli.command("save-draft")
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False))
@variant_options
@click.option("--name", default=None, help="Map name")
@storage_options
@flow_errors
def save_draft(graph_file: str, brand_id: str, campaign_id: str, experiment_id: str,
               name: Optional[str], db_path: Optional[str], config_path: str):
    """Normalise a graph file and store it as the draft."""
    _, manager = open_manager(db_path, config_path)
    result = manager.maps.save_draft(brand_id, campaign_id, experiment_id, load_graph_file(graph_file), name)

    click.echo(f"Draft saved on map {result.conversation_map.id}")
    echo_graph_summary(result.conversation_map.draft_graph)
    if result.diagnostics:
        click.echo("\nDiagnostics:")
        click.echo(render_diagnostics(result.diagnostics))


@cli.command()
@variant_options
@storage_options
@flow_errors
def publish(brand_id: str, campaign_id: str, experiment_id: str,
            db_path: Optional[str], config_path: str):
    """Publish the draft graph as a new revision."""
    _, manager = open_manager(db_path, config_path)
    conversation_map = manager.maps.publish(brand_id, campaign_id, experiment_id)
    click.echo(f"Published map {conversation_map.id} at revision {conversation_map.published_revision}")


@cli.command()
@variant_options
@storage_options
@flow_errors
def archive(brand_id: str, campaign_id: str, experiment_id: str,
            db_path: Optional[str], config_path: str):
    """Archive a map. Running sessions are not affected."""
    _, manager = open_manager(db_path, config_path)
    conversation_map = manager.maps.archive(brand_id, campaign_id, experiment_id)
    click.echo(f"Archived map {conversation_map.id}")


@cli.command()
@variant_options
@click.option("--node", "node_id", default=None, help="Node to render (defaults to the start node)")
@click.option("--draft", is_flag=True, help="Render from the draft instead of the published graph")
@click.option("--var", "var_pairs", multiple=True, help="Template variable as key=value")
@storage_options
@flow_errors
def preview(brand_id: str, campaign_id: str, experiment_id: str, node_id: Optional[str], draft: bool,
            var_pairs: tuple, db_path: Optional[str], config_path: str):
    """Render a node's message for the sample lead."""
    settings, manager = open_manager(db_path, config_path)
    conversation_map = manager.maps.get_map(brand_id, campaign_id, experiment_id)
    graph = conversation_map.draft_graph if draft or not conversation_map.published_graph \
        else conversation_map.published_graph

    node = graph.node(node_id or graph.start_node_id)
    if node is None:
        raise click.ClickException(f"Node not found: {node_id}")

    variables = {**settings.preview.sample_lead, **parse_vars(var_pairs)}
    message = compose_node_message(node, variables)

    click.echo(f"\nNode: {node.id} ({node.title})")
    click.echo(f"Auto send: {'yes' if message.auto_send else 'no (manual approval)'}")
    if node.delay_minutes:
        click.echo(f"Delay: {node.delay_minutes} minutes")
    click.echo(f"\nSubject: {message.subject}\n")
    click.echo(message.body)
    if message.missing_variables:
        click.echo(f"\n⚠️  Missing variables: {', '.join(message.missing_variables)}")


@cli.command("start-session")
@variant_options
@click.option("--run", "run_id", required=True, help="Run id")
@click.option("--lead", "lead_id", required=True, help="Lead id")
@storage_options
@flow_errors
def start_session(brand_id: str, campaign_id: str, experiment_id: str, run_id: str, lead_id: str,
                  db_path: Optional[str], config_path: str):
    """Start a lead's session on the published map."""
    _, manager = open_manager(db_path, config_path)
    session = manager.start_session(run_id, lead_id, brand_id, campaign_id, experiment_id)
    click.echo(f"Session: {session.id}")
    click.echo(f"  Node:     {session.current_node_id}")
    click.echo(f"  State:    {session.state.value}")
    click.echo(f"  Revision: {session.map_revision}")


@cli.command()
@click.option("--run", "run_id", required=True, help="Run id")
@click.option("--lead", "lead_id", required=True, help="Lead id")
@click.option("--subject", default="", help="Reply subject")
@click.option("--body", default="", help="Reply body")
@click.option("--intent", type=click.Choice(INTENT_CHOICES), default=None,
              help="Skip classification and use this intent")
@click.option("--confidence", type=float, default=1.0, help="Confidence for --intent")
@click.option("--var", "var_pairs", multiple=True, help="Template variable as key=value")
@storage_options
@flow_errors
def reply(run_id: str, lead_id: str, subject: str, body: str, intent: Optional[str], confidence: float,
          var_pairs: tuple, db_path: Optional[str], config_path: str):
    """Classify a lead's reply and advance their session."""
    settings, manager = open_manager(db_path, config_path)

    if intent:
        async def classifier(_subject: str, _body: str) -> IntentEvent:
            return IntentEvent(intent=Intent(intent), confidence=confidence)
    else:
        async def classifier(reply_subject: str, reply_body: str) -> IntentEvent:
            return await classify_reply(reply_subject, reply_body, settings.classifier)

    result = asyncio.run(handle_reply(
        manager, run_id, lead_id, subject, body,
        variables=parse_vars(var_pairs),
        classifier=classifier,
    ))

    click.echo(f"Intent: {result.event.intent.value} ({result.event.confidence:.2f})")
    click.echo(f"Outcome: {result.advance.outcome.value}")
    click.echo(f"  Node:  {result.advance.session.current_node_id}")
    click.echo(f"  State: {result.advance.session.state.value}")
    if result.advance.error:
        click.echo(f"  Error: {result.advance.error.message}")
    if result.message:
        click.echo(f"\nNext message ({'auto send' if result.message.auto_send else 'needs approval'}):")
        click.echo(f"Subject: {result.message.subject}\n")
        click.echo(result.message.body)


@cli.command()
@click.argument("session_id")
@storage_options
@flow_errors
def approve(session_id: str, db_path: Optional[str], config_path: str):
    """Approve the held message of a waiting session."""
    _, manager = open_manager(db_path, config_path)
    session = manager.approve(session_id)
    click.echo(f"Approved {session.id} at node {session.current_node_id}")


@cli.command()
@click.argument("session_id")
@click.option("--reason", default="canceled", help="Reason recorded on the session")
@storage_options
@flow_errors
def cancel(session_id: str, reason: str, db_path: Optional[str], config_path: str):
    """Cancel one session."""
    _, manager = open_manager(db_path, config_path)
    session = manager.cancel(session_id, reason)
    click.echo(f"Canceled {session.id} ({session.ended_reason})")


@cli.command("cancel-run")
@click.argument("run_id")
@click.option("--reason", default="run_canceled", help="Reason recorded on each session")
@storage_options
@flow_errors
def cancel_run(run_id: str, reason: str, db_path: Optional[str], config_path: str):
    """Cancel every open session of a run."""
    _, manager = open_manager(db_path, config_path)
    canceled = manager.cancel_run(run_id, reason)
    click.echo(f"Canceled {len(canceled)} session(s) in run {run_id}")


@cli.command()
@click.option("--now", "now_text", default=None, help="Evaluate timers at this ISO timestamp")
@click.option("--batch-size", type=int, default=None, help="Max sessions to poll")
@storage_options
@flow_errors
def tick(now_text: Optional[str], batch_size: Optional[int], db_path: Optional[str], config_path: str):
    """Feed elapsed-time events to sessions waiting on a timer."""
    settings, manager = open_manager(db_path, config_path)
    now = parse_timestamp(now_text) if now_text else None
    if now_text and now is None:
        raise click.BadParameter(f"not an ISO timestamp: {now_text}", param_hint="--now")

    summary = run_timer_tick(manager, now=now, batch_size=batch_size or settings.scheduler.batch_size)

    click.echo("\nTimer Tick")
    click.echo("──────────")
    click.echo(f"Polled:           {summary['polled']}")
    click.echo(f"Advanced:         {summary['advanced']}")
    click.echo(f"Waiting approval: {summary['waiting_manual']}")
    click.echo(f"Completed:        {summary['completed']}")
    click.echo(f"Failed:           {summary['failed']}")
    for error in summary["errors"]:
        click.echo(f"  ✗ {error}")


@cli.command()
@click.option("--run", "run_id", required=True, help="Run id")
@click.option("--events", "event_limit", type=int, default=0, help="Also show this many recent events")
@storage_options
@flow_errors
def status(run_id: str, event_limit: int, db_path: Optional[str], config_path: str):
    """Show the sessions of a run."""
    _, manager = open_manager(db_path, config_path)
    sessions = manager.store.list_sessions_by_run(run_id)

    click.echo(f"\nRun {run_id}")
    click.echo("───────────────")
    if not sessions:
        click.echo("No sessions.")
        return

    counts = Counter(session.state.value for session in sessions)
    for state in ("active", "waiting_manual", "completed", "failed"):
        click.echo(f"{state + ':':<16} {counts.get(state, 0)}")
    click.echo("───────────────")

    for session in sessions:
        ended = f" ({session.ended_reason})" if session.ended_reason else ""
        click.echo(
            f"{session.lead_id:<20} {session.state.value:<15} {session.current_node_id:<20} "
            f"turns={session.turn_count}{ended}"
        )

    if event_limit > 0:
        click.echo("\nRecent events")
        for event in manager.store.list_events_by_run(run_id, event_limit):
            click.echo(f"  {event.created_at.isoformat()}  {event.event_type:<18} {event.session_id}")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
