import json
import tempfile
from pathlib import Path

from click.testing import CliRunner

from src.core.cli import cli

VARIANT_ARGS = ["--brand", "brand_1", "--campaign", "campaign_1", "--experiment", "exp_1"]
ENV = {"CONVERSATION_STORE_BACKEND": ""}


def invoke(tmpdir: str, *args: str):
    storage = ["--db", str(Path(tmpdir) / "test.db"), "--config", tmpdir]
    return CliRunner().invoke(cli, [*args, *storage], env=ENV)


def publish_default_map(tmpdir: str) -> None:
    assert invoke(tmpdir, "init-map", *VARIANT_ARGS).exit_code == 0
    assert invoke(tmpdir, "publish", *VARIANT_ARGS).exit_code == 0


def test_validate_reports_dropped_edges():
    with tempfile.TemporaryDirectory() as tmpdir:
        graph_file = Path(tmpdir) / "graph.json"
        graph_file.write_text(json.dumps({
            "startNodeId": "a",
            "nodes": [{"id": "a", "body": "Hi"}],
            "edges": [{"id": "e1", "fromNodeId": "a", "toNodeId": "ghost"}],
        }))

        result = CliRunner().invoke(cli, ["validate", str(graph_file)])
        strict = CliRunner().invoke(cli, ["validate", str(graph_file), "--strict"])

        assert result.exit_code == 0
        assert "edge_dropped_dangling" in result.output
        assert strict.exit_code == 1


def test_publish_and_show_map():
    with tempfile.TemporaryDirectory() as tmpdir:
        publish_default_map(tmpdir)

        result = invoke(tmpdir, "show-map", *VARIANT_ARGS)

        assert result.exit_code == 0
        assert "Revision:  1" in result.output
        assert "Published graph:" in result.output


def test_show_map_json():
    with tempfile.TemporaryDirectory() as tmpdir:
        publish_default_map(tmpdir)

        result = invoke(tmpdir, "show-map", *VARIANT_ARGS, "--json")

        assert result.exit_code == 0
        assert '"publishedRevision": 1' in result.output
        assert '"startNodeId": "node_start"' in result.output


def test_save_draft_prints_diagnostics():
    with tempfile.TemporaryDirectory() as tmpdir:
        graph_file = Path(tmpdir) / "graph.json"
        graph_file.write_text(json.dumps({"nodes": [{"id": "a", "body": "Hi", "kind": "sms"}]}))

        result = invoke(tmpdir, "save-draft", str(graph_file), *VARIANT_ARGS)

        assert result.exit_code == 0
        assert "node_kind_coerced" in result.output


def test_preview_renders_sample_lead():
    with tempfile.TemporaryDirectory() as tmpdir:
        publish_default_map(tmpdir)

        result = invoke(tmpdir, "preview", *VARIANT_ARGS, "--var", "campaignGoal=pipeline growth")

        assert result.exit_code == 0
        assert "Subject: Quick question" in result.output
        assert "Hi Jordan," in result.output
        assert "pipeline growth" in result.output


def test_start_session_requires_publish():
    with tempfile.TemporaryDirectory() as tmpdir:
        invoke(tmpdir, "init-map", *VARIANT_ARGS)

        result = invoke(tmpdir, "start-session", *VARIANT_ARGS, "--run", "run_1", "--lead", "lead_1")

        assert result.exit_code == 1
        assert "map_not_published" in result.output


def test_reply_with_manual_intent_and_status():
    with tempfile.TemporaryDirectory() as tmpdir:
        publish_default_map(tmpdir)
        started = invoke(tmpdir, "start-session", *VARIANT_ARGS, "--run", "run_1", "--lead", "lead_1")
        assert started.exit_code == 0

        replied = invoke(tmpdir, "reply", "--run", "run_1", "--lead", "lead_1",
                         "--body", "How much?", "--intent", "question", "--confidence", "0.9")
        status = invoke(tmpdir, "status", "--run", "run_1", "--events", "5")

        assert replied.exit_code == 0
        assert "Outcome: waiting_manual" in replied.output
        assert "needs approval" in replied.output
        assert status.exit_code == 0
        assert "waiting_manual:  1" in status.output
        assert "node_question" in status.output
        assert "transition" in status.output


def test_cancel_run_then_tick():
    with tempfile.TemporaryDirectory() as tmpdir:
        publish_default_map(tmpdir)
        invoke(tmpdir, "start-session", *VARIANT_ARGS, "--run", "run_1", "--lead", "lead_1")
        invoke(tmpdir, "start-session", *VARIANT_ARGS, "--run", "run_1", "--lead", "lead_2")

        canceled = invoke(tmpdir, "cancel-run", "run_1")
        ticked = invoke(tmpdir, "tick", "--now", "2099-01-01T00:00:00Z")

        assert canceled.exit_code == 0
        assert "Canceled 2 session(s)" in canceled.output
        assert ticked.exit_code == 0
        assert "Polled:           0" in ticked.output


def test_approve_rejects_active_session():
    with tempfile.TemporaryDirectory() as tmpdir:
        publish_default_map(tmpdir)
        started = invoke(tmpdir, "start-session", *VARIANT_ARGS, "--run", "run_1", "--lead", "lead_1")
        session_id = started.output.split("Session: ")[1].split()[0]

        result = invoke(tmpdir, "approve", session_id)

        assert result.exit_code == 1
        assert "invalid_state" in result.output
