# src/services/slack_notifier.py
"""Slack notification service for the timer tick."""

import os
from typing import Optional

import httpx
import structlog

log = structlog.get_logger()


class SlackNotifier:
    """Service for sending Slack notifications."""

    def __init__(self, webhook_url: Optional[str] = None):
        """Initialize with webhook URL."""
        self.webhook_url = webhook_url or os.getenv("SLACK_WEBHOOK_URL")

    async def send_tick_summary(self, summary: dict) -> bool:
        """Send a timer tick summary to Slack.

        Args:
            summary: Result of run_timer_tick

        Returns:
            True if sent successfully
        """
        if not self.webhook_url:
            log.warning("slack_webhook_not_configured")
            return False

        errors = summary.get("errors") or []
        status_emoji = "⚠️" if errors or summary.get("failed") else "✅"

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{status_emoji} Conversation Timer Tick",
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Polled:*\n{summary.get('polled', 0)}"},
                    {"type": "mrkdwn", "text": f"*Advanced:*\n{summary.get('advanced', 0)}"},
                    {"type": "mrkdwn", "text": f"*Waiting Approval:*\n{summary.get('waiting_manual', 0)}"},
                    {"type": "mrkdwn", "text": f"*Completed:*\n{summary.get('completed', 0)}"},
                    {"type": "mrkdwn", "text": f"*Failed:*\n{summary.get('failed', 0)}"},
                ]
            }
        ]

        if errors:
            error_text = "\n".join(f"• {e}" for e in errors[:5])
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Issues:*\n{error_text}"}
            })

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(
                    self.webhook_url,
                    json={"blocks": blocks},
                )
                response.raise_for_status()
                log.info("slack_summary_sent", polled=summary.get("polled", 0))
                return True

        except httpx.HTTPError as e:
            log.error("slack_send_error", error=str(e))
            return False
