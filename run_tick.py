#!/usr/bin/env python3
"""Scheduled wrapper: one timer tick, then an optional Slack summary.

Run from cron every few minutes.
"""

import asyncio
from datetime import datetime
from dotenv import load_dotenv

load_dotenv()

import structlog

from src.core.config import load_settings
from src.core.storage import build_store
from src.flow.maps import ConversationMapService
from src.flow.sessions import SessionManager
from src.outreach.scheduler import run_timer_tick
from src.services.slack_notifier import SlackNotifier

log = structlog.get_logger()


async def main():
    start_time = datetime.now()
    log.info("tick_run_started", time=start_time.isoformat())

    settings = load_settings()
    store = build_store(settings)
    manager = SessionManager(store, ConversationMapService(store), settings.flow)

    summary = run_timer_tick(manager, batch_size=settings.scheduler.batch_size)

    # Slack is optional; skipped when SLACK_WEBHOOK_URL is unset
    if summary["polled"] or summary["errors"]:
        await SlackNotifier().send_tick_summary(summary)

    elapsed = (datetime.now() - start_time).total_seconds()
    log.info("tick_run_completed", elapsed_seconds=elapsed)


if __name__ == "__main__":
    asyncio.run(main())
