#!/usr/bin/env python3
"""Periodic job: import replies, then fire due follow-ups.

Replies are imported first so a coach who answered overnight is on record
before the follow-up run; run it from cron or a scheduler every few hours.
"""

import asyncio
import os
from datetime import datetime, timedelta
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

import structlog

from recruit_outreach.core.cli import build_lifecycle
from recruit_outreach.core.config import DEFAULT_CONFIG_PATH
from recruit_outreach.core.db import DEFAULT_DB_PATH
from recruit_outreach.core.models import CallerContext

log = structlog.get_logger()

LOOKBACK = timedelta(days=2)


async def main():
    start_time = datetime.now()
    log.info("periodic_run_started", time=start_time.isoformat())

    lifecycle = build_lifecycle(
        Path(os.environ.get("OUTREACH_DB_PATH", DEFAULT_DB_PATH)),
        Path(os.environ.get("OUTREACH_CONFIG_PATH", DEFAULT_CONFIG_PATH)),
    )
    caller = CallerContext(
        caller_id=int(os.environ.get("OUTREACH_CALLER_ID", "1")),
        email=os.environ.get("OUTREACH_FROM_EMAIL", ""),
        name=os.environ.get("OUTREACH_FROM_NAME") or lifecycle.settings.gmail.from_name or None,
    )

    # Step 1: Import replies (polled mail is deduplicated, so overlap is harmless)
    log.info("step_1_replies", status="starting")
    try:
        imported = await lifecycle.poll_and_import(caller, lifecycle.clock.now() - LOOKBACK)
        log.info("step_1_replies", status="completed", **imported)
    except Exception as e:
        log.error("step_1_replies", status="failed", error=str(e))
        # Continue - due follow-ups still go out

    # Step 2: Fire due follow-ups
    log.info("step_2_follow_ups", status="starting")
    try:
        results = await lifecycle.fire_due_follow_ups()
        log.info("step_2_follow_ups", status="completed",
                 **{k: v for k, v in results.items() if k != "exhausted"})
        if lifecycle.notifier:
            await lifecycle.notifier.send_summary(results)
    except Exception as e:
        log.error("step_2_follow_ups", status="failed", error=str(e))

    elapsed = (datetime.now() - start_time).total_seconds()
    log.info("periodic_run_completed", elapsed_seconds=elapsed)


if __name__ == "__main__":
    asyncio.run(main())
