"""Run a single dispatch tick: claim, render, record and publish due reminders.

Run from a scheduler every few seconds or minutes:
    python -m app.scripts.scan_due_reminders
"""

from __future__ import annotations

import asyncio
import logging

from app.services.dispatcher import DispatchEngine
from app.types.dispatch_contract import TickReport
from config import settings

_LOGGER = logging.getLogger(__name__)


async def main(engine: DispatchEngine | None = None) -> TickReport:
    engine = engine or DispatchEngine.from_settings(settings)
    try:
        report = await engine.tick()
    finally:
        await engine.close()
    _LOGGER.info(
        "Tick done: claimed=%d sent=%d no_subscription=%d failed=%d published=%d",
        report.claimed,
        report.sent,
        report.no_subscription,
        report.failed,
        report.published,
    )
    return report


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(level=settings.LOG_LEVEL)
    print("[CRON] scan_due_reminders: job started")
    try:
        asyncio.run(main())
        print("[CRON] scan_due_reminders: job completed successfully")
    except Exception as e:
        print(f"[CRON] scan_due_reminders: job failed: {e}")
        raise SystemExit(1)
