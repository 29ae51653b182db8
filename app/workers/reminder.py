"""Celery task that runs one reminder dispatch tick."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict

from app.celery_app import celery_app
from app.services.dispatcher import DispatchEngine
from app.services.exceptions import StorageUnavailable
from config import settings

_LOGGER = logging.getLogger(__name__)


def build_engine() -> DispatchEngine:
    return DispatchEngine.from_settings(settings)


async def _tick_once() -> dict:
    engine = build_engine()
    try:
        report = await engine.tick()
    finally:
        await engine.close()
    return asdict(report)


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.reminder.dispatch_due", bind=True)
def dispatch_due(self):  # noqa: D401
    """Claim due reminders, record their outcome and publish envelopes."""
    try:
        return asyncio.run(_tick_once())
    except StorageUnavailable as exc:
        # The next beat tick retries; nothing was claimed.
        _LOGGER.warning("Dispatch tick skipped: %s", exc)
        return None
