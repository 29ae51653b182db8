"""
Reminder dispatch engine.

Each tick:
1. claims every due reminder (``ClaimStore``),
2. renders push/SMS notifications for each recipient (``ChannelRenderer``),
3. records ``sent`` or ``error-no-subscription`` (``StatusRecorder``),
4. publishes one envelope per reminder that this tick moved to ``sent``
   (``Publisher``).

Exclusivity comes from the claim and the compare-and-set on status, so
ticks may overlap. ``DispatchScheduler`` drives ticks on a fixed interval
and stops gracefully, letting an in-flight tick finish.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from app.services.claim_store import ClaimStore
from app.services.exceptions import (
    InvariantViolation,
    PublishError,
    RecordError,
    RenderFailure,
    StorageUnavailable,
)
from app.services.publisher import Publisher, connect
from app.services.renderer import ChannelRenderer
from app.services.status_recorder import StatusRecorder
from app.types.dispatch_contract import (
    ClaimedReminder,
    NotificationEnvelope,
    NotificationTarget,
    ReminderSnapshot,
    ReminderStatus,
    TickReport,
)
from db import Database

_LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DispatchEngine:
    def __init__(
        self,
        claim_store: ClaimStore,
        renderer: ChannelRenderer,
        recorder: StatusRecorder,
        publisher: Publisher,
        *,
        concurrency: int = 4,
        publish_terminal_status: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.claim_store = claim_store
        self.renderer = renderer
        self.recorder = recorder
        self.publisher = publisher
        self.concurrency = max(1, concurrency)
        self.publish_terminal_status = publish_terminal_status
        self.clock = clock

    @classmethod
    def from_settings(cls, settings, database: Optional[Database] = None, redis_client=None) -> "DispatchEngine":
        """Wire an engine from a ``config.Settings`` instance."""
        if database is None:
            database = Database(
                settings.DATABASE_URL or settings.DATABASE_PUBLIC_URL,
                timeout=settings.STORAGE_TIMEOUT,
            )
        if redis_client is None:
            redis_client = connect(settings.REDIS_URL, timeout=settings.PUBLISH_TIMEOUT)
        return cls(
            ClaimStore(
                database,
                claim_ttl=settings.CLAIM_TTL_SECONDS,
                batch_size=settings.DISPATCH_BATCH_SIZE,
            ),
            ChannelRenderer(
                database,
                sender=settings.SMS_SENDER_NAME,
                default_timezone=settings.DEFAULT_TIMEZONE,
            ),
            StatusRecorder(database),
            Publisher(
                redis_client,
                settings.NOTIFICATION_QUEUE,
                timeout=settings.PUBLISH_TIMEOUT,
                retries=settings.PUBLISH_RETRIES,
                dedupe_ttl=settings.PUBLISH_DEDUPE_SECONDS,
            ),
            concurrency=settings.DISPATCH_CONCURRENCY,
            publish_terminal_status=settings.PUBLISH_TERMINAL_STATUS,
        )

    @property
    def database(self) -> Database:
        return self.claim_store.database

    async def close(self) -> None:
        await self.publisher.close()
        await self.database.dispose()

    # ------------------------------------------------------------------
    # One dispatch cycle
    # ------------------------------------------------------------------
    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Run one claim → render → record → publish cycle.

        ``StorageUnavailable`` from the claim propagates and aborts the tick.
        ``InvariantViolation`` propagates. Other failures stay with their
        reminder.
        """
        now = now or self.clock()
        report = TickReport()
        claimed = await self.claim_store.claim_due_reminders(now)
        if not claimed:
            return report
        report.claimed = len(claimed)
        _LOGGER.info("Dispatching %d due reminder(s)", len(claimed))

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(reminder: ClaimedReminder):
            async with semaphore:
                return await self.dispatch(reminder)

        results = await asyncio.gather(
            *(_bounded(r) for r in claimed), return_exceptions=True
        )
        for reminder, result in zip(claimed, results):
            if isinstance(result, InvariantViolation):
                raise result
            if isinstance(result, BaseException):
                # Anything unexpected is an operational fault for this reminder only
                report.failed += 1
                _LOGGER.error(
                    "Unexpected failure dispatching reminder %s",
                    reminder.id,
                    exc_info=(type(result), result, result.__traceback__),
                )
                continue
            outcome, published = result
            if outcome is ReminderStatus.SENT:
                report.sent += 1
            elif outcome is ReminderStatus.ERROR_NO_SUBSCRIPTION:
                report.no_subscription += 1
            else:
                report.failed += 1
            report.published += int(published)
        return report

    async def dispatch(self, reminder: ClaimedReminder) -> tuple[Optional[ReminderStatus], bool]:
        """Handle one claimed reminder; returns (recorded outcome, published)."""
        try:
            targets = await self.render(reminder)
        except RenderFailure as exc:
            _LOGGER.warning("Leaving reminder %s claimed: %s", reminder.id, exc)
            await self.recorder.note_fault(reminder.id, str(exc))
            return None, False

        outcome = ReminderStatus.SENT if targets else ReminderStatus.ERROR_NO_SUBSCRIPTION
        try:
            transitioned = await self.recorder.record(reminder.id, outcome, reminder.claim_token)
        except RecordError as exc:
            _LOGGER.error("Could not record reminder %s: %s", reminder.id, exc)
            return None, False
        except InvariantViolation:
            _LOGGER.critical("Reminder %s was dispatched twice", reminder.id)
            raise

        if not transitioned:
            return outcome, False
        if outcome is ReminderStatus.ERROR_NO_SUBSCRIPTION:
            _LOGGER.info("Reminder %s has no reachable recipient", reminder.id)
            return outcome, False

        envelope = self.build_envelope(reminder, targets, outcome)
        try:
            pushed = await self.publisher.publish(envelope)
        except PublishError as exc:
            _LOGGER.error("Reminder %s recorded sent but not published: %s", reminder.id, exc)
            return outcome, False
        return outcome, pushed

    async def render(self, reminder: ClaimedReminder) -> List[NotificationTarget]:
        targets: List[NotificationTarget] = []
        for recipient_id in reminder.recipient_ids:
            targets.extend(await self.renderer.render(reminder, recipient_id))
        return targets

    def build_envelope(
        self,
        reminder: ClaimedReminder,
        targets: List[NotificationTarget],
        outcome: ReminderStatus,
    ) -> NotificationEnvelope:
        # The snapshot is taken as claimed, i.e. still "waiting", unless
        # PUBLISH_TERMINAL_STATUS asks for the recorded status.
        status = outcome if self.publish_terminal_status else reminder.status
        return NotificationEnvelope(
            reminder=ReminderSnapshot(
                id=reminder.id,
                action=reminder.action,
                due=reminder.due,
                status=status,
            ),
            notifications=targets,
        )


class DispatchScheduler:
    """Runs ``engine.tick`` every ``interval`` seconds until stopped."""

    def __init__(self, engine: DispatchEngine, interval: float = 1.0):
        self.engine = engine
        self.interval = interval
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stopping.clear()
        self._task = asyncio.create_task(self.run(), name="reminder-dispatch")
        return self._task

    async def run(self) -> None:
        _LOGGER.info("Dispatch scheduler started (every %.2fs)", self.interval)
        while not self._stopping.is_set():
            try:
                await self.engine.tick()
            except StorageUnavailable as exc:
                _LOGGER.warning("Storage unavailable, retrying next tick: %s", exc)
            except InvariantViolation:
                _LOGGER.critical("Stopping dispatch scheduler after invariant violation", exc_info=True)
                raise
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        _LOGGER.info("Dispatch scheduler stopped")

    async def stop(self) -> None:
        """Let the in-flight tick finish, then stop the timer."""
        self._stopping.set()
        if self._task is not None:
            task, self._task = self._task, None
            await task
