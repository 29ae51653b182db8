"""Atomic claiming of due reminders.

A claim is a single ``UPDATE … RETURNING`` that stamps a fresh claim token
on every waiting, due and unclaimed reminder. Because selection and marking
happen in one statement, two overlapping ticks (or two processes) can never
walk away with the same reminder, whatever order the rows come back in.

A claim that is never followed by a recorded outcome expires after
``claim_ttl`` seconds and the reminder becomes claimable again.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from app.services.exceptions import StorageUnavailable
from app.types.dispatch_contract import ClaimedReminder, ReminderStatus
from db import Database
from db.models import Reminder, ReminderRecipient

_LOGGER = logging.getLogger(__name__)


class ClaimStore:
    def __init__(self, database: Database, *, claim_ttl: float = 60.0, batch_size: int = 100):
        self.database = database
        self.claim_ttl = timedelta(seconds=claim_ttl)
        self.batch_size = batch_size

    async def claim_due_reminders(self, now: datetime) -> list[ClaimedReminder]:
        """Reserve every reminder that is due at *now* and not already claimed."""
        if now.tzinfo is None:
            raise ValueError("now must be timezone-aware")
        try:
            return await asyncio.wait_for(self._claim(now), timeout=self.database.timeout)
        except asyncio.TimeoutError as exc:
            raise StorageUnavailable(f"claim timed out after {self.database.timeout}s") from exc
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailable(str(exc)) from exc

    def _claimable(self, now: datetime):
        return (
            Reminder.status == ReminderStatus.WAITING.value,
            Reminder.due <= now,
            or_(Reminder.claimed_at.is_(None), Reminder.claimed_at <= now - self.claim_ttl),
        )

    async def _claim(self, now: datetime) -> list[ClaimedReminder]:
        token = uuid4().hex
        candidates = (
            select(Reminder.id)
            .where(*self._claimable(now))
            .order_by(Reminder.due)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
        )
        # The claimable predicate is repeated on the outer statement so a row
        # claimed by a concurrent transaction in the meantime is skipped.
        stmt = (
            update(Reminder)
            .where(Reminder.id.in_(candidates), *self._claimable(now))
            .values(claim_token=token, claimed_at=now)
            .returning(Reminder.id, Reminder.action, Reminder.due)
            .execution_options(synchronize_session=False)
        )

        async with self.database.session() as s:
            rows = (await s.execute(stmt)).all()
            if not rows:
                await s.commit()
                return []
            ids = [row.id for row in rows]
            recipients: dict[int, list[int]] = defaultdict(list)
            res = await s.execute(
                select(ReminderRecipient.reminder_id, ReminderRecipient.user_id)
                .where(ReminderRecipient.reminder_id.in_(ids))
                .order_by(ReminderRecipient.reminder_id, ReminderRecipient.user_id)
            )
            for reminder_id, user_id in res:
                recipients[reminder_id].append(user_id)
            await s.commit()

        _LOGGER.debug("Claimed %d reminder(s) with token %s", len(rows), token)
        return [
            ClaimedReminder(
                id=row.id,
                action=row.action,
                due=row.due,
                claim_token=token,
                recipient_ids=tuple(recipients[row.id]),
            )
            for row in rows
        ]
