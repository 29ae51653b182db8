"""Terminal status transitions for claimed reminders."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from app.services.exceptions import InvariantViolation, RecordError
from app.types.dispatch_contract import ReminderStatus
from db import Database
from db.models import Reminder

_LOGGER = logging.getLogger(__name__)


class StatusRecorder:
    def __init__(self, database: Database):
        self.database = database

    async def record(
        self, reminder_id: int, outcome: ReminderStatus, claim_token: Optional[str] = None
    ) -> bool:
        """Move *reminder_id* from ``waiting`` to *outcome*.

        Returns True when this call performed the transition and False when
        the same outcome had already been recorded. With *claim_token* the
        transition only happens while the row still carries that token; a
        caller whose claim expired and was taken over gets False and must
        not publish. Any other terminal status recorded under the caller's
        own claim means two dispatchers handled the same reminder and raises
        ``InvariantViolation``.
        """
        outcome = ReminderStatus(outcome)
        if not outcome.terminal:
            raise ValueError(f"{outcome.value!r} is not a terminal status")
        try:
            found = await asyncio.wait_for(
                self._compare_and_set(reminder_id, outcome, claim_token),
                timeout=self.database.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise RecordError(f"recording reminder {reminder_id} timed out") from exc
        except SQLAlchemyError as exc:
            raise RecordError(f"recording reminder {reminder_id} failed: {exc}") from exc

        if found is None:
            return True
        current, holder = found
        if claim_token is not None and holder != claim_token:
            _LOGGER.warning(
                "Claim on reminder %s was lost (now %s), not recording %s",
                reminder_id,
                current,
                outcome.value,
            )
            return False
        if current == outcome.value:
            _LOGGER.info("Reminder %s already %s", reminder_id, current)
            return False
        raise InvariantViolation(
            f"reminder {reminder_id} is {current!r}, refusing to mark it {outcome.value!r}"
        )

    async def _compare_and_set(
        self, reminder_id: int, outcome: ReminderStatus, claim_token: Optional[str]
    ) -> Optional[Tuple[str, Optional[str]]]:
        """Return None on success, else the (status, claim_token) found in storage."""
        conditions = [
            Reminder.id == reminder_id,
            Reminder.status == ReminderStatus.WAITING.value,
        ]
        if claim_token is not None:
            conditions.append(Reminder.claim_token == claim_token)
        async with self.database.session() as s:
            # The token stays on the row so a late caller can tell whose claim recorded it
            res = await s.execute(
                update(Reminder)
                .where(*conditions)
                .values(
                    status=outcome.value,
                    claimed_at=None,
                    last_error=None,
                    updated_at=datetime.now(timezone.utc),
                )
                .returning(Reminder.id)
                .execution_options(synchronize_session=False)
            )
            if res.first() is not None:
                await s.commit()
                return None
            await s.rollback()
            row = (
                await s.execute(
                    select(Reminder.status, Reminder.claim_token).where(Reminder.id == reminder_id)
                )
            ).first()
        if row is None:
            raise RecordError(f"reminder {reminder_id} does not exist")
        return row.status, row.claim_token

    async def note_fault(self, reminder_id: int, message: str) -> None:
        """Store a diagnostic for a reminder left claimed after a failure."""
        try:
            async with self.database.session() as s:
                await asyncio.wait_for(
                    self._store_fault(s, reminder_id, message), timeout=self.database.timeout
                )
        except (SQLAlchemyError, OSError, asyncio.TimeoutError):
            _LOGGER.warning("Could not store fault for reminder %s", reminder_id, exc_info=True)

    @staticmethod
    async def _store_fault(s, reminder_id: int, message: str) -> None:
        await s.execute(
            update(Reminder)
            .where(Reminder.id == reminder_id)
            .values(last_error=message[:2000], updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await s.commit()
