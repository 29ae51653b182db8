from datetime import datetime, timezone, timedelta

import pytest
from sqlalchemy import select

from app.types.dispatch_contract import from_epoch_ms, to_epoch_ms
from db.models import Reminder


@pytest.mark.asyncio
async def test_insert_naive_datetime_raises(database):
    user = await database.create_user("+1234567890", "Test")
    with pytest.raises(ValueError, match="timezone-aware"):
        await database.create_reminder("test", datetime(2025, 4, 25, 15, 0, 0), [user.id])


@pytest.mark.asyncio
async def test_aware_datetime_is_stored_as_utc(database):
    user = await database.create_user("+1234567890", "Test")
    pdt = timezone(timedelta(hours=-7))
    reminder = await database.create_reminder(
        "test", datetime(2025, 4, 25, 8, 0, 0, tzinfo=pdt), [user.id]
    )

    async with database.session() as s:
        due = await s.scalar(select(Reminder.due).where(Reminder.id == reminder.id))
    assert due == datetime(2025, 4, 25, 15, 0, 0, tzinfo=timezone.utc)
    assert due.tzinfo is not None


def test_epoch_ms_conversion_is_exact():
    due = from_epoch_ms(1476892800123)
    assert due == datetime(2016, 10, 19, 16, 0, 0, 123000, tzinfo=timezone.utc)
    assert to_epoch_ms(due) == 1476892800123
