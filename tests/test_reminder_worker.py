import asyncio

import pytest

from app.scripts import scan_due_reminders
from app.services.exceptions import StorageUnavailable
from app.workers import reminder as reminder_worker
from db import Database
from conftest import FakeQueue, add_user_with_subscription, build_engine, utc


async def _seed(url):
    database = Database(url)
    await database.create_all()
    user, _ = await add_user_with_subscription(database, 1)
    reminder = await database.create_reminder("test msg", utc(2026, 1, 1), [user.id])
    await database.dispose()
    return reminder.id


async def _status(url, reminder_id):
    database = Database(url)
    try:
        return (await database.get_reminder(reminder_id))["status"]
    finally:
        await database.dispose()


def test_dispatch_due_runs_one_tick(monkeypatch, db_url):
    reminder_id = asyncio.run(_seed(db_url))
    queue = FakeQueue()
    monkeypatch.setattr(
        reminder_worker, "build_engine", lambda: build_engine(Database(db_url), queue)
    )

    result = reminder_worker.dispatch_due.apply(args=()).get()

    assert result["claimed"] == 1
    assert result["published"] == 1
    assert queue.closed
    assert [m["reminder"]["id"] for m in queue.drain()] == [reminder_id]
    assert asyncio.run(_status(db_url, reminder_id)) == "sent"


def test_dispatch_due_skips_when_storage_is_down(monkeypatch):
    class Unavailable:
        async def tick(self):
            raise StorageUnavailable("down")

        async def close(self):
            pass

    monkeypatch.setattr(reminder_worker, "build_engine", Unavailable)

    assert reminder_worker.dispatch_due.apply(args=()).get() is None


@pytest.mark.asyncio
async def test_scan_script_runs_single_tick(database, queue):
    user, _ = await add_user_with_subscription(database, 1)
    await database.create_reminder("Buy milk", utc(2026, 1, 1), [user.id])

    report = await scan_due_reminders.main(build_engine(database, queue))

    assert (report.claimed, report.sent, report.published) == (1, 1, 1)
    assert queue.closed
