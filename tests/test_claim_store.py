import asyncio
from datetime import timedelta

import pytest

from app.services.claim_store import ClaimStore
from app.services.exceptions import StorageUnavailable
from db import Database
from conftest import utc

NOW = utc(2026, 10, 18, 12)


async def _reminder(database, user, action="Buy milk", due=NOW):
    return await database.create_reminder(action, due, [user.id])


@pytest.mark.asyncio
async def test_claims_due_reminders_with_recipients(database):
    alice = await database.create_user("alice", "Alice")
    bob = await database.create_user("bob", "Bob")
    reminder = await database.create_reminder("Standup", NOW, [bob.id, alice.id])
    await database.create_reminder("Later", NOW + timedelta(minutes=5), [alice.id])

    claimed = await ClaimStore(database).claim_due_reminders(NOW)

    assert [c.id for c in claimed] == [reminder.id]
    assert claimed[0].action == "Standup"
    assert claimed[0].due == NOW
    assert sorted(claimed[0].recipient_ids) == sorted([alice.id, bob.id])
    assert claimed[0].status.value == "waiting"


@pytest.mark.asyncio
async def test_second_claim_with_same_now_is_empty(database):
    user = await database.create_user("alice", "Alice")
    await _reminder(database, user)
    store = ClaimStore(database)

    assert len(await store.claim_due_reminders(NOW)) == 1
    assert await store.claim_due_reminders(NOW) == []


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_reminder(database):
    user = await database.create_user("alice", "Alice")
    for i in range(6):
        await _reminder(database, user, action=f"r{i}")
    store = ClaimStore(database)

    first, second = await asyncio.gather(
        store.claim_due_reminders(NOW), store.claim_due_reminders(NOW)
    )

    ids = [c.id for c in first] + [c.id for c in second]
    assert len(ids) == 6
    assert len(set(ids)) == 6


@pytest.mark.asyncio
async def test_unrecorded_claim_expires_after_ttl(database):
    user = await database.create_user("alice", "Alice")
    reminder = await _reminder(database, user)
    store = ClaimStore(database, claim_ttl=30)

    assert [c.id for c in await store.claim_due_reminders(NOW)] == [reminder.id]
    assert await store.claim_due_reminders(NOW + timedelta(seconds=29)) == []
    reclaimed = await store.claim_due_reminders(NOW + timedelta(seconds=30))
    assert [c.id for c in reclaimed] == [reminder.id]


@pytest.mark.asyncio
async def test_batch_size_limits_claim(database):
    user = await database.create_user("alice", "Alice")
    for i in range(3):
        await _reminder(database, user, due=NOW - timedelta(minutes=i))
    store = ClaimStore(database, batch_size=2)

    assert len(await store.claim_due_reminders(NOW)) == 2
    assert len(await store.claim_due_reminders(NOW)) == 1


@pytest.mark.asyncio
async def test_naive_now_is_rejected(database):
    with pytest.raises(ValueError, match="timezone-aware"):
        await ClaimStore(database).claim_due_reminders(NOW.replace(tzinfo=None))


@pytest.mark.asyncio
async def test_unreachable_storage_raises_storage_unavailable(tmp_path):
    broken = Database(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
    try:
        with pytest.raises(StorageUnavailable):
            await ClaimStore(broken).claim_due_reminders(NOW)
    finally:
        await broken.dispose()
