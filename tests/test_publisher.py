import json

import pytest

from app.services.exceptions import PublishError
from app.services.publisher import Publisher
from app.types.dispatch_contract import (
    NotificationEnvelope,
    ReminderSnapshot,
    SmsMessage,
    SmsTarget,
)
from conftest import QUEUE, FakeQueue, utc

ENVELOPE = NotificationEnvelope(
    reminder=ReminderSnapshot(id=1, action="Shopping", due=utc(2016, 10, 19, 16), status="waiting"),
    notifications=[SmsTarget(sms=SmsMessage(body="hi", target="2123456789"))],
)


@pytest.mark.asyncio
async def test_publish_pushes_one_json_document():
    queue = FakeQueue()
    assert await Publisher(queue, QUEUE).publish(ENVELOPE) is True

    [raw] = queue.items[QUEUE]
    assert json.loads(raw) == {
        "reminder": {"id": 1, "action": "Shopping", "due": 1476892800000, "status": "waiting"},
        "notifications": [{"sms": {"body": "hi", "target": "2123456789"}}],
    }


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    queue = FakeQueue(failures=1)
    await Publisher(queue, QUEUE, retries=3).publish(ENVELOPE)

    assert queue.attempts == 2
    assert len(queue.drain()) == 1


@pytest.mark.asyncio
async def test_unreachable_queue_raises_publish_error():
    queue = FakeQueue(failures=5)
    with pytest.raises(PublishError, match="unreachable"):
        await Publisher(queue, QUEUE, retries=2).publish(ENVELOPE)
    assert queue.attempts == 2
    assert queue.drain() == []


@pytest.mark.asyncio
async def test_lost_reply_is_not_pushed_twice():
    queue = FakeQueue(lost_replies=1)
    assert await Publisher(queue, QUEUE, retries=3).publish(ENVELOPE) is False

    assert queue.attempts == 2
    assert len(queue.drain()) == 1


@pytest.mark.asyncio
async def test_lost_replies_until_exhausted_still_push_once():
    queue = FakeQueue(lost_replies=5)
    with pytest.raises(PublishError):
        await Publisher(queue, QUEUE, retries=3).publish(ENVELOPE)

    assert queue.attempts == 3
    assert len(queue.drain()) == 1


@pytest.mark.asyncio
async def test_second_publish_of_a_reminder_is_dropped():
    queue = FakeQueue()
    publisher = Publisher(queue, QUEUE)

    assert await publisher.publish(ENVELOPE) is True
    assert await publisher.publish(ENVELOPE) is False
    assert len(queue.drain()) == 1
    assert queue.markers == {f"{QUEUE}:published:1"}
