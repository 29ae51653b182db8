import json

import pytest

from app.types.dispatch_contract import (
    NotificationEnvelope,
    PushTarget,
    RecipientSubscription,
    ReminderSnapshot,
    ReminderStatus,
    SubscriptionTarget,
)
from config import Settings
from conftest import utc


def test_envelope_wire_shape_uses_camel_case_user_id():
    sub = RecipientSubscription(id=1, user_id=2, title="t", endpoint="e", p256dh="p", auth="a")
    envelope = NotificationEnvelope(
        reminder=ReminderSnapshot(id=9, action="Go", due=utc(1970, 1, 1, 0, 0, 1), status="waiting"),
        notifications=[PushTarget(subscription=SubscriptionTarget.from_recipient(sub))],
    )

    assert json.loads(envelope.to_json()) == {
        "reminder": {"id": 9, "action": "Go", "due": 1000, "status": "waiting"},
        "notifications": [
            {"subscription": {"id": 1, "userId": 2, "title": "t",
                              "subscription": {"endpoint": "e", "keys": {"p256dh": "p", "auth": "a"}}}}
        ],
    }


def test_terminal_statuses():
    assert not ReminderStatus.WAITING.terminal
    assert ReminderStatus("sent").terminal
    assert ReminderStatus("error-no-subscription").terminal


def test_settings_overrides():
    s = Settings(CLAIM_TTL_SECONDS=5, SMS_SENDER_NAME="Bob")
    assert s.CLAIM_TTL_SECONDS == 5
    assert s.SMS_SENDER_NAME == "Bob"
    with pytest.raises(AttributeError):
        Settings(NOT_A_SETTING=1)
