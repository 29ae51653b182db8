"""Pydantic models shared by the dispatch engine, the publisher and tests.

The notification models mirror the JSON document pushed onto the
notification queue, so ``model_dump(by_alias=True)`` is the wire format.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return (value - EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


class ReminderStatus(str, enum.Enum):
    WAITING = "waiting"
    SENT = "sent"
    ERROR_NO_SUBSCRIPTION = "error-no-subscription"

    @property
    def terminal(self) -> bool:
        return self is not ReminderStatus.WAITING


# ──────────────────────────────
# Claimed work items
# ──────────────────────────────


@dataclass(frozen=True)
class ClaimedReminder:
    """A due reminder reserved for this process by the claim store."""

    id: int
    action: str
    due: datetime
    claim_token: str
    recipient_ids: tuple[int, ...] = field(default_factory=tuple)
    status: ReminderStatus = ReminderStatus.WAITING


@dataclass(frozen=True)
class RecipientSubscription:
    id: int
    user_id: int
    title: str
    endpoint: str
    p256dh: str
    auth: str


@dataclass(frozen=True)
class RecipientChannels:
    """Everything the renderer needs to know about one recipient."""

    user_id: int
    phone_number: Optional[str] = None
    timezone: Optional[str] = None
    subscriptions: tuple[RecipientSubscription, ...] = ()


# ──────────────────────────────
# Wire models
# ──────────────────────────────


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionKeys(_WireModel):
    p256dh: str
    auth: str


class PushSubscription(_WireModel):
    endpoint: str
    keys: SubscriptionKeys


class SubscriptionTarget(_WireModel):
    id: int
    user_id: int = Field(alias="userId")
    title: str
    subscription: PushSubscription

    @classmethod
    def from_recipient(cls, sub: RecipientSubscription) -> "SubscriptionTarget":
        return cls(
            id=sub.id,
            user_id=sub.user_id,
            title=sub.title,
            subscription=PushSubscription(
                endpoint=sub.endpoint,
                keys=SubscriptionKeys(p256dh=sub.p256dh, auth=sub.auth),
            ),
        )


class SmsMessage(_WireModel):
    body: str
    target: str


class PushTarget(_WireModel):
    """Browser push notification for one registered subscription."""

    subscription: SubscriptionTarget


class SmsTarget(_WireModel):
    """Text message to a recipient's phone number."""

    sms: SmsMessage


NotificationTarget = Union[PushTarget, SmsTarget]


class ReminderSnapshot(_WireModel):
    id: int
    action: str
    due: datetime
    status: ReminderStatus

    @field_serializer("due")
    def _due_as_epoch_ms(self, value: datetime) -> int:
        return to_epoch_ms(value)


class NotificationEnvelope(_WireModel):
    """One queue message per dispatched reminder."""

    reminder: ReminderSnapshot
    notifications: List[NotificationTarget]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


@dataclass
class TickReport:
    claimed: int = 0
    sent: int = 0
    no_subscription: int = 0
    failed: int = 0
    published: int = 0
