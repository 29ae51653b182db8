"""Channel selection and content rendering for due reminders.

``render_targets`` is pure: given a reminder and what is known about one
recipient it returns the push and SMS notifications for that recipient.
``ChannelRenderer`` adds the storage lookup around it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import SQLAlchemyError

from app.services.exceptions import RenderFailure
from app.types.dispatch_contract import (
    ClaimedReminder,
    NotificationTarget,
    PushTarget,
    RecipientChannels,
    SmsMessage,
    SmsTarget,
    SubscriptionTarget,
)
from db import Database

_LOGGER = logging.getLogger(__name__)

SMS_TEMPLATE = "Reminder from {sender}:\n{action} at {time}"


def format_local_time(due: datetime, tz_name: str) -> str:
    """12-hour wall-clock time of *due* in *tz_name*, e.g. ``9:00 AM``.

    The offset is the one in force at *due*, so DST is honoured.
    """
    local = due.astimezone(ZoneInfo(tz_name))
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {meridiem}"


def render_sms_body(action: str, due: datetime, tz_name: str, sender: str) -> str:
    return SMS_TEMPLATE.format(sender=sender, action=action, time=format_local_time(due, tz_name))


def render_targets(
    reminder: ClaimedReminder,
    recipient: Optional[RecipientChannels],
    *,
    sender: str,
    default_timezone: str,
) -> List[NotificationTarget]:
    if recipient is None:
        return []
    targets: List[NotificationTarget] = [
        PushTarget(subscription=SubscriptionTarget.from_recipient(sub))
        for sub in recipient.subscriptions
    ]
    if recipient.phone_number:
        body = render_sms_body(
            reminder.action,
            reminder.due,
            recipient.timezone or default_timezone,
            sender,
        )
        targets.append(SmsTarget(sms=SmsMessage(body=body, target=recipient.phone_number)))
    return targets


class ChannelRenderer:
    def __init__(
        self,
        database: Database,
        *,
        sender: str = "Abigail",
        default_timezone: str = "America/Los_Angeles",
    ):
        self.database = database
        self.sender = sender
        self.default_timezone = default_timezone

    async def render(self, reminder: ClaimedReminder, recipient_id: int) -> List[NotificationTarget]:
        try:
            recipient = await asyncio.wait_for(
                self.database.fetch_recipient_channels(recipient_id), timeout=self.database.timeout
            )
        except asyncio.TimeoutError as exc:
            raise RenderFailure(reminder.id, f"lookup of user {recipient_id} timed out") from exc
        except (SQLAlchemyError, OSError) as exc:
            raise RenderFailure(reminder.id, f"lookup of user {recipient_id} failed: {exc}") from exc
        if recipient is None:
            _LOGGER.warning("Reminder %s names unknown user %s", reminder.id, recipient_id)
        try:
            return render_targets(
                reminder,
                recipient,
                sender=self.sender,
                default_timezone=self.default_timezone,
            )
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise RenderFailure(reminder.id, f"cannot render for user {recipient_id}: {exc}") from exc
