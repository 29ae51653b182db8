"""
Async storage for users, groups, subscriptions and reminders.
Uses SQLAlchemy 2.0 with asyncpg (Postgres) or aiosqlite (local/tests).

The dispatch engine only reads users and subscriptions from here; reminder
claiming and status transitions live in ``app.services.claim_store`` and
``app.services.status_recorder``.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

from app.services.exceptions import DuplicateUsername, RecipientNotFound
from app.types.dispatch_contract import (
    RecipientChannels, RecipientSubscription, ReminderStatus, to_epoch_ms
)
from db.models import (
    Base, Group, Membership, Reminder, ReminderRecipient, Subscription, User
)


# ──────────────────────────────────────────────────────────────────────
# 1. Engine / session factory
# ──────────────────────────────────────────────────────────────────────
def _build_url(url: str | None = None) -> str:
    url = url or os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if url.startswith("sqlite"):
        if "+aiosqlite" not in url:
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url
    if "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url


class Database:
    """Owns one async engine; created lazily on first use."""

    def __init__(self, url: str | None = None, *, timeout: float = 5.0):
        self._url = url
        self.timeout = timeout
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None

    @property
    def url(self) -> str:
        return _build_url(self._url)

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def get_engine(self) -> AsyncEngine:
        if self._engine is None:
            if self.is_sqlite:
                self._engine = create_async_engine(
                    self.url, connect_args={"timeout": self.timeout}
                )
            else:
                self._engine = create_async_engine(
                    self.url,
                    pool_size=5,
                    max_overflow=5,
                    pool_timeout=self.timeout,
                    connect_args={"timeout": self.timeout},
                )
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = async_sessionmaker(self.get_engine(), expire_on_commit=False)
        async with self._session_maker() as s:
            yield s

    async def create_all(self) -> None:
        async with self.get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None

    # ──────────────────────────────────────────────────────────────────
    # 2. Users, groups, subscriptions
    # ──────────────────────────────────────────────────────────────────
    async def create_user(
        self,
        username: str,
        forename: str,
        phone_number: str | None = None,
        timezone: str | None = None,
    ) -> User:
        user = User(
            username=username,
            forename=forename,
            phone_number=phone_number,
            timezone=timezone,
        )
        async with self.session() as s:
            existing = await s.scalar(select(User.id).where(User.username == username))
            if existing is not None:
                raise DuplicateUsername(username)
            s.add(user)
            try:
                await s.commit()
            except IntegrityError as exc:
                raise DuplicateUsername(username) from exc
        return user

    async def get_user(self, user_id: int) -> User | None:
        async with self.session() as s:
            return await s.get(User, user_id)

    async def create_group(self, name: str, member_ids: Iterable[int] = ()) -> Group:
        group = Group(name=name)
        async with self.session() as s:
            s.add(group)
            await s.flush()
            for uid in dict.fromkeys(member_ids):
                s.add(Membership(group_id=group.id, user_id=uid))
            await s.commit()
        return group

    async def add_member(self, group_id: int, user_id: int) -> None:
        async with self.session() as s:
            if await s.get(Group, group_id) is None:
                raise LookupError(f"group {group_id} not found")
            if await s.get(User, user_id) is None:
                raise RecipientNotFound([user_id])
            if await s.get(Membership, (group_id, user_id)) is None:
                s.add(Membership(group_id=group_id, user_id=user_id))
                await s.commit()

    async def group_member_ids(self, group_id: int) -> list[int]:
        async with self.session() as s:
            res = await s.scalars(
                select(Membership.user_id)
                .where(Membership.group_id == group_id)
                .order_by(Membership.user_id)
            )
            return list(res)

    async def create_subscription(
        self, user_id: int, title: str, endpoint: str, p256dh: str, auth: str
    ) -> Subscription:
        sub = Subscription(
            user_id=user_id, title=title, endpoint=endpoint, p256dh=p256dh, auth=auth
        )
        async with self.session() as s:
            if await s.get(User, user_id) is None:
                raise RecipientNotFound([user_id])
            s.add(sub)
            await s.commit()
        return sub

    async def fetch_recipient_channels(self, user_id: int) -> RecipientChannels | None:
        """Return the phone number, timezone and subscriptions of *user_id*."""
        async with self.session() as s:
            user = await s.get(User, user_id)
            if user is None:
                return None
            subs = await s.scalars(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .order_by(Subscription.id)
            )
            return RecipientChannels(
                user_id=user.id,
                phone_number=user.phone_number or None,
                timezone=user.timezone,
                subscriptions=tuple(
                    RecipientSubscription(
                        id=sub.id,
                        user_id=sub.user_id,
                        title=sub.title,
                        endpoint=sub.endpoint,
                        p256dh=sub.p256dh,
                        auth=sub.auth,
                    )
                    for sub in subs
                ),
            )

    # ──────────────────────────────────────────────────────────────────
    # 3. Reminders
    # ──────────────────────────────────────────────────────────────────
    async def create_reminder(
        self, action: str, due: datetime, recipient_ids: Sequence[int]
    ) -> Reminder:
        if due.tzinfo is None:
            raise ValueError("due must be a timezone-aware datetime")
        recipient_ids = list(dict.fromkeys(recipient_ids))
        if not recipient_ids:
            raise ValueError("a reminder needs at least one recipient")

        reminder = Reminder(action=action, due=due, status=ReminderStatus.WAITING.value)
        async with self.session() as s:
            found = set(await s.scalars(select(User.id).where(User.id.in_(recipient_ids))))
            missing = set(recipient_ids) - found
            if missing:
                raise RecipientNotFound(missing)
            s.add(reminder)
            await s.flush()
            for uid in recipient_ids:
                s.add(ReminderRecipient(reminder_id=reminder.id, user_id=uid))
            await s.commit()
        return reminder

    async def get_reminder(self, reminder_id: int) -> dict[str, Any] | None:
        async with self.session() as s:
            reminder = await s.get(Reminder, reminder_id)
            if reminder is None:
                return None
            recipients = await s.scalars(
                select(ReminderRecipient.user_id)
                .where(ReminderRecipient.reminder_id == reminder_id)
                .order_by(ReminderRecipient.user_id)
            )
            return {
                "id": reminder.id,
                "action": reminder.action,
                "due": to_epoch_ms(reminder.due),
                "status": reminder.status,
                "recipients": [{"id": uid} for uid in recipients],
            }
