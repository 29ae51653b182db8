"""ORM models for users, groups, push subscriptions and reminders."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, TypeDecorator
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp stored as UTC.

    SQLite drops tzinfo on the way out, so values are normalised to naive
    UTC on bind and re-tagged as UTC on load. Naive input is rejected.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("datetime values must be timezone-aware")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def load_dialect_impl(self, dialect):
        return dialect.type_descriptor(DateTime(timezone=True))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id:           Mapped[int] = mapped_column(primary_key=True)
    username:     Mapped[str] = mapped_column(String(255), unique=True)
    forename:     Mapped[str] = mapped_column(String(255))
    phone_number: Mapped[str | None] = mapped_column(String(32))
    timezone:     Mapped[str | None] = mapped_column(String(64))
    created_at:   Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class Group(Base):
    __tablename__ = "groups"

    id:         Mapped[int] = mapped_column(primary_key=True)
    name:       Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class Membership(Base):
    __tablename__ = "memberships"

    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True)
    user_id:  Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id:       Mapped[int] = mapped_column(primary_key=True)
    user_id:  Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    title:    Mapped[str] = mapped_column(Text)
    endpoint: Mapped[str] = mapped_column(Text)
    p256dh:   Mapped[str] = mapped_column(Text)
    auth:     Mapped[str] = mapped_column(Text)


class Reminder(Base):
    __tablename__ = "reminders"
    # AUTOINCREMENT keeps SQLite from reusing ids of deleted rows
    __table_args__ = (
        Index("ix_reminders_status_due", "status", "due"),
        {"sqlite_autoincrement": True},
    )

    id:          Mapped[int] = mapped_column(primary_key=True)
    action:      Mapped[str] = mapped_column(Text)
    due:         Mapped[datetime] = mapped_column(UTCDateTime)
    status:      Mapped[str] = mapped_column(String(32), default="waiting")
    claim_token: Mapped[str | None] = mapped_column(String(32))
    claimed_at:  Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_error:  Mapped[str | None] = mapped_column(Text)
    created_at:  Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at:  Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)


class ReminderRecipient(Base):
    __tablename__ = "reminder_recipients"

    reminder_id: Mapped[int] = mapped_column(ForeignKey("reminders.id", ondelete="CASCADE"), primary_key=True)
    user_id:     Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
