"""Request/response bodies for the HTTP API in ``main.py``."""

from __future__ import annotations

from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UserCreate(_CamelModel):
    username: str
    forename: str
    password: Optional[str] = None  # accepted for client compatibility, not stored
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    timezone: Optional[str] = None

    @field_validator("username", "forename")
    def _not_blank(cls, v):  # noqa: N805
        if not v.strip():
            raise ValueError("must be a non-empty string")
        return v.strip()

    @field_validator("phone_number")
    def _digits(cls, v):  # noqa: N805
        if v is None:
            return v
        digits = v[1:] if v.startswith("+") else v
        if not digits.isdigit():
            raise ValueError("phoneNumber must contain digits only")
        return v

    @field_validator("timezone")
    def _validate_tz(cls, v):  # noqa: N805
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"timezone '{v}' is not a valid Olson timezone string")
        return v


class UserOut(_CamelModel):
    id: int
    username: str
    forename: str


class GroupCreate(_CamelModel):
    name: str


class GroupOut(_CamelModel):
    id: int
    name: str


class MemberAdd(_CamelModel):
    user_id: int = Field(alias="userId")


class SubscriptionKeysIn(_CamelModel):
    p256dh: str
    auth: str


class PushSubscriptionIn(_CamelModel):
    endpoint: str
    keys: SubscriptionKeysIn


class SubscriptionCreate(_CamelModel):
    title: str
    subscription: PushSubscriptionIn


class RecipientRef(_CamelModel):
    id: int


class ReminderCreate(_CamelModel):
    action: str
    due: int  # epoch milliseconds, UTC
    recipients: List[RecipientRef]

    @field_validator("recipients")
    def _at_least_one(cls, v):  # noqa: N805
        if not v:
            raise ValueError("at least one recipient must be provided")
        return v


class ReminderOut(_CamelModel):
    id: int
    action: str
    due: int
    status: str
    recipients: List[RecipientRef]
