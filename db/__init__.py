from .db import Database  # noqa: F401
from .models import (  # noqa: F401
    Base,
    Group,
    Membership,
    Reminder,
    ReminderRecipient,
    Subscription,
    User,
)
