"""
Dispatch engine exceptions.

StorageUnavailable aborts a whole tick; RenderFailure, RecordError and
PublishError are confined to one reminder; InvariantViolation is fatal.
"""


class DispatchError(Exception):
    """Base exception for reminder dispatch errors"""
    pass


class StorageUnavailable(DispatchError):
    """Raised when the database cannot be reached or times out"""
    pass


class RenderFailure(DispatchError):
    """Raised when a reminder's notifications cannot be rendered"""

    def __init__(self, reminder_id: int, reason: str):
        super().__init__(f"reminder {reminder_id}: {reason}")
        self.reminder_id = reminder_id
        self.reason = reason


class RecordError(DispatchError):
    """Raised when a reminder outcome cannot be stored"""
    pass


class PublishError(DispatchError):
    """Raised when an envelope cannot be pushed onto the notification queue"""
    pass


class InvariantViolation(DispatchError):
    """Raised when a reminder would receive a second, different terminal status"""
    pass


class RecipientNotFound(LookupError):
    """Raised when a reminder names a user that does not exist"""

    def __init__(self, user_ids):
        self.user_ids = sorted(user_ids)
        super().__init__(f"unknown recipients: {self.user_ids}")


class DuplicateUsername(ValueError):
    """Raised when a username is already registered"""
    pass
