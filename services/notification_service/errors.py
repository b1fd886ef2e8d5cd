class NotificationError(Exception):
    """Base class for notification service errors surfaced to callers."""


class PolicyRejection(NotificationError):
    """queue() refused the payload; nothing was persisted."""

    def __init__(self, code: str, reason: str):
        super().__init__(reason)
        self.code = code
        self.reason = reason

    def to_dict(self) -> dict:
        return {"code": self.code, "reason": self.reason}


class InvalidNotificationError(NotificationError):
    pass


class NotificationNotFound(NotificationError):
    def __init__(self, notification_id: str):
        super().__init__(f"notification {notification_id} not found")
        self.notification_id = notification_id


class PreconditionError(NotificationError):
    """The requested transition is not allowed from the current status."""

    def __init__(self, notification_id: str, status: str, expected: str):
        super().__init__(
            f"notification {notification_id} is {status}, expected {expected}"
        )
        self.notification_id = notification_id
        self.status = status
        self.expected = expected
