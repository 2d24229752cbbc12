"""Error types raised by the group services and mapped to HTTP statuses."""


class GroupError(Exception):
    """Base error for group operations."""

    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidInput(GroupError):
    """Missing or malformed required field."""

    status_code = 400


class NotFound(GroupError):
    """Unknown group or participant."""

    status_code = 404


class Conflict(GroupError):
    """Code collision while generating; retried internally."""

    status_code = 409


class Internal(GroupError):
    """Persistence I/O failure. Logged, never returned to callers."""

    status_code = 500
