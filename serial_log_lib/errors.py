"""Custom exceptions for the serial log monitor library."""


class SerialLogError(Exception):
    """Base exception for all serial log monitor errors."""

    pass


class SelectionError(SerialLogError):
    """Raised when no compatible device was chosen during selection."""

    pass


class OpenError(SerialLogError):
    """Raised when the transport cannot open a device (permissions, busy, bad params)."""

    pass


class ReadFailure(SerialLogError):
    """Raised when the active reader fails mid-stream (device removed, I/O error)."""

    pass


class ReaderLockedError(SerialLogError):
    """Raised when a byte reader is requested while another one is still live."""

    pass


class SessionStateError(SerialLogError):
    """Raised when an intent is not allowed in the current session state."""

    pass


class InvalidFilterPattern(SerialLogError):
    """Raised when a user-supplied filter regex cannot be compiled."""

    pass


class CleanupWarning(SerialLogError):
    """Wraps an error hit while tearing down a lost device.

    Never raised to callers; constructed only so it can be logged.
    """

    def __init__(self, action: str, cause: BaseException) -> None:
        super().__init__(f"{action} failed: {cause}")
        self.action = action
        self.cause = cause
