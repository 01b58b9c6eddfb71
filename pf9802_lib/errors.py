"""Custom exceptions for PF9802 power meter library."""

from typing import Optional

from pf9802_lib.models import ErrorKind


class PF9802Error(Exception):
    """Base exception for all PF9802 library errors."""

    kind: ErrorKind = ErrorKind.IO


class UnexpectedResponse(PF9802Error):
    """Raised when the meter answers a request with the wrong marker byte."""

    kind = ErrorKind.RESPONSE

    def __init__(self, received: int) -> None:
        super().__init__(f"Unexpected response marker: {received:#04x}")
        self.received = received


class TruncatedStream(PF9802Error):
    """Raised when the stream ends before a complete message element arrived."""

    kind = ErrorKind.TRUNCATED

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"Stream ended after {received} of {expected} bytes")
        self.expected = expected
        self.received = received


class SerialIOError(PF9802Error):
    """Raised when serial communication fails (port closed, write failed, etc).

    Attributes:
        errno: Platform error code, or None if the failure had no OS error
               behind it (e.g. a write that made no progress).
    """

    kind = ErrorKind.IO

    def __init__(self, message: str, errno: Optional[int] = None) -> None:
        super().__init__(message)
        self.errno = errno
