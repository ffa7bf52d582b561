from typing import Optional


class RelayError(Exception):
    """Base class for relay failures."""


class UpstreamError(RelayError):
    """The messaging platform or the AI provider returned a failure or a malformed body."""

    def __init__(self, message: str, status_code: Optional[int] = None, errcode: Optional[int] = None):
        self.status_code = status_code
        self.errcode = errcode
        super().__init__(message)


class PersistenceError(RelayError):
    """A storage write failed."""
