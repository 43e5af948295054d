"""
Exception types shared by the stream controller and the HTTP clients.
"""
from typing import Optional


class ChatStreamError(RuntimeError):
    """Base class for every error raised by chatstream."""


class NoActiveConversationError(ChatStreamError):
    """Raised when a generation is requested without an active conversation."""

    def __init__(self, message: str = "Select or create a conversation first"):
        super().__init__(message)


class FrameDecodeError(ChatStreamError):
    """A line on the push channel could not be decoded into a frame."""

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


class TranscriptError(ChatStreamError):
    """The transcript would stop having its pending assistant entry last."""


class TransportError(ChatStreamError):
    """The push channel failed at the HTTP or network level."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class APIError(ChatStreamError):
    """A REST call returned an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(TransportError, APIError):
    """The server rejected the credential (HTTP 401)."""

    def __init__(self, message: str = "Session expired", status_code: Optional[int] = 401):
        ChatStreamError.__init__(self, message)
        self.status_code = status_code
