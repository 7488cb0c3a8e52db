"""
Error taxonomy for the call pipeline.

Every error carries a short machine-readable `code` that is relayed to the AI
session in tool responses and appended to the system event log.
"""

from typing import Optional


class ConciergeError(Exception):
    """Base class for call pipeline errors."""

    code: str = "error"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None):
        if code:
            self.code = code
        super().__init__(message or self.code)


class ValidationError(ConciergeError):
    """Finalized order failed a business rule (e.g. OUT_OF_WINDOW)."""

    OUT_OF_WINDOW = "OUT_OF_WINDOW"
    code = OUT_OF_WINDOW

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None, next_available: Optional[str] = None):
        super().__init__(code, message)
        self.next_available = next_available


class FulfillmentError(ConciergeError):
    """POS submission failed."""

    POS_TIMEOUT = "POS_TIMEOUT"
    POS_CONNECTION_ERROR = "POS_CONNECTION_ERROR"
    code = POS_CONNECTION_ERROR


class ToolError(ConciergeError):
    """A tool call could not be honoured."""

    UNSUPPORTED_TOOL = "unsupported_tool"
    MALFORMED_ARGUMENTS = "malformed_arguments"
    code = UNSUPPORTED_TOOL


class SessionError(ConciergeError):
    """The AI speech session failed; always fatal to the call."""

    CONNECT_FAILURE = "connect_failure"
    PERMISSION_DENIED = "permission_denied"
    CLOSED_UNEXPECTEDLY = "closed_unexpectedly"
    code = CLOSED_UNEXPECTEDLY


class WatchdogAbandon(ConciergeError):
    """No caller or assistant activity within the silence timeout."""

    code = "abandoned"
