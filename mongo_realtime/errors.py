"""
Exception types raised by the realtime engine.

Configuration and registration errors are raised synchronously to the caller.
Connection errors only reject the connection attempt that triggered them.
Filter failures are never raised; they are logged and the offending document
is left out of the broadcast.
"""

from typing import Any


# -----Reasons-----------------------------------------------------------------
NO_TOKEN_PROVIDED = "NO_TOKEN_PROVIDED"
UNAUTHORIZED = "UNAUTHORIZED"
AUTH_ERROR = "AUTH_ERROR"


# -----Exceptions--------------------------------------------------------------
class RealtimeError(Exception):
    """Base class for every error raised by mongo_realtime."""


class ConfigurationError(RealtimeError):
    """Raised when the engine is built without a required collaborator."""


class InvalidArgumentError(RealtimeError, ValueError):
    """Raised when a stream is registered with an empty id or collection."""


class DuplicateStreamError(RealtimeError):
    """Raised when a stream id is already taken and safe mode is enabled."""

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream '{stream_id}' already registered or is reserved.")
        self.stream_id = stream_id


class ConnectionRejectedError(RealtimeError):
    """Raised when an incoming connection is refused."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AuthenticationError(ConnectionRejectedError):
    """
    Raised when the configured verifier refuses a connection.

    The reason is one of NO_TOKEN_PROVIDED, UNAUTHORIZED or AUTH_ERROR.
    """


class FilterEvaluationFailure(RealtimeError):
    """
    Record of a stream filter that raised for one document.

    Built for logging only; it never crosses the recompute boundary.
    """

    def __init__(self, stream_id: str, document_id: Any, cause: BaseException) -> None:
        super().__init__(
            f"Filter of stream '{stream_id}' failed for document {document_id!r}: "
            f"{cause.__class__.__name__}: {cause}"
        )
        self.stream_id = stream_id
        self.document_id = document_id
        self.cause = cause
