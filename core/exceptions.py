"""
Error taxonomy for the anonymous counseling chat.

Every error raised by the access guard or the transcript engine derives from
ChatServiceError and carries the HTTP status the API boundary responds with.
Storage blips are retried internally and only surface as
StorageUnavailableError once retries are exhausted.
"""


class ChatServiceError(Exception):
    """Base exception for chat service errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ChatServiceError):
    """Malformed input, e.g. an empty message or an unknown category."""

    status_code = 400


class AuthenticationError(ChatServiceError):
    """Missing or invalid credential."""

    status_code = 401


class AuthorizationError(ChatServiceError):
    """Caller is not bound to the session, or lacks the required role."""

    status_code = 403


class NotFoundError(ChatServiceError):
    """Session id does not resolve."""

    status_code = 404


class ConflictError(ChatServiceError):
    """Uniqueness violation at the storage layer."""

    status_code = 409


class StorageUnavailableError(ChatServiceError):
    """Transient storage failure that outlived the retry budget."""

    status_code = 503
