"""Pydantic schemas for API request/response validation."""

from .chat import (
    CreateSessionRequest,
    CreateSessionResponse,
    DeleteSessionResponse,
    ErrorResponse,
    MessageResponse,
    SendMessageRequest,
    SendMessageResponse,
    SessionListResponse,
    SessionMetadata,
    SessionResponse,
    SessionSummary,
    TranscriptResponse,
    UpdateSessionRequest,
)

__all__ = [
    # Sessions
    "CreateSessionRequest",
    "CreateSessionResponse",
    "SessionMetadata",
    "SessionSummary",
    "SessionListResponse",
    "SessionResponse",
    "UpdateSessionRequest",
    "DeleteSessionResponse",
    # Messages
    "SendMessageRequest",
    "SendMessageResponse",
    "MessageResponse",
    "TranscriptResponse",
    # Errors
    "ErrorResponse",
]
