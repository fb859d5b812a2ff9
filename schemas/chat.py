"""
Pydantic schemas for the anonymous chat API.

Wire format is camelCase (sessionId, anonymousId, metadata.totalMessages);
Python attributes stay snake_case.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.session import ChatSession


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class CreateSessionRequest(CamelModel):
    """Request to open a new anonymous chat session."""

    category: str = Field(..., description="academic, personal, social, mental_health or other")
    anonymous_id: Optional[str] = Field(
        None, description="Client-held anonymous id. The x-anonymous-id header takes precedence."
    )
    is_emergency: bool = Field(False, description="Flag the session as an emergency")


class CreateSessionResponse(CamelModel):
    success: bool = True
    session_id: str


class SessionMetadata(CamelModel):
    last_activity: datetime
    total_messages: int
    is_emergency: bool


class SessionSummary(CamelModel):
    """Session summary - never includes messages or the anonymous id."""

    id: str
    category: str
    status: str
    priority: str
    counselor_id: Optional[str] = None
    metadata: SessionMetadata
    created_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: ChatSession) -> "SessionSummary":
        summary = session.to_summary()
        return cls(
            id=summary["id"],
            category=summary["category"],
            status=summary["status"],
            priority=summary["priority"],
            counselor_id=summary["counselor_id"],
            metadata=SessionMetadata(
                last_activity=summary["last_activity"],
                total_messages=summary["total_messages"],
                is_emergency=bool(summary["is_emergency"]),
            ),
            created_at=summary["created_at"],
        )


class SessionListResponse(CamelModel):
    success: bool = True
    chats: list[SessionSummary]


class SessionResponse(CamelModel):
    success: bool = True
    chat: SessionSummary


class UpdateSessionRequest(CamelModel):
    """Counselor-driven status/priority change."""

    status: Optional[str] = Field(None, description="active, resolved or escalated")
    priority: Optional[str] = Field(None, description="low, medium, high or urgent")


class SendMessageRequest(CamelModel):
    content: str = Field(..., description="Message text")
    client_message_id: Optional[str] = Field(
        None, max_length=128, description="Idempotency key; resending the same key returns the stored message"
    )


class MessageResponse(CamelModel):
    """One transcript entry. Entries that could not be decoded carry error=true and no content."""

    id: Optional[str] = None
    content: Optional[str] = None
    sender: str
    timestamp: datetime
    error: bool = False


class SendMessageResponse(CamelModel):
    success: bool = True
    message: MessageResponse


class TranscriptResponse(CamelModel):
    success: bool = True
    session_id: str
    messages: list[MessageResponse]
    chat_status: str


class DeleteSessionResponse(CamelModel):
    success: bool = True
    message: str = "Chat closed successfully"


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    error: Optional[str] = None
