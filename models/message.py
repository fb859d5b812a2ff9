"""
Transcript message model.

Messages are immutable once appended. `content` is an opaque blob whose
interpretation is recorded in `content_encoding` (see core.security), so a
transcript may mix plaintext rows with rows written under an envelope
strategy.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from .base import Base


class MessageSender(str, Enum):
    """Message author. No other party may author a message."""

    ANONYMOUS = "anonymous"
    COUNSELOR = "counselor"


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(
        String,
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # 1-based, equals the session's total_messages after this append
    position = Column(Integer, nullable=False)

    sender = Column(String, nullable=False)

    content = Column(Text, nullable=False)
    content_encoding = Column(String, nullable=False, default="plaintext")

    # Optional client-supplied idempotency key
    client_message_id = Column(String, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    session = relationship("ChatSession", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("session_id", "position", name="uq_chat_messages_session_position"),
        UniqueConstraint(
            "session_id", "sender", "client_message_id", name="uq_chat_messages_session_sender_client_id"
        ),
    )

    def to_api_response(self, content: str) -> dict:
        """API shape for this message, with content already decoded by the caller."""
        return {
            "id": self.id,
            "content": content,
            "sender": self.sender,
            "timestamp": self.created_at,
        }
