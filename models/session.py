"""
Anonymous counseling session model.

A session pairs an unauthenticated anonymous party (identified only by the
client-held anonymous_id) with at most one counselor. The message log is
append-only; total_messages always equals the number of stored messages
because both are written in the same transaction.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from .base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    UNASSIGNED = "unassigned"
    ACTIVE = "active"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


# Statuses shown in the "active" listings for both parties
OPEN_STATUSES = (SessionStatus.UNASSIGNED.value, SessionStatus.ACTIVE.value)

# Statuses a counselor may set explicitly
COUNSELOR_SETTABLE_STATUSES = (
    SessionStatus.ACTIVE.value,
    SessionStatus.RESOLVED.value,
    SessionStatus.ESCALATED.value,
)


class SessionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SessionCategory(str, Enum):
    ACADEMIC = "academic"
    PERSONAL = "personal"
    SOCIAL = "social"
    MENTAL_HEALTH = "mental_health"
    OTHER = "other"


class ChatSession(Base):
    """
    Anonymous chat session and its counters.

    Status invariant:
    - counselor_id is NULL  -> status is "unassigned"
    - counselor_id assigned -> status moves from "unassigned" to "active";
      afterwards only the assigned counselor changes it.

    A user row still referenced as a session's counselor cannot be deleted.
    """

    __tablename__ = "chat_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    anonymous_id = Column(String, nullable=False, index=True)
    counselor_id = Column(
        String,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )

    category = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SessionStatus.UNASSIGNED.value)
    priority = Column(String, nullable=False, default=SessionPriority.MEDIUM.value)

    # Metadata
    last_activity = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    total_messages = Column(Integer, nullable=False, default=0)
    is_emergency = Column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_chat_sessions_status_activity", "status", "last_activity"),
    )

    messages = relationship(
        "ChatMessage",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="ChatMessage.position",
    )

    # =========================================================================
    # Helper Properties
    # =========================================================================

    @property
    def is_assigned(self) -> bool:
        return self.counselor_id is not None

    @property
    def is_open(self) -> bool:
        """Open sessions appear in both parties' active listings."""
        return self.status in OPEN_STATUSES

    def to_summary(self) -> dict:
        """Summary fields only; messages are never included."""
        return {
            "id": self.id,
            "category": self.category,
            "status": self.status,
            "priority": self.priority,
            "counselor_id": self.counselor_id,
            "last_activity": self.last_activity,
            "total_messages": self.total_messages,
            "is_emergency": self.is_emergency,
            "created_at": self.created_at,
        }
