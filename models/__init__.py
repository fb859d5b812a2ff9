"""Database models for the anonymous counseling chat."""

from .base import Base
from .user import User, UserRole
from .session import ChatSession, SessionCategory, SessionPriority, SessionStatus
from .message import ChatMessage, MessageSender

__all__ = [
    "Base",
    "User",
    "UserRole",
    "ChatSession",
    "SessionCategory",
    "SessionPriority",
    "SessionStatus",
    "ChatMessage",
    "MessageSender",
]
