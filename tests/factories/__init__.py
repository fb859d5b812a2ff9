"""Test factories for creating model instances."""

from .message_factory import CounselorMessageFactory, MessageFactory
from .session_factory import SessionFactory
from .user_factory import CounselorFactory, UserFactory

__all__ = ["CounselorFactory", "CounselorMessageFactory", "MessageFactory", "SessionFactory", "UserFactory"]
