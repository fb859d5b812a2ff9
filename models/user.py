"""
User model for the identity collaborator.

Accounts are owned by the account service; this table only mirrors the
identity and role needed to authorize counselors and admins.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, String

from .base import Base


class UserRole(str, Enum):
    """Account roles issued by the account service."""

    STUDENT = "student"
    PARENT = "parent"
    TEACHER = "teacher"
    COUNSELOR = "counselor"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, unique=True)
    role = Column(String, nullable=False, default=UserRole.STUDENT.value)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def is_counselor(self) -> bool:
        return self.role == UserRole.COUNSELOR.value

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value
