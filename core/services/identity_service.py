"""
Identity lookups against the account service's user records.

Accounts and token issuance live outside this service; here we only resolve
a verified token subject to a user id and role.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.user import User

logger = logging.getLogger(__name__)


class IdentityService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID, or None."""
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()
