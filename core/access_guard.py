"""
Access guard for the anonymous counseling chat.

Every request is classified as one of two paths:
- Bearer credential present: verified, resolved to a user, and treated as
  that authenticated account for the rest of the request. No anonymous-id
  check is performed.
- Otherwise: anonymous. An operation on an existing session requires the
  caller's x-anonymous-id to equal the session's anonymous_id exactly.

Storage lookups go through the retry policy, so an unreachable database
surfaces as StorageUnavailableError and is never mistaken for "not found".
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.auth import (
    AnonymousContext,
    AuthContext,
    Principal,
    decode_access_token,
    extract_bearer_token,
    token_subject,
)
from core.exceptions import AuthenticationError, AuthorizationError, NotFoundError
from core.retry import RetryPolicy
from core.services.identity_service import IdentityService
from models.session import ChatSession

logger = logging.getLogger(__name__)


class AccessGuard:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.session_factory = session_factory
        self.retry = retry_policy or RetryPolicy()

    async def authenticate(self, authorization: Optional[str], anonymous_id: Optional[str]) -> Principal:
        """
        Classify the caller.

        Raises:
            AuthenticationError: Bearer credential present but invalid, expired,
                                 or naming an unknown user.
            StorageUnavailableError: User lookup kept failing.
        """
        token = extract_bearer_token(authorization)
        if token is None:
            if authorization:
                raise AuthenticationError("Unsupported authorization scheme")
            anonymous_id = anonymous_id.strip() if anonymous_id else None
            return AnonymousContext(anonymous_id=anonymous_id or None)

        payload = decode_access_token(token)
        user_id = token_subject(payload)

        async def _lookup():
            async with self.session_factory() as db:
                return await IdentityService(db).find_by_id(user_id)

        user = await self.retry.run(_lookup, description="user lookup")
        if user is None:
            logger.warning("Token subject %s has no user record", user_id)
            raise AuthenticationError("User not found")

        return AuthContext(user_id=user.id, role=user.role)

    async def load_session(self, session_id: str) -> ChatSession:
        """Fetch a session by id (no authorization). Raises NotFoundError."""

        async def _load():
            async with self.session_factory() as db:
                result = await db.execute(select(ChatSession).where(ChatSession.id == session_id))
                return result.scalar_one_or_none()

        session = await self.retry.run(_load, description="session lookup")
        if session is None:
            raise NotFoundError("Chat not found")
        return session

    async def bind(self, principal: Principal, session_id: str) -> Optional[ChatSession]:
        """
        Bind an anonymous caller to an existing session.

        Returns:
            The resolved session for anonymous callers, None for authenticated
            callers (their rules are enforced per operation by the service).

        Raises:
            AuthenticationError: Anonymous caller without an anonymous id.
            NotFoundError: Session does not exist.
            AuthorizationError: Session belongs to another anonymous id.
        """
        if isinstance(principal, AuthContext):
            return None
        if not isinstance(principal, AnonymousContext):
            raise TypeError(f"Unknown principal type: {type(principal).__name__}")

        if not principal.anonymous_id:
            raise AuthenticationError("Anonymous ID required")

        session = await self.load_session(session_id)
        if session.anonymous_id != principal.anonymous_id:
            logger.warning("Anonymous id mismatch on session %s", session_id)
            raise AuthorizationError("Not authorized")
        return session
