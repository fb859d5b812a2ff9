"""
Anonymous chat service: session lifecycle and the transcript log.

Write rules:
- Every storage operation runs through the retry policy, and every attempt
  opens its own database session.
- A message append and the session counter update commit together or not
  at all. The counter update is issued first so the session row is locked
  before the duplicate check and the insert.
- The message id is generated once per call, so a retried append that did
  commit on an earlier attempt is recognized instead of stored twice.
- Events are published only after the write has committed. A broadcast
  failure never fails the operation.
"""
import logging
from typing import Optional
from uuid import uuid4

from sqlalchemy import case, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.auth import AnonymousContext, AuthContext, Principal
from core.config import settings
from core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from core.retry import RetryPolicy
from core.security import ContentDecodeError, ContentStrategy, decode_content, get_content_strategy
from core.services.broadcaster import (
    CHAT_DELETED,
    CHAT_UPDATED,
    COUNSELORS_CHANNEL,
    NEW_CHAT,
    NEW_MESSAGE,
    RealtimeBroadcaster,
    anonymous_channel,
    session_room,
    user_channel,
)
from models.message import ChatMessage, MessageSender
from models.session import (
    COUNSELOR_SETTABLE_STATUSES,
    OPEN_STATUSES,
    ChatSession,
    SessionCategory,
    SessionPriority,
    SessionStatus,
    utcnow,
)
from schemas.chat import MessageResponse, SessionSummary

logger = logging.getLogger(__name__)

MAX_CLIENT_MESSAGE_ID_LENGTH = 128


def sender_for(principal: Principal) -> MessageSender:
    """Sender label derived from the authenticated path, never from the request body."""
    if isinstance(principal, AuthContext):
        return MessageSender.COUNSELOR
    if isinstance(principal, AnonymousContext):
        return MessageSender.ANONYMOUS
    raise TypeError(f"Unknown principal type: {type(principal).__name__}")


def _session_event(session: ChatSession) -> dict:
    return SessionSummary.from_session(session).model_dump(by_alias=True, mode="json")


def _message_event(payload: dict) -> dict:
    return MessageResponse.model_validate(payload).model_dump(by_alias=True, mode="json")


class AnonymousChatService:
    """
    Transcript engine for anonymous counseling sessions.

    Stateless apart from its collaborators, so one instance serves every
    request.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: Optional[RealtimeBroadcaster] = None,
        retry_policy: Optional[RetryPolicy] = None,
        content_strategy: Optional[ContentStrategy] = None,
    ):
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.retry = retry_policy or RetryPolicy()
        self.content_strategy = content_strategy or get_content_strategy()

    # =========================================================================
    # Session Lifecycle
    # =========================================================================

    async def create_session(
        self,
        anonymous_id: Optional[str],
        category: str,
        is_emergency: bool = False,
    ) -> ChatSession:
        """
        Open a new session for an anonymous party.

        Returns:
            The stored session, unassigned with zero messages.

        Raises:
            AuthenticationError: No anonymous id supplied.
            ValidationError: Unknown category.
        """
        anonymous_id = anonymous_id.strip() if anonymous_id else None
        if not anonymous_id:
            raise AuthenticationError("Anonymous ID required")
        if category not in {c.value for c in SessionCategory}:
            raise ValidationError(f"Invalid category: {category}")

        session_id = str(uuid4())

        async def _create():
            async with self.session_factory() as db:
                existing = await db.get(ChatSession, session_id)
                if existing is not None:
                    return existing
                now = utcnow()
                session = ChatSession(
                    id=session_id,
                    anonymous_id=anonymous_id,
                    category=category,
                    status=SessionStatus.UNASSIGNED.value,
                    priority=SessionPriority.MEDIUM.value,
                    is_emergency=bool(is_emergency),
                    total_messages=0,
                    last_activity=now,
                    created_at=now,
                    updated_at=now,
                )
                db.add(session)
                await db.commit()
                await db.refresh(session)
                return session

        session = await self.retry.run(_create, description="session create")
        logger.info("Created anonymous chat %s (category: %s, emergency: %s)", session.id, category, is_emergency)

        await self._publish(
            [anonymous_channel(anonymous_id), COUNSELORS_CHANNEL],
            NEW_CHAT,
            _session_event(session),
        )
        return session

    async def assign_counselor(self, session_id: str, principal: Principal) -> ChatSession:
        """
        Claim a session for the calling counselor.

        Assigning the current counselor again changes nothing. Assigning a
        different counselor replaces the previous one.

        Raises:
            AuthorizationError: Caller is not a counselor.
            NotFoundError: Session does not exist.
        """
        if not isinstance(principal, AuthContext) or not principal.is_counselor:
            raise AuthorizationError("Only counselors can claim chats")

        async def _assign():
            async with self.session_factory() as db:
                result = await db.execute(
                    select(ChatSession).where(ChatSession.id == session_id).with_for_update()
                )
                session = result.scalar_one_or_none()
                if session is None:
                    raise NotFoundError("Chat not found")
                if session.counselor_id == principal.user_id:
                    return session, None, False

                previous = session.counselor_id
                await db.execute(
                    update(ChatSession)
                    .where(ChatSession.id == session_id)
                    .values(
                        counselor_id=principal.user_id,
                        status=case(
                            (ChatSession.status == SessionStatus.UNASSIGNED.value, SessionStatus.ACTIVE.value),
                            else_=ChatSession.status,
                        ),
                        last_activity=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                session = await db.get(ChatSession, session_id, populate_existing=True)
                return session, previous, True

        session, previous, changed = await self.retry.run(_assign, description="counselor assignment")
        if not changed:
            logger.debug("Chat %s already assigned to %s", session_id, principal.user_id)
            return session

        if previous:
            logger.info("Chat %s reassigned from %s to %s", session_id, previous, principal.user_id)
        else:
            logger.info("Chat %s assigned to %s", session_id, principal.user_id)

        await self._publish(
            [session_room(session_id), anonymous_channel(session.anonymous_id)],
            CHAT_UPDATED,
            _session_event(session),
        )
        return session

    async def update_status(
        self,
        session_id: str,
        principal: Principal,
        status: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> ChatSession:
        """
        Change status and/or priority. Only the assigned counselor may do this.

        Raises:
            ValidationError: Nothing to change, or an unknown value.
            NotFoundError: Session does not exist.
            AuthorizationError: Caller is not the assigned counselor.
        """
        if status is None and priority is None:
            raise ValidationError("Nothing to update")
        if status is not None and status not in COUNSELOR_SETTABLE_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        if priority is not None and priority not in {p.value for p in SessionPriority}:
            raise ValidationError(f"Invalid priority: {priority}")

        async def _update():
            async with self.session_factory() as db:
                result = await db.execute(
                    select(ChatSession).where(ChatSession.id == session_id).with_for_update()
                )
                session = result.scalar_one_or_none()
                if session is None:
                    raise NotFoundError("Chat not found")
                if not isinstance(principal, AuthContext) or session.counselor_id != principal.user_id:
                    raise AuthorizationError("Only the assigned counselor can update this chat")

                if status is not None:
                    session.status = status
                if priority is not None:
                    session.priority = priority
                session.last_activity = utcnow()
                await db.commit()
                await db.refresh(session)
                return session

        session = await self.retry.run(_update, description="session update")
        logger.info("Chat %s updated (status: %s, priority: %s)", session_id, session.status, session.priority)

        await self._publish(
            [session_room(session_id), anonymous_channel(session.anonymous_id)],
            CHAT_UPDATED,
            _session_event(session),
        )
        return session

    async def delete_session(
        self,
        session_id: str,
        principal: Principal,
        bound_session: Optional[ChatSession] = None,
    ) -> None:
        """
        Delete a session and its whole transcript. Only the anonymous owner
        may do this.

        Raises:
            NotFoundError: Session does not exist.
            AuthorizationError: Caller is not the anonymous owner.
        """
        session = bound_session or await self._load(session_id)
        if not isinstance(principal, AnonymousContext) or principal.anonymous_id != session.anonymous_id:
            raise AuthorizationError("Only the owner can close this chat")

        anonymous_id = session.anonymous_id
        counselor_id = session.counselor_id

        async def _delete():
            async with self.session_factory() as db:
                await db.execute(delete(ChatMessage).where(ChatMessage.session_id == session_id))
                await db.execute(delete(ChatSession).where(ChatSession.id == session_id))
                await db.commit()

        await self.retry.run(_delete, description="session delete")
        logger.info("Deleted anonymous chat %s", session_id)

        channels = [anonymous_channel(anonymous_id)]
        if counselor_id:
            channels.append(user_channel(counselor_id))
        await self._publish(channels, CHAT_DELETED, {"sessionId": session_id})

    # =========================================================================
    # Listings
    # =========================================================================

    async def list_for_anonymous(self, anonymous_id: Optional[str]) -> list[ChatSession]:
        """Open sessions owned by an anonymous id, most recent activity first."""
        if not anonymous_id:
            raise AuthenticationError("Anonymous ID required")

        return await self._list(
            ChatSession.anonymous_id == anonymous_id,
            ChatSession.status.in_(OPEN_STATUSES),
            description="anonymous chat listing",
        )

    async def list_active_for_counselor(self, principal: Principal) -> list[ChatSession]:
        """Open sessions that are unassigned or assigned to the caller."""
        if not isinstance(principal, AuthContext) or not principal.is_staff:
            raise AuthorizationError("Only counselors can list active chats")

        return await self._list(
            ChatSession.status.in_(OPEN_STATUSES),
            or_(ChatSession.counselor_id.is_(None), ChatSession.counselor_id == principal.user_id),
            description="active chat listing",
        )

    async def list_assigned_to(self, principal: Principal) -> list[ChatSession]:
        """Every session assigned to the calling counselor, in any status."""
        if not isinstance(principal, AuthContext):
            raise AuthorizationError("Not authorized")

        return await self._list(
            ChatSession.counselor_id == principal.user_id,
            description="assigned chat listing",
        )

    # =========================================================================
    # Transcript
    # =========================================================================

    async def append_message(
        self,
        session_id: str,
        principal: Principal,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> dict:
        """
        Append a message to a session's transcript.

        The sender is the anonymous party for anonymous callers and the
        counselor for authenticated callers. A counselor may only write to a
        session assigned to them.

        Args:
            session_id: Target session
            principal: Caller identity from the access guard
            content: Message text
            client_message_id: Optional idempotency key, scoped to the sender. A repeated key
                returns the stored message without appending again.

        Returns:
            The stored message in API shape (id, content, sender, timestamp)

        Raises:
            ValidationError: Empty or oversized content
            NotFoundError: Session does not exist
            AuthorizationError: Caller is not bound to the session
            ConflictError: A concurrent write claimed the same slot
        """
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message content is required")
        if len(content) > settings.MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message exceeds {settings.MAX_MESSAGE_LENGTH} characters")
        if client_message_id is not None:
            if not isinstance(client_message_id, str):
                raise ValidationError("clientMessageId must be a string")
            client_message_id = client_message_id.strip() or None
            if client_message_id and len(client_message_id) > MAX_CLIENT_MESSAGE_ID_LENGTH:
                raise ValidationError("clientMessageId is too long")

        sender = sender_for(principal)
        if isinstance(principal, AnonymousContext):
            if not principal.anonymous_id:
                raise AuthenticationError("Anonymous ID required")
            binding = ChatSession.anonymous_id == principal.anonymous_id
        else:
            binding = ChatSession.counselor_id == principal.user_id

        message_id = str(uuid4())
        stored = self.content_strategy.encode(content)
        encoding = self.content_strategy.name

        async def _append():
            async with self.session_factory() as db:
                now = utcnow()
                result = await db.execute(
                    update(ChatSession)
                    .where(ChatSession.id == session_id, binding)
                    .values(total_messages=ChatSession.total_messages + 1, last_activity=now)
                    .returning(ChatSession.total_messages)
                    .execution_options(synchronize_session=False)
                )
                position = result.scalar_one_or_none()
                if position is None:
                    await db.rollback()
                    await self._raise_append_rejection(db, session_id, principal)

                existing = await self._find_existing(db, session_id, sender, message_id, client_message_id)
                if existing is not None:
                    # Rollback expires loaded rows, so read them first
                    payload = self._message_payload(existing)
                    fresh = existing.id == message_id
                    await db.rollback()
                    return payload, fresh

                message = ChatMessage(
                    id=message_id,
                    session_id=session_id,
                    position=position,
                    sender=sender.value,
                    content=stored,
                    content_encoding=encoding,
                    client_message_id=client_message_id,
                    created_at=now,
                )
                db.add(message)
                try:
                    await db.commit()
                except IntegrityError as e:
                    await db.rollback()
                    logger.warning("Append to chat %s lost a write race: %s", session_id, e.orig)
                    raise ConflictError("Message could not be stored, please retry") from e
                logger.info("Stored %s message %s in chat %s at position %d", sender.value, message_id, session_id, position)
                return message.to_api_response(content), True

        payload, fresh = await self.retry.run(_append, description="message append")

        if not fresh:
            logger.info("Duplicate clientMessageId %s on chat %s", client_message_id, session_id)
            return payload

        await self._publish(
            [session_room(session_id)],
            NEW_MESSAGE,
            {"sessionId": session_id, "message": _message_event(payload)},
        )
        return payload

    async def get_transcript(
        self,
        session_id: str,
        principal: Principal,
    ) -> tuple[ChatSession, list[dict]]:
        """
        Read a session's transcript in append order.

        Readers: the anonymous owner, the assigned counselor, and admins.
        Entries that fail to decode are returned with error=True and no
        content instead of failing the whole read.

        Raises:
            NotFoundError: Session does not exist.
            AuthorizationError: Caller may not read this session.
        """

        async def _read():
            async with self.session_factory() as db:
                result = await db.execute(select(ChatSession).where(ChatSession.id == session_id))
                session = result.scalar_one_or_none()
                if session is None:
                    raise NotFoundError("Chat not found")
                self._authorize_read(session, principal)

                result = await db.execute(
                    select(ChatMessage)
                    .where(ChatMessage.session_id == session_id)
                    .order_by(ChatMessage.position.asc())
                )
                return session, list(result.scalars().all())

        session, messages = await self.retry.run(_read, description="transcript read")
        return session, [self._message_payload(m) for m in messages]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _authorize_read(self, session: ChatSession, principal: Principal) -> None:
        if isinstance(principal, AuthContext):
            if principal.is_admin or session.counselor_id == principal.user_id:
                return
            raise AuthorizationError("Not authorized to view this chat")
        if isinstance(principal, AnonymousContext):
            if principal.anonymous_id and principal.anonymous_id == session.anonymous_id:
                return
            raise AuthorizationError("Not authorized to view this chat")
        raise TypeError(f"Unknown principal type: {type(principal).__name__}")

    def _message_payload(self, message: ChatMessage) -> dict:
        try:
            content = decode_content(message.content, message.content_encoding)
        except ContentDecodeError as e:
            logger.warning("Message %s in chat %s could not be decoded: %s", message.id, message.session_id, e)
            return {
                "id": message.id,
                "error": True,
                "sender": message.sender,
                "timestamp": message.created_at,
            }
        return message.to_api_response(content)

    async def _raise_append_rejection(self, db: AsyncSession, session_id: str, principal: Principal) -> None:
        """The bound counter update matched nothing; work out why."""
        result = await db.execute(select(ChatSession).where(ChatSession.id == session_id))
        session = result.scalar_one_or_none()
        if session is None:
            raise NotFoundError("Chat not found")
        if isinstance(principal, AuthContext):
            if session.counselor_id is None:
                raise AuthorizationError("Chat has no assigned counselor")
            raise AuthorizationError("Not the assigned counselor")
        raise AuthorizationError("Not authorized")

    async def _find_existing(
        self,
        db: AsyncSession,
        session_id: str,
        sender: MessageSender,
        message_id: str,
        client_message_id: Optional[str],
    ) -> Optional[ChatMessage]:
        # Client keys are unique per sender within a session
        conditions = [ChatMessage.id == message_id]
        if client_message_id:
            conditions.append(
                (ChatMessage.session_id == session_id)
                & (ChatMessage.sender == sender.value)
                & (ChatMessage.client_message_id == client_message_id)
            )
        result = await db.execute(select(ChatMessage).where(or_(*conditions)).limit(1))
        return result.scalar_one_or_none()

    async def _load(self, session_id: str) -> ChatSession:
        async def _get():
            async with self.session_factory() as db:
                return await db.get(ChatSession, session_id)

        session = await self.retry.run(_get, description="session lookup")
        if session is None:
            raise NotFoundError("Chat not found")
        return session

    async def _list(self, *conditions, description: str) -> list[ChatSession]:
        async def _query():
            async with self.session_factory() as db:
                result = await db.execute(
                    select(ChatSession).where(*conditions).order_by(ChatSession.last_activity.desc())
                )
                return list(result.scalars().all())

        return await self.retry.run(_query, description=description)

    async def _publish(self, channels: list[str], event: str, data: dict) -> None:
        if self.broadcaster is None:
            return
        try:
            await self.broadcaster.publish_many(channels, event, data)
        except Exception as e:
            logger.warning("Broadcast of %s failed: %s", event, e)
