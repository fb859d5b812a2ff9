"""
Anonymous counseling chat API.

Callers are either anonymous (identified by the x-anonymous-id header) or
authenticated counselors/admins (Authorization: Bearer). Session-targeted
routes bind anonymous callers to the session before the handler runs; the
resolved session is kept on request.state.chat_session.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.access_guard import AccessGuard
from core.auth import AnonymousContext, AuthContext, Principal
from core.database import get_session_factory
from core.exceptions import AuthorizationError
from core.retry import RetryPolicy
from core.services.anonymous_chat_service import AnonymousChatService
from core.services.broadcaster import RealtimeBroadcaster, get_broadcaster
from schemas.chat import (
    CreateSessionRequest,
    CreateSessionResponse,
    DeleteSessionResponse,
    MessageResponse,
    SendMessageRequest,
    SendMessageResponse,
    SessionListResponse,
    SessionResponse,
    SessionSummary,
    TranscriptResponse,
    UpdateSessionRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter()


# =============================================================================
# Dependencies
# =============================================================================


def get_retry_policy() -> RetryPolicy:
    return RetryPolicy()


def get_access_guard(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    retry_policy: RetryPolicy = Depends(get_retry_policy),
) -> AccessGuard:
    return AccessGuard(session_factory, retry_policy)


def get_chat_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    broadcaster: RealtimeBroadcaster = Depends(get_broadcaster),
    retry_policy: RetryPolicy = Depends(get_retry_policy),
) -> AnonymousChatService:
    return AnonymousChatService(session_factory, broadcaster, retry_policy)


async def get_caller(
    authorization: Optional[str] = Header(None),
    x_anonymous_id: Optional[str] = Header(None, alias="x-anonymous-id"),
    guard: AccessGuard = Depends(get_access_guard),
) -> Principal:
    """Classify the caller as an authenticated account or an anonymous party."""
    return await guard.authenticate(authorization, x_anonymous_id)


async def get_bound_caller(
    session_id: str,
    request: Request,
    principal: Principal = Depends(get_caller),
    guard: AccessGuard = Depends(get_access_guard),
) -> Principal:
    """Caller bound to the session in the path (anonymous callers only)."""
    request.state.chat_session = await guard.bind(principal, session_id)
    return principal


# =============================================================================
# Sessions
# =============================================================================


@router.post("/sessions", response_model=CreateSessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: CreateSessionRequest,
    principal: Principal = Depends(get_caller),
    service: AnonymousChatService = Depends(get_chat_service),
):
    """Open a new anonymous chat. The x-anonymous-id header wins over the body."""
    if not isinstance(principal, AnonymousContext):
        raise AuthorizationError("Anonymous chats are opened by anonymous users only")

    session = await service.create_session(
        anonymous_id=principal.anonymous_id or body.anonymous_id,
        category=body.category,
        is_emergency=body.is_emergency,
    )
    return CreateSessionResponse(session_id=session.id)


@router.get("/sessions/mine", response_model=SessionListResponse)
async def list_my_sessions(
    principal: Principal = Depends(get_caller),
    service: AnonymousChatService = Depends(get_chat_service),
):
    """
    Sessions belonging to the caller.

    Anonymous callers get their open sessions; counselors get every session
    assigned to them.
    """
    if isinstance(principal, AuthContext):
        sessions = await service.list_assigned_to(principal)
    else:
        sessions = await service.list_for_anonymous(principal.anonymous_id)
    return SessionListResponse(chats=[SessionSummary.from_session(s) for s in sessions])


@router.get("/sessions/active", response_model=SessionListResponse)
async def list_active_sessions(
    principal: Principal = Depends(get_caller),
    service: AnonymousChatService = Depends(get_chat_service),
):
    """Open sessions that are unassigned or assigned to the calling counselor."""
    sessions = await service.list_active_for_counselor(principal)
    return SessionListResponse(chats=[SessionSummary.from_session(s) for s in sessions])


@router.post("/sessions/{session_id}/assign", response_model=SessionResponse)
async def assign_session(
    session_id: str,
    principal: Principal = Depends(get_caller),
    service: AnonymousChatService = Depends(get_chat_service),
):
    session = await service.assign_counselor(session_id, principal)
    return SessionResponse(chat=SessionSummary.from_session(session))


@router.patch("/sessions/{session_id}", response_model=SessionResponse)
async def update_session(
    session_id: str,
    body: UpdateSessionRequest,
    principal: Principal = Depends(get_caller),
    service: AnonymousChatService = Depends(get_chat_service),
):
    """Change status and/or priority (assigned counselor only)."""
    session = await service.update_status(
        session_id,
        principal,
        status=body.status,
        priority=body.priority,
    )
    return SessionResponse(chat=SessionSummary.from_session(session))


@router.delete("/sessions/{session_id}", response_model=DeleteSessionResponse)
async def delete_session(
    session_id: str,
    request: Request,
    principal: Principal = Depends(get_bound_caller),
    service: AnonymousChatService = Depends(get_chat_service),
):
    """Close a chat and delete its transcript (anonymous owner only)."""
    await service.delete_session(
        session_id,
        principal,
        bound_session=request.state.chat_session,
    )
    return DeleteSessionResponse()


# =============================================================================
# Messages
# =============================================================================


@router.post(
    "/sessions/{session_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    session_id: str,
    body: SendMessageRequest,
    principal: Principal = Depends(get_bound_caller),
    service: AnonymousChatService = Depends(get_chat_service),
):
    payload = await service.append_message(
        session_id,
        principal,
        body.content,
        client_message_id=body.client_message_id,
    )
    return SendMessageResponse(message=MessageResponse.model_validate(payload))


@router.get("/sessions/{session_id}/messages", response_model=TranscriptResponse)
async def get_messages(
    session_id: str,
    principal: Principal = Depends(get_bound_caller),
    service: AnonymousChatService = Depends(get_chat_service),
):
    """Full transcript in append order, plus the session's current status."""
    session, messages = await service.get_transcript(session_id, principal)
    return TranscriptResponse(
        session_id=session.id,
        messages=[MessageResponse.model_validate(m) for m in messages],
        chat_status=session.status,
    )
