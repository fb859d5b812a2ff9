"""
HTTP routes for API Gateway WebSocket integration.

API Gateway WebSocket converts WebSocket frames into HTTP POST requests:
- $connect  -> POST /ws/connect
- $disconnect -> POST /ws/disconnect
- $default (messages) -> POST /ws/message

Responses are pushed via Management API, not returned in HTTP response body.
The HTTP response only indicates whether the request was accepted (200) or rejected (4xx).

Inbound message types:
- ping / pong: keepalive
- join / leave: subscribe to or drop a session room ({"type": "join", "sessionId": ...})
- send: append a message through the same persist-then-broadcast path as
  POST /sessions/{id}/messages ({"type": "send", "sessionId", "content", "clientMessageId"?})

Known gap: join does not re-check that an anonymous connection owns the
session. Room events carry message content, so anyone who learns a session
id can listen in.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.concurrency import run_in_threadpool

from core.access_guard import AccessGuard
from core.auth import AnonymousContext, AuthContext, Principal
from core.exceptions import AuthenticationError, ChatServiceError
from core.services.anonymous_chat_service import AnonymousChatService
from core.services.broadcaster import (
    COUNSELORS_CHANNEL,
    RealtimeBroadcaster,
    anonymous_channel,
    get_broadcaster,
    session_room,
    user_channel,
)
from core.services.connection_service import ConnectionService, ConnectionServiceError
from routers.anonymous_chat import get_access_guard, get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

PRINCIPAL_USER = "user"
PRINCIPAL_ANONYMOUS = "anonymous"


def get_connection_service(broadcaster: RealtimeBroadcaster = Depends(get_broadcaster)) -> ConnectionService:
    """Connection registry shared with the broadcaster."""
    if broadcaster.connection_service is None:
        raise HTTPException(status_code=503, detail="Realtime registry not configured")
    return broadcaster.connection_service


def _principal_from_connection(connection: Dict[str, Any]) -> Principal:
    if connection["principal_kind"] == PRINCIPAL_USER:
        return AuthContext(user_id=connection["principal_id"], role=connection["role"] or "")
    return AnonymousContext(anonymous_id=connection["principal_id"])


@router.post("/connect")
async def ws_connect(
    x_connection_id: Optional[str] = Header(None, alias="x-connection-id"),
    authorization: Optional[str] = Header(None),
    x_anonymous_id: Optional[str] = Header(None, alias="x-anonymous-id"),
    guard: AccessGuard = Depends(get_access_guard),
    connection_service: ConnectionService = Depends(get_connection_service),
) -> Dict[str, str]:
    """
    Handle WebSocket $connect event from API Gateway.

    Headers:
    - x-connection-id: API Gateway connection ID (required)
    - Authorization: Bearer token for counselors/admins (optional)
    - x-anonymous-id: anonymous party id (required when no bearer token)

    The connection joins its personal channel; counselors and admins also
    join the shared counselors channel so they hear about new chats.

    Returns:
        200: Connection stored successfully
        400: Missing connection-id header
        401: No usable identity
    """
    if not x_connection_id:
        raise HTTPException(status_code=400, detail="Missing x-connection-id header")

    principal = await guard.authenticate(authorization, x_anonymous_id)

    if isinstance(principal, AuthContext):
        kind, principal_id, role = PRINCIPAL_USER, principal.user_id, principal.role
        rooms = [user_channel(principal.user_id)]
        if principal.is_staff:
            rooms.append(COUNSELORS_CHANNEL)
    else:
        if not principal.anonymous_id:
            raise AuthenticationError("Anonymous ID required")
        kind, principal_id, role = PRINCIPAL_ANONYMOUS, principal.anonymous_id, None
        rooms = [anonymous_channel(principal.anonymous_id)]

    logger.info("WebSocket connect: connection_id=%s, principal=%s", x_connection_id, kind)

    try:
        await run_in_threadpool(connection_service.store_connection, x_connection_id, kind, principal_id, role)
        for room in rooms:
            await run_in_threadpool(connection_service.join_room, x_connection_id, room)
    except ConnectionServiceError as e:
        logger.error("Failed to register connection %s: %s", x_connection_id, e)
        raise HTTPException(status_code=500, detail="Failed to register connection")

    return {"status": "connected"}


@router.post("/disconnect")
async def ws_disconnect(
    x_connection_id: Optional[str] = Header(None, alias="x-connection-id"),
    connection_service: ConnectionService = Depends(get_connection_service),
) -> Dict[str, str]:
    """
    Handle WebSocket $disconnect event from API Gateway.

    Best-effort cleanup of the connection and its room memberships. Always
    returns 200 so API Gateway does not retry disconnect events.
    """
    if not x_connection_id:
        logger.debug("Disconnect without connection_id, ignoring")
        return {"status": "disconnected"}

    logger.info("WebSocket disconnect: connection_id=%s", x_connection_id)

    try:
        await run_in_threadpool(connection_service.delete_connection, x_connection_id)
    except ConnectionServiceError as e:
        # Log but don't fail - best effort cleanup
        logger.warning("Failed to delete connection %s: %s", x_connection_id, e)
    except Exception as e:
        logger.exception("Unexpected error deleting connection %s: %s", x_connection_id, e)

    return {"status": "disconnected"}


@router.post("/message")
async def ws_message(
    body: Dict[str, Any],
    x_connection_id: Optional[str] = Header(None, alias="x-connection-id"),
    broadcaster: RealtimeBroadcaster = Depends(get_broadcaster),
    connection_service: ConnectionService = Depends(get_connection_service),
    service: AnonymousChatService = Depends(get_chat_service),
) -> Dict[str, str]:
    """
    Handle WebSocket $default (message) event from API Gateway.

    Returns:
        200: Message handled (failures are pushed to the connection as
             "error" events)
        400: Missing connection-id header
        401: Unknown connection (not in DynamoDB)
    """
    if not x_connection_id:
        raise HTTPException(status_code=400, detail="Missing x-connection-id header")

    try:
        connection = await run_in_threadpool(connection_service.get_connection, x_connection_id)
    except ConnectionServiceError as e:
        logger.error("Failed to look up connection %s: %s", x_connection_id, e)
        raise HTTPException(status_code=500, detail="Failed to look up connection")

    if not connection:
        raise HTTPException(status_code=401, detail="Unknown connection")

    msg_type = body.get("type")

    if msg_type == "ping":
        await broadcaster.send_to_connection(x_connection_id, "pong", {})
        return {"status": "pong_sent"}

    if msg_type == "pong":
        # Client acknowledged our ping - no action needed
        return {"status": "pong_received"}

    session_id = body.get("sessionId")
    if msg_type in ("join", "leave", "send") and not session_id:
        await _send_error(broadcaster, x_connection_id, "sessionId is required")
        return {"status": "rejected"}

    if msg_type == "join":
        try:
            await run_in_threadpool(connection_service.join_room, x_connection_id, session_room(session_id))
        except ConnectionServiceError as e:
            logger.warning("Join failed for %s: %s", x_connection_id, e)
            await _send_error(broadcaster, x_connection_id, "Failed to join chat")
            return {"status": "rejected"}
        await broadcaster.send_to_connection(x_connection_id, "joined", {"sessionId": session_id})
        return {"status": "joined"}

    if msg_type == "leave":
        try:
            await run_in_threadpool(connection_service.leave_room, x_connection_id, session_room(session_id))
        except ConnectionServiceError as e:
            logger.warning("Leave failed for %s: %s", x_connection_id, e)
        return {"status": "left"}

    if msg_type == "send":
        principal = _principal_from_connection(connection)
        try:
            await service.append_message(
                session_id,
                principal,
                body.get("content"),
                client_message_id=body.get("clientMessageId"),
            )
        except ChatServiceError as e:
            logger.info("Socket send rejected for %s: %s", x_connection_id, e.message)
            await _send_error(broadcaster, x_connection_id, e.message)
            return {"status": "rejected"}
        return {"status": "sent"}

    await _send_error(broadcaster, x_connection_id, f"Unknown message type: {msg_type}")
    return {"status": "rejected"}


async def _send_error(broadcaster: RealtimeBroadcaster, connection_id: str, message: str) -> None:
    await broadcaster.send_to_connection(connection_id, "error", {"message": message})
