"""
Realtime broadcaster for chat lifecycle and message events.

Delivery is at-most-once and best effort: a channel with no subscribed
connection drops the event, there is no replay, and no failure here ever
propagates to the operation that triggered the event.

Channels:
- chat:<session_id>   session room, joined explicitly by clients
- user:<user_id>      personal channel of an authenticated user
- anon:<anonymous_id> personal channel of an anonymous party
- counselors          every connected counselor/admin
"""
import asyncio
import functools
import logging
from typing import Any, Optional

from core.config import settings
from core.services.connection_service import ConnectionService
from core.services.management_api_client import ManagementApiClient, ManagementApiClientError

logger = logging.getLogger(__name__)

COUNSELORS_CHANNEL = "counselors"

# Server-emitted events
NEW_CHAT = "newChat"
NEW_MESSAGE = "newMessage"
CHAT_DELETED = "chatDeleted"
CHAT_UPDATED = "chatUpdated"


def session_room(session_id: str) -> str:
    return f"chat:{session_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def anonymous_channel(anonymous_id: str) -> str:
    return f"anon:{anonymous_id}"


class RealtimeBroadcaster:
    """
    Fans events out to every connection subscribed to a channel.

    Constructed once at startup and handed to the services that emit events.
    Both collaborators use blocking boto3 clients, so calls run in the
    default executor.
    """

    def __init__(
        self,
        connection_service: Optional[ConnectionService],
        transport: Optional[ManagementApiClient],
    ):
        self.connection_service = connection_service
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return self.connection_service is not None and self.transport is not None

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    async def publish(self, channel: str, event: str, data: Any) -> int:
        """
        Deliver an event to a channel.

        Returns:
            Number of connections the event was delivered to. Never raises.
        """
        if not self.is_configured:
            logger.debug("Realtime transport not configured, dropping %s for %s", event, channel)
            return 0

        try:
            connection_ids = await self._run(self.connection_service.list_room_connections, channel)
        except Exception as e:
            logger.warning("Could not resolve subscribers of %s, dropping %s: %s", channel, event, e)
            return 0

        if not connection_ids:
            logger.debug("No subscribers on %s, dropping %s", channel, event)
            return 0

        delivered = 0
        for connection_id in connection_ids:
            try:
                if await self._run(self.transport.send_event, connection_id, event, data):
                    delivered += 1
                else:
                    await self._prune(connection_id)
            except ManagementApiClientError as e:
                logger.warning("Failed to deliver %s to %s: %s", event, connection_id, e)
            except Exception as e:
                logger.exception("Unexpected error delivering %s to %s: %s", event, connection_id, e)

        logger.debug("Delivered %s to %d/%d connections on %s", event, delivered, len(connection_ids), channel)
        return delivered

    async def publish_many(self, channels: list[str], event: str, data: Any) -> int:
        delivered = 0
        for channel in dict.fromkeys(channels):
            delivered += await self.publish(channel, event, data)
        return delivered

    async def send_to_connection(self, connection_id: str, event: str, data: Any) -> bool:
        """Reply to a single connection (e.g. pong, error). Never raises."""
        if self.transport is None:
            return False
        try:
            return await self._run(self.transport.send_event, connection_id, event, data)
        except Exception as e:
            logger.warning("Failed to send %s to %s: %s", event, connection_id, e)
            return False

    async def _prune(self, connection_id: str) -> None:
        try:
            await self._run(self.connection_service.delete_connection, connection_id)
        except Exception as e:
            logger.warning("Failed to prune gone connection %s: %s", connection_id, e)


# Singleton instance (created lazily)
_broadcaster: Optional[RealtimeBroadcaster] = None


def build_broadcaster() -> RealtimeBroadcaster:
    """Wire the broadcaster from settings. A missing Management API URL disables delivery."""
    connection_service = ConnectionService(
        table_name=settings.WS_CONNECTIONS_TABLE,
        rooms_table_name=settings.WS_ROOMS_TABLE,
        region_name=settings.AWS_REGION,
    )
    try:
        transport = ManagementApiClient(
            endpoint_url=settings.WS_MANAGEMENT_API_URL or None,
            region_name=settings.AWS_REGION,
        )
    except ManagementApiClientError as e:
        logger.warning("Realtime delivery disabled: %s", e)
        transport = None
    return RealtimeBroadcaster(connection_service, transport)


def get_broadcaster() -> RealtimeBroadcaster:
    """Get or create the RealtimeBroadcaster singleton."""
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = build_broadcaster()
    return _broadcaster
