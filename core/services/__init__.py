"""
Core services for Haven.

Services encapsulate the chat business logic (session lifecycle and
transcripts), identity lookups, and realtime delivery over API Gateway
WebSockets.
"""

from .anonymous_chat_service import AnonymousChatService
from .broadcaster import RealtimeBroadcaster, get_broadcaster
from .connection_service import ConnectionService, ConnectionServiceError
from .identity_service import IdentityService
from .management_api_client import ManagementApiClient, ManagementApiClientError

__all__ = [
    # Transcript engine
    "AnonymousChatService",
    # Identity
    "IdentityService",
    # Realtime
    "RealtimeBroadcaster",
    "get_broadcaster",
    "ConnectionService",
    "ConnectionServiceError",
    "ManagementApiClient",
    "ManagementApiClientError",
]
