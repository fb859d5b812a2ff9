"""
Management API Client - pushes events to WebSocket clients via API Gateway.

Architecture:
- INBOUND: Client WebSocket -> API Gateway -> HTTP POST /api/v1/ws/* -> app
- OUTBOUND: app -> POST to Management API -> API Gateway -> Client WebSocket

Every frame pushed to a client has the shape {"event": <name>, "data": <payload>}.

The Management API endpoint URL format:
https://{api-id}.execute-api.{region}.amazonaws.com/{stage}
"""

import json
import logging
import os
from typing import Any, Optional

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class ManagementApiClientError(Exception):
    """Base exception for management API client errors."""

    pass


class ManagementApiClient:
    """Client for the API Gateway WebSocket Management API."""

    def __init__(self, endpoint_url: Optional[str] = None, region_name: Optional[str] = None):
        """
        Args:
            endpoint_url: Management API endpoint URL. If not provided, uses
                         WS_MANAGEMENT_API_URL environment variable.

        Raises:
            ManagementApiClientError: If no endpoint URL is configured.
        """
        self.endpoint_url = endpoint_url or os.environ.get("WS_MANAGEMENT_API_URL")

        if not self.endpoint_url:
            raise ManagementApiClientError(
                "No endpoint URL provided. Set WS_MANAGEMENT_API_URL environment "
                "variable or pass endpoint_url parameter."
            )

        self._client = boto3.client(
            "apigatewaymanagementapi",
            endpoint_url=self.endpoint_url,
            region_name=region_name or os.environ.get("AWS_REGION", "us-east-1"),
        )

    def send_event(self, connection_id: str, event: str, data: Any) -> bool:
        """
        Push one event frame to a WebSocket client.

        Returns:
            True if delivered, False if the connection is gone.

        Raises:
            ManagementApiClientError: If sending fails for reasons other than
                                     a gone connection.
        """
        frame = json.dumps({"event": event, "data": data}, default=str).encode("utf-8")

        try:
            self._client.post_to_connection(ConnectionId=connection_id, Data=frame)
            logger.debug("Sent %s to connection %s: %d bytes", event, connection_id, len(frame))
            return True

        except ClientError as e:
            error = e.response.get("Error", {})
            if error.get("Code", "") == "GoneException":
                logger.info("Connection %s is gone, %s not delivered", connection_id, event)
                return False

            logger.error(
                "Failed to send %s to connection %s: %s",
                event,
                connection_id,
                error.get("Message", str(e)),
            )
            raise ManagementApiClientError(
                f"Failed to send {event} to connection {connection_id}: {error.get('Message', str(e))}"
            ) from e
