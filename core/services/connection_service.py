"""
Connection Service - WebSocket connection and room membership in DynamoDB.

API Gateway only knows connectionIds, so we track who each connection
belongs to and which rooms it has joined.

DynamoDB Table Schemas:

Connections (WS_CONNECTIONS_TABLE):
- connectionId (S) - partition key
- principalKind (S) - "user" or "anonymous"
- principalId (S) - user id or anonymous id
- role (S) - account role (empty string for anonymous)
- connectedAt (S) - ISO timestamp of connection
- rooms (SS) - rooms joined by this connection (absent when empty)

Rooms (WS_ROOMS_TABLE):
- roomId (S) - partition key, e.g. "chat:<session_id>", "user:<id>", "anon:<id>"
- connectionId (S) - sort key

Note: Table creation is handled by Terraform, not this service.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class ConnectionServiceError(Exception):
    """Base exception for connection service errors."""

    pass


def _error_message(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Message", str(e))


class ConnectionService:
    """Registry of live WebSocket connections and their room memberships."""

    def __init__(
        self,
        table_name: Optional[str] = None,
        rooms_table_name: Optional[str] = None,
        region_name: Optional[str] = None,
    ):
        """
        Args:
            table_name: Connections table. Defaults to WS_CONNECTIONS_TABLE env var.
            rooms_table_name: Room membership table. Defaults to WS_ROOMS_TABLE env var.
        """
        self.table_name = table_name or os.environ.get(
            "WS_CONNECTIONS_TABLE", "haven-websocket-connections"
        )
        self.rooms_table_name = rooms_table_name or os.environ.get(
            "WS_ROOMS_TABLE", "haven-websocket-rooms"
        )
        self._client = boto3.client(
            "dynamodb",
            region_name=region_name or os.environ.get("AWS_REGION", "us-east-1"),
        )

    # =========================================================================
    # Connections
    # =========================================================================

    def store_connection(
        self,
        connection_id: str,
        principal_kind: str,
        principal_id: str,
        role: Optional[str] = None,
    ) -> None:
        """
        Store a new WebSocket connection mapping. Called on $connect.

        Raises:
            ConnectionServiceError: If DynamoDB operation fails
        """
        item = {
            "connectionId": {"S": connection_id},
            "principalKind": {"S": principal_kind},
            "principalId": {"S": principal_id},
            "role": {"S": role or ""},
            "connectedAt": {"S": datetime.now(timezone.utc).isoformat()},
        }

        try:
            self._client.put_item(TableName=self.table_name, Item=item)
            logger.info("Stored connection %s for %s %s", connection_id, principal_kind, principal_id)
        except ClientError as e:
            logger.error("Failed to store connection %s: %s", connection_id, _error_message(e))
            raise ConnectionServiceError(
                f"Failed to store connection {connection_id}: {_error_message(e)}"
            ) from e

    def get_connection(self, connection_id: str) -> Optional[dict]:
        """
        Get the identity and rooms for a WebSocket connection.

        Returns:
            Dict with principal_kind, principal_id, role (None for anonymous)
            and rooms (a set), or None if the connection is unknown.

        Raises:
            ConnectionServiceError: If DynamoDB operation fails
        """
        try:
            response = self._client.get_item(
                TableName=self.table_name,
                Key={"connectionId": {"S": connection_id}},
            )
        except ClientError as e:
            logger.error("Failed to get connection %s: %s", connection_id, _error_message(e))
            raise ConnectionServiceError(
                f"Failed to get connection {connection_id}: {_error_message(e)}"
            ) from e

        if "Item" not in response:
            logger.debug("Connection %s not found", connection_id)
            return None

        item = response["Item"]
        role = item.get("role", {}).get("S", "")
        return {
            "principal_kind": item["principalKind"]["S"],
            "principal_id": item["principalId"]["S"],
            "role": role or None,
            "rooms": set(item.get("rooms", {}).get("SS", [])),
        }

    def delete_connection(self, connection_id: str) -> None:
        """
        Delete a connection and clear its room memberships. Called on $disconnect.

        A no-op if the connection doesn't exist.

        Raises:
            ConnectionServiceError: If DynamoDB operation fails
        """
        connection = self.get_connection(connection_id)
        rooms = connection["rooms"] if connection else set()

        try:
            for room in rooms:
                self._client.delete_item(
                    TableName=self.rooms_table_name,
                    Key={"roomId": {"S": room}, "connectionId": {"S": connection_id}},
                )
            self._client.delete_item(
                TableName=self.table_name,
                Key={"connectionId": {"S": connection_id}},
            )
            logger.info("Deleted connection %s (%d rooms cleared)", connection_id, len(rooms))
        except ClientError as e:
            logger.error("Failed to delete connection %s: %s", connection_id, _error_message(e))
            raise ConnectionServiceError(
                f"Failed to delete connection {connection_id}: {_error_message(e)}"
            ) from e

    # =========================================================================
    # Rooms
    # =========================================================================

    def join_room(self, connection_id: str, room: str) -> None:
        """Add a connection to a room. Joining twice is harmless."""
        try:
            self._client.put_item(
                TableName=self.rooms_table_name,
                Item={"roomId": {"S": room}, "connectionId": {"S": connection_id}},
            )
            self._client.update_item(
                TableName=self.table_name,
                Key={"connectionId": {"S": connection_id}},
                UpdateExpression="ADD rooms :room",
                ExpressionAttributeValues={":room": {"SS": [room]}},
            )
            logger.debug("Connection %s joined %s", connection_id, room)
        except ClientError as e:
            logger.error("Failed to join %s for connection %s: %s", room, connection_id, _error_message(e))
            raise ConnectionServiceError(
                f"Failed to join {room} for connection {connection_id}: {_error_message(e)}"
            ) from e

    def leave_room(self, connection_id: str, room: str) -> None:
        """Remove a connection from a room. Leaving a room never joined is a no-op."""
        try:
            self._client.delete_item(
                TableName=self.rooms_table_name,
                Key={"roomId": {"S": room}, "connectionId": {"S": connection_id}},
            )
            self._client.update_item(
                TableName=self.table_name,
                Key={"connectionId": {"S": connection_id}},
                UpdateExpression="DELETE rooms :room",
                ExpressionAttributeValues={":room": {"SS": [room]}},
            )
            logger.debug("Connection %s left %s", connection_id, room)
        except ClientError as e:
            logger.error("Failed to leave %s for connection %s: %s", room, connection_id, _error_message(e))
            raise ConnectionServiceError(
                f"Failed to leave {room} for connection {connection_id}: {_error_message(e)}"
            ) from e

    def list_room_connections(self, room: str) -> list[str]:
        """
        Get the connection ids subscribed to a room.

        Raises:
            ConnectionServiceError: If DynamoDB operation fails
        """
        connection_ids: list[str] = []
        kwargs = {
            "TableName": self.rooms_table_name,
            "KeyConditionExpression": "roomId = :room",
            "ExpressionAttributeValues": {":room": {"S": room}},
            "ProjectionExpression": "connectionId",
        }

        try:
            while True:
                response = self._client.query(**kwargs)
                connection_ids.extend(item["connectionId"]["S"] for item in response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except ClientError as e:
            logger.error("Failed to list connections for %s: %s", room, _error_message(e))
            raise ConnectionServiceError(
                f"Failed to list connections for {room}: {_error_message(e)}"
            ) from e

        return connection_ids
