"""
WebSocket Change Feed
Tracks connected clients and their channel subscriptions, and publishes
row-change events (new messages, read receipts, verification changes,
directory and donation updates) to subscribers.
"""

from typing import Callable, Dict, List, Set
from fastapi import WebSocket
import logging
from datetime import datetime

from policies import MESSAGES_CHANNEL_PREFIX

logger = logging.getLogger(__name__)

DIRECTORY_CHANNELS = {"institution": "institutions", "investor": "investors"}


def messages_channel(conversation_id: str) -> str:
    return f"{MESSAGES_CHANNEL_PREFIX}{conversation_id}"


class ConnectionManager:
    """Manages WebSocket connections and channel subscriptions."""

    def __init__(self):
        # {user_id: set of WebSocket connections}
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        # {channel: set of WebSocket connections}
        self.subscriptions: Dict[str, Set[WebSocket]] = {}
        self.connection_count = 0

    async def connect(self, websocket: WebSocket, user_id: str):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()

        if user_id not in self.active_connections:
            self.active_connections[user_id] = set()

        self.active_connections[user_id].add(websocket)
        self.connection_count += 1

        logger.info(f"User '{user_id}' connected. Total connections: {self.connection_count}")

        await self.send_personal_message(
            {
                "type": "connection_established",
                "message": "Change feed connected; send subscribe messages to receive events",
                "timestamp": datetime.now().isoformat()
            },
            websocket
        )

    def disconnect(self, websocket: WebSocket, user_id: str):
        """Remove a WebSocket connection and all of its subscriptions."""
        connections = self.active_connections.get(user_id)
        if connections is None or websocket not in connections:
            return

        connections.discard(websocket)
        self.connection_count -= 1
        if not connections:
            del self.active_connections[user_id]

        for channel in list(self.subscriptions):
            self.unsubscribe(websocket, channel)

        logger.info(f"User '{user_id}' disconnected. Total connections: {self.connection_count}")

    def subscribe(self, websocket: WebSocket, channel: str):
        self.subscriptions.setdefault(channel, set()).add(websocket)

    def unsubscribe(self, websocket: WebSocket, channel: str):
        subscribers = self.subscriptions.get(channel)
        if subscribers is None:
            return
        subscribers.discard(websocket)
        if not subscribers:
            del self.subscriptions[channel]

    async def revoke_subscriptions(self, user_id: str, still_allowed: Callable[[str], bool]) -> List[str]:
        """
        Drop a user's subscriptions that `still_allowed` now rejects.

        Used when an account's verification changes while its sockets are
        open. Each affected socket is told which channel it lost.
        """
        revoked = []
        sockets = self.active_connections.get(user_id, set())
        for channel in list(self.subscriptions):
            subscribed = [ws for ws in sockets if ws in self.subscriptions.get(channel, ())]
            if not subscribed or still_allowed(channel):
                continue
            revoked.append(channel)
            for websocket in subscribed:
                self.unsubscribe(websocket, channel)
                await self.send_personal_message(
                    {"type": "subscription_revoked", "channel": channel},
                    websocket
                )
        return revoked

    def subscriber_count(self, channel: str) -> int:
        return len(self.subscriptions.get(channel, ()))

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        """Send a message to a specific WebSocket connection."""
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.error(f"Error sending personal message: {e}")

    async def publish(self, channel: str, event_type: str, data: dict):
        """
        Send an event to every subscriber of a channel.

        Args:
            channel: Channel name, e.g. ``messages:<conversation_id>``
            event_type: Event name placed in the ``type`` field
            data: JSON-serializable payload
        """
        message = {
            "type": event_type,
            "channel": channel,
            "data": data,
            "timestamp": datetime.now().isoformat()
        }
        dead = []

        for connection in self.subscriptions.get(channel, set()).copy():
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.error(f"Error publishing to {channel}: {e}")
                dead.append(connection)

        # Drop connections that failed mid-send
        for connection in dead:
            for user_id, connections in list(self.active_connections.items()):
                if connection in connections:
                    self.disconnect(connection, user_id)

        logger.debug(f"Published {event_type} on {channel}")

    async def broadcast_new_message(self, message_data: dict):
        await self.publish(messages_channel(message_data["conversation_id"]), "message_inserted", message_data)

    async def broadcast_messages_read(self, conversation_id: str, reader_id: str, count: int):
        await self.publish(
            messages_channel(conversation_id),
            "messages_read",
            {"conversation_id": conversation_id, "reader_id": reader_id, "count": count}
        )

    async def broadcast_profile_updated(self, profile_data: dict, was_listed: bool = False):
        """
        Full profile rows go to the admin-only ``profiles`` channel.

        The directory channels get only the account id and its status, and
        only when the account enters or leaves the verified listing.
        """
        await self.publish("profiles", "profile_updated", profile_data)

        channel = DIRECTORY_CHANNELS.get(profile_data.get("user_type"))
        listed = profile_data.get("verification_status") == "verified"
        if channel is None or not (listed or was_listed):
            return
        await self.publish(channel, f"{profile_data['user_type']}_changed", {
            "user_id": profile_data["id"],
            "user_type": profile_data["user_type"],
            "verification_status": profile_data["verification_status"],
        })

    async def broadcast_directory_change(self, kind: str, data: dict):
        await self.publish(DIRECTORY_CHANNELS[kind], f"{kind}_changed", data)

    async def broadcast_donation_changed(self, donation_data: dict):
        await self.publish("donations", "donation_changed", donation_data)

    def get_connection_count(self) -> int:
        """Open sockets across all users."""
        return self.connection_count

    def get_connected_users(self) -> list:
        """Get list of currently connected user ids."""
        return list(self.active_connections.keys())


# Global connection manager instance
manager = ConnectionManager()
