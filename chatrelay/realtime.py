"""
Push notifications to connected viewers.

Events are invalidation hints, not a replayable stream: a client that
receives one re-queries the affected view, and a client that missed some
(disconnect, slow socket) loses nothing by re-querying on reconnect.
"""

import logging
from collections import defaultdict
from typing import Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

logger = logging.getLogger(__name__)


class NotificationHub:
    """In-process registry of WebSocket connections per account."""

    def __init__(self):
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, account_id: str, websocket: WebSocket) -> None:
        self._connections[account_id].add(websocket)
        await websocket.accept()
        logger.info(f"WS connected account_id={account_id} connections={len(self._connections[account_id])}")

    def disconnect(self, account_id: str, websocket: WebSocket) -> None:
        connections = self._connections.get(account_id)
        if not connections:
            return
        connections.discard(websocket)
        if not connections:
            del self._connections[account_id]
        logger.info(f"WS disconnected account_id={account_id}")

    def connection_count(self, account_id: str) -> int:
        return len(self._connections.get(account_id, ()))

    async def publish(self, account_id: str, event: dict) -> int:
        """
        Send `event` to every connection of `account_id`.

        Connections that fail to receive are dropped.

        Returns:
            Number of connections the event reached.
        """
        delivered = 0
        for websocket in list(self._connections.get(account_id, ())):
            try:
                await websocket.send_json(event)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.info(f"Dropping WS connection for {account_id}: {e}")
                self.disconnect(account_id, websocket)
        logger.debug(f"Published {event.get('type')} to {delivered} connections of {account_id}")
        return delivered


def message_created(message_id: str, party_id: str, message_type: str) -> dict:
    return {
        "type": "message.created",
        "message_id": message_id,
        "party_id": party_id,
        "message_type": message_type,
    }


def messages_read(party_id: str, count: int) -> dict:
    return {"type": "messages.read", "party_id": party_id, "count": count}


def group_changed(group_id: str, action: str, member_id: Optional[str] = None) -> dict:
    event = {"type": "group.changed", "group_id": group_id, "action": action}
    if member_id is not None:
        event["member_id"] = member_id
    return event


hub = NotificationHub()
