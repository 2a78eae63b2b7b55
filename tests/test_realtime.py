"""
Tests for the push notification hub.

Tests cover:
- Events reach only the addressed account
- Broken connections are dropped
- The /ws endpoint accepts valid account ids
"""

import asyncio

from starlette.websockets import WebSocketDisconnect

from chatrelay import realtime
from chatrelay.realtime import NotificationHub


class FakeWebSocket:
    def __init__(self, broken=False):
        self.broken = broken
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.broken:
            raise WebSocketDisconnect(code=1006)
        self.sent.append(data)


class TestNotificationHub:

    def test_publish_to_account(self):
        hub = NotificationHub()
        mine, theirs = FakeWebSocket(), FakeWebSocket()

        async def scenario():
            await hub.connect("owner-account", mine)
            await hub.connect("someone-else", theirs)
            return await hub.publish("owner-account", realtime.messages_read("+15551234567", 2))

        delivered = asyncio.run(scenario())

        assert delivered == 1
        assert mine.accepted is True
        assert mine.sent == [{"type": "messages.read", "party_id": "+15551234567", "count": 2}]
        assert theirs.sent == []

    def test_broken_connection_dropped(self):
        hub = NotificationHub()
        good, broken = FakeWebSocket(), FakeWebSocket(broken=True)

        async def scenario():
            await hub.connect("owner-account", good)
            await hub.connect("owner-account", broken)
            return await hub.publish("owner-account", realtime.group_changed("g1", "deleted"))

        assert asyncio.run(scenario()) == 1
        assert hub.connection_count("owner-account") == 1

    def test_disconnect(self):
        hub = NotificationHub()
        socket = FakeWebSocket()

        asyncio.run(hub.connect("owner-account", socket))
        hub.disconnect("owner-account", socket)

        assert hub.connection_count("owner-account") == 0
        assert asyncio.run(hub.publish("owner-account", {"type": "noop"})) == 0


class TestEvents:

    def test_message_created(self):
        assert realtime.message_created("wamid.1", "+15551234567", "text") == {
            "type": "message.created",
            "message_id": "wamid.1",
            "party_id": "+15551234567",
            "message_type": "text",
        }

    def test_group_changed_member(self):
        event = realtime.group_changed("g1", "member_removed", "+15551234567")
        assert event["member_id"] == "+15551234567"


class TestWebSocketEndpoint:

    def test_connect_and_disconnect(self, client):
        with client.websocket_connect("/ws?account_id=owner-account") as websocket:
            websocket.send_text("ping")
            assert realtime.hub.connection_count("owner-account") >= 1
