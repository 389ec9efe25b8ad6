"""Tests for the WebSocket endpoint."""

import pytest
from fastapi.testclient import TestClient

from claude_analytics.main import create_app
from claude_analytics.services import DashboardService

from factories import FakeLister


@pytest.fixture
def ws_client(claude_root, make_settings):
    dashboard = DashboardService(make_settings(claude_dir=str(claude_root)), process_lister=FakeLister())
    return TestClient(create_app(dashboard)), dashboard


class TestWebSocketEndpoint:
    """SUT: /ws"""

    def test_connect_receives_welcome(self, ws_client):
        """The first frame is the connection message with the client id."""
        client, dashboard = ws_client
        with client.websocket_connect("/ws") as ws:
            message = ws.receive_json()
            assert message["type"] == "connection"
            assert message["data"]["clientId"] in dashboard.websocket_server.clients

    def test_ping_and_subscribe(self, ws_client):
        """Ping gets pong; subscribe is confirmed."""
        client, _ = ws_client
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

            ws.send_json({"type": "subscribe", "channel": "conversation_updates"})
            confirmed = ws.receive_json()
            assert confirmed["type"] == "subscription_confirmed"
            assert confirmed["data"]["channel"] == "conversation_updates"

    def test_invalid_frame(self, ws_client):
        """Garbage frames get an error and keep the connection open."""
        client, _ = ws_client
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("not json")
            assert ws.receive_json()["type"] == "error"
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_disconnect_unregisters(self, ws_client):
        """Closing the socket removes the client."""
        client, dashboard = ws_client
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert len(dashboard.websocket_server.clients) == 1
        assert dashboard.websocket_server.clients == {}
