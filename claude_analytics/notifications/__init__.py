"""Real-time notification delivery."""

from .websocket_server import (
    WebSocketServer,
    ClientConnection,
    ConnectionState,
    CHANNELS,
    CONVERSATION_UPDATES,
    DATA_UPDATES,
    PROCESS_UPDATES,
    SYSTEM_UPDATES,
)
from .notification_manager import NotificationManager, FILE_UPDATES

__all__ = [
    "WebSocketServer",
    "ClientConnection",
    "ConnectionState",
    "CHANNELS",
    "CONVERSATION_UPDATES",
    "DATA_UPDATES",
    "PROCESS_UPDATES",
    "SYSTEM_UPDATES",
    "FILE_UPDATES",
    "NotificationManager",
]
