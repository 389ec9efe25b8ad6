"""WebSocket connection registry with channel subscriptions and heartbeat."""

import asyncio
import inspect
import json
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Set

from ..utils.logger import get_app_logger
from ..utils.timefmt import timestamp_fields, utc_now

SERVER_NAME = "Claude Code Analytics"

CONVERSATION_UPDATES = "conversation_updates"
DATA_UPDATES = "data_updates"
PROCESS_UPDATES = "process_updates"
SYSTEM_UPDATES = "system_updates"
CHANNELS = (CONVERSATION_UPDATES, DATA_UPDATES, PROCESS_UPDATES, SYSTEM_UPDATES)


class ClientSocket(Protocol):
    """The subset of ``fastapi.WebSocket`` the server relies on."""

    async def accept(self) -> None: ...

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class ClientConnection:
    """One connected client and its subscriptions."""

    client_id: str
    websocket: ClientSocket
    connected_at: float
    last_heartbeat: float
    channels: Set[str] = field(default_factory=set)
    state: ConnectionState = ConnectionState.CONNECTING


EventCallback = Callable[[Dict[str, Any]], Any]


class WebSocketServer:
    """
    Tracks connected dashboard clients and pushes messages to them.

    Transport agnostic: anything with ``accept``/``send_json``/``close``
    (a FastAPI ``WebSocket`` in production, a fake in tests) can be
    registered. A failure talking to one client only drops that client.
    """

    def __init__(
        self,
        heartbeat_interval: float = 30.0,
        heartbeat_timeout: float = 60.0,
        max_queue_size: int = 100,
        send_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the server.

        Args:
            heartbeat_interval: Seconds between heartbeat checks / pings
            heartbeat_timeout: Seconds of client silence before it is dropped
            max_queue_size: Broadcasts kept while nobody is connected
            send_timeout: Seconds one send may take before the client is dropped
            clock: Monotonic clock, injectable for tests
        """
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.send_timeout = send_timeout
        self._clock = clock
        self.clients: Dict[str, ClientConnection] = {}
        self.message_queue: Deque[Dict[str, Any]] = deque(maxlen=max_queue_size)
        self._listeners: Dict[str, List[EventCallback]] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._started_at: Optional[float] = None
        self.is_running = False
        self.logger = get_app_logger()

    # === Lifecycle ===

    def start(self) -> None:
        """Start the heartbeat loop. Must be called from a running event loop."""
        if self.is_running:
            return
        self.is_running = True
        self._started_at = self._clock()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self.logger.info("[WebSocketServer] started")

    async def stop(self) -> None:
        """Stop the heartbeat and close every client."""
        self.is_running = False
        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
        self._heartbeat_task = None

        for client_id in list(self.clients):
            await self.disconnect(client_id, close_socket=True, code=1001)
        self.logger.info("[WebSocketServer] stopped")

    # === Connections ===

    async def connect(self, websocket: ClientSocket) -> ClientConnection:
        """
        Accept and register a client, send the welcome message and replay queued broadcasts.

        Returns:
            The registered connection
        """
        now = self._clock()
        client = ClientConnection(
            client_id=self._generate_client_id(),
            websocket=websocket,
            connected_at=now,
            last_heartbeat=now,
        )
        await websocket.accept()
        client.state = ConnectionState.OPEN
        self.clients[client.client_id] = client
        self.logger.info(
            f"[WebSocketServer] client connected: {client.client_id} ({len(self.clients)} total)"
        )

        await self.send_to_client(client.client_id, {
            "type": "connection",
            "data": {
                "clientId": client.client_id,
                "serverTime": utc_now().isoformat(),
                "message": f"Connected to {SERVER_NAME} WebSocket",
            },
        })
        await self._send_queued_messages(client.client_id)
        await self._emit("client_connected", {"clientId": client.client_id})
        return client

    async def disconnect(self, client_id: str, close_socket: bool = False, code: int = 1000) -> None:
        """Forget a client, optionally closing its socket first."""
        client = self.clients.pop(client_id, None)
        if client is None:
            return

        if close_socket and client.state == ConnectionState.OPEN:
            try:
                await client.websocket.close(code=code)
            except Exception as e:
                self.logger.debug(f"[WebSocketServer] error closing {client_id}: {e}")
        client.state = ConnectionState.CLOSED
        self.logger.info(
            f"[WebSocketServer] client disconnected: {client_id} ({len(self.clients)} remaining)"
        )
        await self._emit("client_disconnected", {"clientId": client_id})

    # === Inbound messages ===

    async def handle_message(self, client_id: str, raw: str) -> None:
        """
        Process one inbound text frame.

        Any inbound frame counts as a heartbeat. Malformed frames produce an
        ``error`` reply to that client only.
        """
        client = self.clients.get(client_id)
        if client is None:
            return

        client.last_heartbeat = self._clock()

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            self.logger.warning(f"[WebSocketServer] invalid JSON from {client_id}")
            await self.send_to_client(client_id, {"type": "error", "data": {"message": "Invalid JSON message"}})
            return

        if not isinstance(data, dict):
            await self.send_to_client(client_id, {"type": "error", "data": {"message": "Message must be an object"}})
            return

        message_type = data.get("type")
        if message_type == "subscribe":
            await self.subscribe(client_id, data.get("channel"))
        elif message_type == "unsubscribe":
            await self.unsubscribe(client_id, data.get("channel"))
        elif message_type == "ping":
            await self.send_to_client(client_id, {"type": "pong"})
        elif message_type == "pong":
            pass
        elif message_type == "refresh_request":
            self.logger.info(f"[WebSocketServer] refresh requested by {client_id}")
            await self._emit("refresh_requested", {"clientId": client_id})
        else:
            self.logger.warning(f"[WebSocketServer] unknown message type from {client_id}: {message_type}")
            await self.send_to_client(client_id, {
                "type": "error",
                "data": {"message": f"Unknown message type: {message_type}"},
            })

    async def subscribe(self, client_id: str, channel: Optional[str]) -> bool:
        client = self.clients.get(client_id)
        if client is None or not channel:
            return False

        client.channels.add(channel)
        self.logger.info(f"[WebSocketServer] {client_id} subscribed to {channel}")
        await self.send_to_client(client_id, {
            "type": "subscription_confirmed",
            "data": {"channel": channel, "subscriptions": sorted(client.channels)},
        })
        return True

    async def unsubscribe(self, client_id: str, channel: Optional[str]) -> bool:
        client = self.clients.get(client_id)
        if client is None or not channel:
            return False

        client.channels.discard(channel)
        self.logger.info(f"[WebSocketServer] {client_id} unsubscribed from {channel}")
        await self.send_to_client(client_id, {
            "type": "unsubscription_confirmed",
            "data": {"channel": channel, "subscriptions": sorted(client.channels)},
        })
        return True

    # === Outbound messages ===

    async def broadcast(self, message: Dict[str, Any], channel: Optional[str] = None) -> int:
        """
        Send a message to every open client (subscribed to ``channel`` if given).

        With no client connected at all the message is queued for the next one.
        Clients are sent to concurrently, so a slow client delays the
        broadcast by at most ``send_timeout``.

        Returns:
            Number of clients the message was delivered to
        """
        if not self.clients:
            self.message_queue.append({**message, "queuedAt": utc_now().isoformat()})
            return 0

        payload = self._stamp(message)
        targets = [
            client for client in list(self.clients.values())
            if not channel or channel in client.channels
        ]
        results = await asyncio.gather(*(self._send(client, payload) for client in targets))
        return sum(1 for delivered in results if delivered)

    async def send_to_client(self, client_id: str, message: Dict[str, Any]) -> bool:
        client = self.clients.get(client_id)
        if client is None:
            return False
        return await self._send(client, self._stamp(message))

    async def _send(self, client: ClientConnection, payload: Dict[str, Any]) -> bool:
        if client.state != ConnectionState.OPEN:
            return False
        try:
            await asyncio.wait_for(client.websocket.send_json(payload), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            self.logger.warning(
                f"[WebSocketServer] send to {client.client_id} timed out after {self.send_timeout}s, dropping client"
            )
            await self.disconnect(client.client_id)
            return False
        except Exception as e:
            self.logger.error(f"[WebSocketServer] error sending to {client.client_id}: {e}")
            await self.disconnect(client.client_id)
            return False

    async def _send_queued_messages(self, client_id: str) -> None:
        if not self.message_queue:
            return

        queued = list(self.message_queue)
        self.message_queue.clear()
        self.logger.info(f"[WebSocketServer] sending {len(queued)} queued messages to {client_id}")
        for message in queued:
            await self.send_to_client(client_id, {
                **message,
                "type": f"queued_{message.get('type')}",
                "wasQueued": True,
            })

    @staticmethod
    def _stamp(message: Dict[str, Any]) -> Dict[str, Any]:
        return {**message, **timestamp_fields(), "server": SERVER_NAME}

    # === Heartbeat ===

    async def check_heartbeats(self) -> List[str]:
        """
        Drop clients silent for longer than ``heartbeat_timeout`` and ping the rest.

        Returns:
            Ids of the clients that were dropped
        """
        now = self._clock()
        dropped = []
        for client_id, client in list(self.clients.items()):
            if now - client.last_heartbeat > self.heartbeat_timeout:
                self.logger.warning(f"[WebSocketServer] terminating unresponsive client: {client_id}")
                await self.disconnect(client_id, close_socket=True, code=1001)
                dropped.append(client_id)
            else:
                await self.send_to_client(client_id, {"type": "ping"})
        return dropped

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.check_heartbeats()
            except Exception:
                self.logger.exception("[WebSocketServer] heartbeat check failed")

    # === Events ===

    def on(self, event: str, callback: EventCallback) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: EventCallback) -> None:
        self._listeners[event] = [cb for cb in self._listeners.get(event, []) if cb is not callback]

    async def _emit(self, event: str, data: Dict[str, Any]) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception(f"[WebSocketServer] listener error for event {event}")

    # === Stats ===

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "isRunning": self.is_running,
            "clientCount": len(self.clients),
            "queuedMessages": len(self.message_queue),
            "clients": [
                {
                    "id": client.client_id,
                    "state": client.state.value,
                    "subscriptions": sorted(client.channels),
                    "connectedFor": round(now - client.connected_at, 3),
                    "lastHeartbeatAgo": round(now - client.last_heartbeat, 3),
                }
                for client in self.clients.values()
            ],
            "uptime": round(now - self._started_at, 3) if self.is_running and self._started_at else 0,
        }

    @staticmethod
    def _generate_client_id() -> str:
        return f"client_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
