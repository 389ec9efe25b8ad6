"""Typed notifications with per-entity throttling, history and local subscribers."""

import asyncio
import inspect
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from ..utils.logger import get_app_logger
from ..utils.timefmt import timestamp_fields
from .websocket_server import (
    WebSocketServer,
    CONVERSATION_UPDATES,
    DATA_UPDATES,
    PROCESS_UPDATES,
    SYSTEM_UPDATES,
)

FILE_UPDATES = "file_updates"

Subscriber = Callable[[Dict[str, Any]], Any]


class NotificationManager:
    """
    Builds notifications, throttles them per entity key, records them in a
    bounded history, and fans them out to WebSocket clients and in-process
    subscribers.

    Throttle keys are scoped to the entity: ``state_<conversation id>``,
    ``data_refresh``, ``process_change``, ``file_<path>``. Two events for
    different conversations never throttle each other.
    """

    def __init__(
        self,
        websocket_server: Optional[WebSocketServer] = None,
        state_change_throttle: float = 1.0,
        data_refresh_throttle: float = 1.0,
        process_change_throttle: float = 5.0,
        file_change_throttle: float = 2.0,
        refresh_request_throttle: float = 5.0,
        history_size: int = 1000,
        cleanup_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.websocket_server = websocket_server
        self.state_change_throttle = state_change_throttle
        self.data_refresh_throttle = data_refresh_throttle
        self.process_change_throttle = process_change_throttle
        self.file_change_throttle = file_change_throttle
        self.refresh_request_throttle = refresh_request_throttle
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self.history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self.subscribers: Dict[str, List[Subscriber]] = {}
        self.throttle_map: Dict[str, float] = {}
        self.throttled_count = 0
        self._cleanup_task: Optional[asyncio.Task] = None
        self.logger = get_app_logger()

        if websocket_server is not None:
            websocket_server.on("refresh_requested", self.handle_refresh_request)

    # === Notifications ===

    async def notify_conversation_state_change(
        self,
        conversation_id: str,
        old_state: Optional[str],
        new_state: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Announce a conversation's state transition.

        Returns:
            False if the notification was throttled
        """
        if self.is_throttled(f"state_{conversation_id}", self.state_change_throttle):
            self.logger.debug(f"[NotificationManager] throttling state change for {conversation_id}")
            return False

        metadata = metadata or {}
        notification = self._build(
            "conversation_state_change",
            conversationId=conversation_id,
            oldState=old_state,
            newState=new_state,
            metadata=metadata,
        )
        await self._dispatch(notification, CONVERSATION_UPDATES, {
            "conversationId": conversation_id,
            "newState": new_state,
            "oldState": old_state,
            **metadata,
        })
        self.logger.info(f"[NotificationManager] state change: {conversation_id} {old_state} -> {new_state}")
        return True

    async def notify_data_refresh(self, data: Dict[str, Any], source: str = "system") -> bool:
        if self.is_throttled("data_refresh", self.data_refresh_throttle):
            self.logger.debug("[NotificationManager] throttling data refresh notification")
            return False

        notification = self._build("data_refresh", data=data, source=source)
        await self._dispatch(notification, DATA_UPDATES, data)
        self.logger.debug(f"[NotificationManager] data refreshed (source: {source})")
        return True

    async def notify_new_message(
        self,
        conversation_id: str,
        message: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """New messages are never throttled."""
        metadata = metadata or {}
        notification = self._build(
            "new_message", conversationId=conversation_id, message=message, metadata=metadata
        )
        await self._dispatch(notification, CONVERSATION_UPDATES, {
            "conversationId": conversation_id,
            "message": message,
            "metadata": metadata,
        })
        return True

    async def notify_process_change(
        self,
        processes: Sequence[Dict[str, Any]],
        changed_processes: Sequence[Dict[str, Any]],
    ) -> bool:
        if self.is_throttled("process_change", self.process_change_throttle):
            return False

        notification = self._build(
            "process_change", processes=list(processes), changedProcesses=list(changed_processes)
        )
        await self._dispatch(notification, PROCESS_UPDATES, {
            "processes": list(processes),
            "changedProcesses": list(changed_processes),
        })
        if changed_processes:
            self.logger.info(f"[NotificationManager] process changes detected: {len(changed_processes)}")
        return True

    async def notify_file_change(self, file_path: str, change_type: str) -> bool:
        if self.is_throttled(f"file_{file_path}", self.file_change_throttle):
            return False

        notification = self._build("file_change", filePath=file_path, changeType=change_type)
        await self._dispatch(notification, FILE_UPDATES, {"filePath": file_path, "changeType": change_type})
        return True

    async def notify_system_status(self, status: Dict[str, Any], level: str = "info") -> bool:
        notification = self._build("system_status", status=status, level=level)
        await self._dispatch(notification, SYSTEM_UPDATES, {**status, "level": level})

        log = self.logger.error if level == "error" else self.logger.warning if level == "warning" else self.logger.info
        log(f"[NotificationManager] system status: {status.get('message', status)}")
        return True

    async def create_batch(self, notifications: Sequence[Dict[str, Any]], batch_type: str = "batch") -> bool:
        """Send several notifications as one message to every client."""
        if not notifications:
            return False

        notification = self._build(batch_type, notifications=list(notifications), count=len(notifications))
        await self._dispatch(notification, None, {"notifications": list(notifications), "count": len(notifications)})
        return True

    async def handle_refresh_request(self, data: Dict[str, Any]) -> bool:
        """
        Relay a client's refresh request to local ``refresh_requested`` subscribers.

        One key covers all clients: a refresh reloads everything, so a second
        request inside the window would repeat the same work.

        Returns:
            False if the request was throttled
        """
        client_id = data.get("clientId")
        if self.is_throttled("refresh_request", self.refresh_request_throttle):
            self.logger.info(f"[NotificationManager] throttling refresh request from {client_id}")
            return False

        self.logger.info(f"[NotificationManager] refresh requested by client: {client_id}")
        await self._notify_subscribers("refresh_requested", {
            "clientId": client_id,
            **timestamp_fields(),
        })
        return True

    # === Subscribers ===

    def subscribe(self, notification_type: str, callback: Subscriber) -> Callable[[], None]:
        """
        Register a local subscriber (sync or async callable).

        Returns:
            A function that removes the subscription
        """
        self.subscribers.setdefault(notification_type, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self.subscribers.get(notification_type, [])
            self.subscribers[notification_type] = [cb for cb in callbacks if cb is not callback]
            if not self.subscribers[notification_type]:
                del self.subscribers[notification_type]

        return unsubscribe

    async def _notify_subscribers(self, notification_type: str, notification: Dict[str, Any]) -> None:
        for callback in list(self.subscribers.get(notification_type, [])):
            try:
                result = callback(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception(f"[NotificationManager] subscriber error for {notification_type}")

    # === Throttling ===

    def is_throttled(self, key: str, window: float) -> bool:
        """
        True if ``key`` fired less than ``window`` seconds ago. Otherwise
        records this call as the key's latest firing.
        """
        now = self._clock()
        last = self.throttle_map.get(key)
        if last is not None and now - last < window:
            self.throttled_count += 1
            return True

        self.throttle_map[key] = now
        return False

    def cleanup_throttle_map(self) -> int:
        """Drop throttle entries older than ten default windows. Returns the number removed."""
        max_age = self.state_change_throttle * 10
        now = self._clock()
        stale = [key for key, last in self.throttle_map.items() if now - last > max_age]
        for key in stale:
            del self.throttle_map[key]
        return len(stale)

    def start_periodic_cleanup(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop_periodic_cleanup(self) -> None:
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup_throttle_map()

    async def shutdown(self) -> None:
        await self.stop_periodic_cleanup()
        self.subscribers.clear()
        self.throttle_map.clear()
        self.logger.info("[NotificationManager] shut down")

    # === History ===

    def get_history(self, notification_type: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        history = [n for n in self.history if notification_type is None or n["type"] == notification_type]
        return history[-limit:] if limit > 0 else []

    def clear_history(self, notification_type: Optional[str] = None) -> None:
        if notification_type is None:
            self.history.clear()
        else:
            kept = [n for n in self.history if n["type"] != notification_type]
            self.history.clear()
            self.history.extend(kept)
        self.logger.info(
            f"[NotificationManager] cleared history{f' for type: {notification_type}' if notification_type else ''}"
        )

    def stats(self) -> Dict[str, Any]:
        type_count: Dict[str, int] = {}
        for notification in self.history:
            type_count[notification["type"]] = type_count.get(notification["type"], 0) + 1

        ws = self.websocket_server
        return {
            "historySize": len(self.history),
            "maxHistorySize": self.history.maxlen,
            "subscriberCount": sum(len(callbacks) for callbacks in self.subscribers.values()),
            "typeCount": type_count,
            "throttleMapSize": len(self.throttle_map),
            "throttledCount": self.throttled_count,
            "webSocketConnected": ws.is_running if ws else False,
            "webSocketClients": len(ws.clients) if ws else 0,
        }

    # === Internals ===

    def _build(self, notification_type: str, **fields: Any) -> Dict[str, Any]:
        return {
            "type": notification_type,
            "id": f"notif_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            **fields,
            **timestamp_fields(),
        }

    async def _dispatch(self, notification: Dict[str, Any], channel: Optional[str], payload: Dict[str, Any]) -> None:
        self.history.append(notification)
        if self.websocket_server is not None:
            await self.websocket_server.broadcast({"type": notification["type"], "data": payload}, channel)
        await self._notify_subscribers(notification["type"], notification)
