"""Dashboard service: wires the analytics components together and owns their lifecycle."""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..config import Settings
from ..models import (
    ConversationRecord,
    ConversationStateEntry,
    ConversationStateResponse,
    DataResponse,
    FastUpdateResponse,
    HealthResponse,
    RefreshResponse,
    SessionResponse,
)
from ..notifications import NotificationManager, WebSocketServer
from ..utils.logger import get_app_logger
from ..utils.timefmt import timestamp_fields, utc_now
from .conversation_analyzer import ConversationAnalyzer
from .conversation_store import ConversationStore, StoreSnapshot
from .data_cache import DataCache
from .file_watcher import FileWatcher
from .performance_monitor import PerformanceMonitor
from .process_detector import ProcessDetector, ProcessLister, create_process_lister
from .state_calculator import StateCalculator


class DashboardService:
    """
    Owns every analytics component for one server process.

    Nothing here is module global: the FastAPI app keeps a single instance on
    ``app.state.dashboard`` and route handlers receive it through a
    dependency. ``start()``/``stop()`` are driven by the app lifespan.
    """

    def __init__(
        self,
        settings: Settings,
        process_lister: Optional[ProcessLister] = None,
    ):
        """
        Initialize the service.

        Args:
            settings: Application settings
            process_lister: Process source (defaults to the one named by settings)
        """
        self.settings = settings
        self.root_dir: Path = settings.get_claude_dir().resolve()
        self.logger = get_app_logger()

        lister = process_lister or create_process_lister(
            settings.process_lister,
            command_name=settings.process_command,
            exclusions=settings.get_process_exclusions(),
            timeout=settings.process_timeout,
        )
        self.cache = DataCache(default_ttl=settings.parsed_data_ttl, max_entries=settings.cache_max_entries)
        self.process_detector = ProcessDetector(lister, cache_ttl=settings.process_cache_ttl)
        self.state_calculator = StateCalculator(activity_threshold=settings.activity_threshold)
        self.analyzer = ConversationAnalyzer(
            self.root_dir,
            cache=self.cache,
            parsed_data_ttl=settings.parsed_data_ttl,
            computation_ttl=settings.computation_ttl,
        )
        self.store = ConversationStore(max_conversations=settings.max_conversations)
        self.websocket_server = WebSocketServer(
            heartbeat_interval=settings.heartbeat_interval,
            heartbeat_timeout=settings.heartbeat_timeout,
            max_queue_size=settings.websocket_queue_size,
            send_timeout=settings.websocket_send_timeout,
        )
        self.notifications = NotificationManager(
            self.websocket_server,
            state_change_throttle=settings.state_change_throttle,
            data_refresh_throttle=settings.data_refresh_throttle,
            process_change_throttle=settings.process_change_throttle,
            file_change_throttle=settings.file_change_throttle,
            refresh_request_throttle=settings.refresh_request_throttle,
            history_size=settings.notification_history_size,
        )
        self.file_watcher = FileWatcher(
            debounce_seconds=settings.debounce_seconds,
            process_refresh_interval=settings.process_refresh_interval,
            data_refresh_interval=settings.data_refresh_interval,
        )
        self.monitor = PerformanceMonitor(
            error_threshold=settings.health_error_threshold,
            memory_threshold_mb=settings.health_memory_threshold_mb,
        )

        self._sweep_task: Optional[asyncio.Task] = None
        self._unsubscribe_refresh = None
        self._known_pids: Optional[set] = None
        self.is_running = False

    # === Lifecycle ===

    async def start(self) -> None:
        """
        Load the initial data and start background work.

        Raises:
            FileNotFoundError: If the conversation directory does not exist
        """
        if self.is_running:
            return

        if not self.root_dir.is_dir():
            raise FileNotFoundError(f"Conversation directory not found: {self.root_dir}")

        await self.load_initial_data(source="startup")

        self.websocket_server.start()
        self.notifications.start_periodic_cleanup()
        self._unsubscribe_refresh = self.notifications.subscribe("refresh_requested", self._on_refresh_requested)

        if self.settings.enable_file_watcher:
            self.file_watcher.watch(
                self.root_dir,
                on_data_change=self.handle_file_changes,
                on_process_refresh=self.refresh_processes,
                cache=self.cache,
            )

        self._sweep_task = asyncio.create_task(self._cache_sweep_loop())
        self.is_running = True
        self.logger.info(f"[Dashboard] started, watching {self.root_dir}")

    async def stop(self) -> None:
        """Stop background work and release every watcher, task and client."""
        await self.file_watcher.stop()

        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None

        if self._unsubscribe_refresh:
            self._unsubscribe_refresh()
            self._unsubscribe_refresh = None

        await self.websocket_server.stop()
        await self.notifications.shutdown()
        self.is_running = False
        self.logger.info("[Dashboard] stopped")

    async def _cache_sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cache_sweep_interval)
            removed = self.cache.evict_expired()
            if removed:
                self.logger.debug(f"[Dashboard] swept {removed} expired cache entries")

    # === Data refresh paths ===

    async def load_initial_data(self, source: str = "system") -> StoreSnapshot:
        """
        Full reload: parse every file (cache permitting), match processes,
        classify and replace the store. Emits state-change, new-message and
        data-refresh notifications relative to the previous snapshot.
        """
        previous = self.store.snapshot()
        result = await self.analyzer.load_all(self.state_calculator, self.process_detector)
        snapshot = await self.store.replace(
            result.conversations,
            result.summary,
            active_projects=result.active_projects,
            detailed_token_usage=result.detailed_token_usage,
        )

        await self._announce_changes(previous.conversations, snapshot.conversations, source)
        await self.notifications.notify_data_refresh({
            "summary": snapshot.summary.model_dump(mode="json", by_alias=True),
            "conversationCount": len(snapshot.conversations),
        }, source=source)
        return snapshot

    async def refresh(self) -> StoreSnapshot:
        """Manual refresh: fresh process detection plus a full reload."""
        self.process_detector.clear_cache()
        return await self.load_initial_data(source="manual")

    async def handle_file_changes(self, paths: List[Path]) -> None:
        """
        Watcher callback. The cache entries of ``paths`` are already
        invalidated, so the reload only re-parses those files.
        """
        source = "file_change" if paths else "periodic"
        for path in paths:
            await self.notifications.notify_file_change(str(path), "modified")

        try:
            await self.load_initial_data(source=source)
        except Exception as e:
            self.monitor.record_error("reload", str(e))
            self.logger.error(f"[Dashboard] reload after file changes failed: {e}")

    async def fast_update(self) -> StoreSnapshot:
        """
        Medium-cost tier: re-detect processes, re-read only the conversations
        with a matched process, recompute every state.
        """
        processes = await self.process_detector.detect_running_agent_processes()
        snapshot = self.store.snapshot()
        matches = self.process_detector.match_conversations(snapshot.conversations, processes)

        reloaded: Dict[str, ConversationRecord] = {}
        for record in snapshot.conversations:
            if record.id in matches:
                reloaded[record.id] = await self._reload_record(record)

        def build(current: StoreSnapshot):
            # A full reload may have landed while files were being read; keep whichever copy is newer.
            records = []
            for record in current.conversations:
                fresh = reloaded.get(record.id)
                if fresh is not None and fresh.last_modified >= record.last_modified:
                    record = fresh
                records.append(record)

            records = self.analyzer.classify(records, processes, self.state_calculator, self.process_detector)
            summary = self.analyzer.summarize(
                records,
                current.active_projects,
                skipped_lines=current.summary.skipped_lines,
                skipped_files=current.summary.skipped_files,
                degraded_files=current.summary.degraded_files,
                active_process_count=len(processes),
            )
            return records, summary

        base, updated = await self.store.merge(build)
        await self._announce_changes(base.conversations, updated.conversations, "fast_update")
        return updated

    async def _reload_record(self, record: ConversationRecord) -> ConversationRecord:
        try:
            loaded = await self.analyzer.load_conversation(Path(record.file_path))
        except (OSError, ValueError, TypeError) as e:
            self.logger.warning(f"[Dashboard] keeping previous data for {record.id}: {e}")
            return record
        return loaded.record

    async def refresh_processes(self) -> None:
        """Periodic process refresh: fresh detection, process-change notification, state update."""
        self.process_detector.clear_cache()
        processes = await self.process_detector.detect_running_agent_processes()

        pids = {process.pid for process in processes}
        if self._known_pids is not None and pids != self._known_pids:
            changed = pids.symmetric_difference(self._known_pids)
            await self.notifications.notify_process_change(
                [_dump(process) for process in processes],
                [{"pid": pid, "running": pid in pids} for pid in sorted(changed)],
            )
        self._known_pids = pids

        await self.fast_update()

    async def _on_refresh_requested(self, data: Dict[str, Any]) -> None:
        try:
            await self.refresh()
        except Exception as e:
            self.monitor.record_error("refresh_request", str(e), clientId=data.get("clientId"))

    async def _announce_changes(
        self,
        previous: Sequence[ConversationRecord],
        current: Sequence[ConversationRecord],
        source: str,
    ) -> None:
        before = {record.id: record for record in previous}
        for record in current:
            old = before.get(record.id)
            if old is None:
                continue

            if old.conversation_state != record.conversation_state:
                await self.notifications.notify_conversation_state_change(
                    record.id,
                    old.conversation_state.value,
                    record.conversation_state.value,
                    {"project": record.project, "source": source},
                )

            if record.message_count > old.message_count and record.messages:
                await self.notifications.notify_new_message(
                    record.id,
                    _dump(record.messages[-1]),
                    {"project": record.project, "messageCount": record.message_count},
                )

    # === Read models ===

    def data_payload(self) -> DataResponse:
        snapshot = self.store.snapshot()
        return DataResponse(
            conversations=list(snapshot.conversations),
            summary=snapshot.summary,
            active_projects=list(snapshot.active_projects),
            detailed_token_usage=snapshot.detailed_token_usage,
            last_update=self._last_update(snapshot),
            **timestamp_fields(),
        )

    def fast_update_payload(self, snapshot: StoreSnapshot) -> FastUpdateResponse:
        return FastUpdateResponse(
            conversations=list(snapshot.conversations),
            summary=snapshot.summary,
            last_update=self._last_update(snapshot),
            **timestamp_fields(),
        )

    async def conversation_states(self) -> ConversationStateResponse:
        """Quick tier: fresh processes, in-memory messages, no file access."""
        processes = await self.process_detector.detect_running_agent_processes()
        now = utc_now()
        conversations = self.store.snapshot().conversations
        matches = self.process_detector.match_conversations(conversations, processes)
        states = [
            ConversationStateEntry(
                id=record.id,
                project=record.project,
                state=self.state_calculator.quick_state_calculation(record, processes, now=now, matches=matches),
                **timestamp_fields(now),
            )
            for record in conversations
            if record.id in matches
        ]
        return ConversationStateResponse(active_states=states, **timestamp_fields(now))

    def refresh_payload(self) -> RefreshResponse:
        return RefreshResponse(success=True, message="Data refreshed", **timestamp_fields())

    def session_payload(self, conversation_id: str) -> Optional[SessionResponse]:
        record = self.store.get(conversation_id)
        if record is None:
            return None
        return SessionResponse(conversation=record, messages=record.messages, **timestamp_fields())

    def realtime_stats(self) -> Dict[str, Any]:
        snapshot = self.store.snapshot()
        return {
            "totalConversations": len(snapshot.conversations),
            "totalTokens": snapshot.summary.total_tokens,
            "activeProjects": snapshot.summary.active_projects,
            "lastActivity": snapshot.summary.last_activity.isoformat() if snapshot.summary.last_activity else None,
            "lastUpdate": self._last_update(snapshot),
            **timestamp_fields(),
        }

    def health(self) -> HealthResponse:
        self.monitor.sample_memory()
        stats = self.monitor.stats()
        return HealthResponse(
            status=self.monitor.health_status(stats),
            uptime=stats["uptime"],
            memory=stats["memory"],
            requests=stats["requests"],
            cache={"dataCache": self.cache.stats(), "fileWatcher": self.file_watcher.status()},
            errors=stats["errors"],
            **timestamp_fields(),
        )

    def metrics(self) -> Dict[str, Any]:
        return {
            **self.monitor.stats(),
            "dataCache": self.cache.stats(),
            "websocket": self.websocket_server.stats(),
            "processes": self.process_detector.get_process_stats(),
            **timestamp_fields(),
        }

    @staticmethod
    def _last_update(snapshot: StoreSnapshot) -> str:
        return (snapshot.last_update or utc_now()).isoformat()


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)
