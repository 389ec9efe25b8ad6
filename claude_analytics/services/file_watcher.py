"""File watcher for conversation logs, based on watchfiles (async native)."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from watchfiles import awatch, Change

from ..utils.debouncer import Debouncer
from .data_cache import DataCache

DataChangeCallback = Callable[[List[Path]], Awaitable[None]]
ProcessRefreshCallback = Callable[[], Awaitable[None]]

logger = logging.getLogger(__name__)


def jsonl_filter(change: Change, path: str) -> bool:
    return path.endswith(".jsonl")


class FileWatcher:
    """
    Watches the log root recursively and turns bursts of file events into a
    single data-change callback.

    Changed paths are collected while the debouncer is armed. When it fires,
    every pending path is invalidated in the cache first, then
    ``on_data_change(paths)`` is awaited. Two periodic tasks run alongside:
    a process refresh and a full data refresh (``on_data_change([])``).
    """

    def __init__(
        self,
        debounce_seconds: float = 0.2,
        process_refresh_interval: float = 30.0,
        data_refresh_interval: float = 120.0,
        debouncer_factory: Optional[Callable[..., Debouncer]] = None,
    ):
        self.debounce_seconds = debounce_seconds
        self.process_refresh_interval = process_refresh_interval
        self.data_refresh_interval = data_refresh_interval
        self._debouncer_factory = debouncer_factory or Debouncer

        self.root: Optional[Path] = None
        self.cache: Optional[DataCache] = None
        self.debouncer: Optional[Debouncer] = None
        self._on_data_change: Optional[DataChangeCallback] = None
        self._on_process_refresh: Optional[ProcessRefreshCallback] = None
        self._pending: Set[Path] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False
        self.event_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def watch(
        self,
        root: Path,
        on_data_change: DataChangeCallback,
        on_process_refresh: Optional[ProcessRefreshCallback] = None,
        cache: Optional[DataCache] = None,
    ) -> None:
        """
        Start watching ``root``. Must be called from a running event loop.

        Args:
            root: Directory watched recursively for ``*.jsonl`` changes
            on_data_change: Awaited with the changed paths after each debounce
            on_process_refresh: Awaited every ``process_refresh_interval``
            cache: Cache invalidated for each changed path before the callback
        """
        if self._running:
            logger.warning("[FileWatcher] already running")
            return

        self.root = Path(root)
        self.cache = cache
        self._on_data_change = on_data_change
        self._on_process_refresh = on_process_refresh
        self._stop_event = asyncio.Event()
        self.debouncer = self._debouncer_factory(self.debounce_seconds, self._flush)
        self._running = True

        self._tasks["watch"] = asyncio.create_task(self._watch_loop())
        if on_process_refresh is not None:
            self._tasks["process_refresh"] = asyncio.create_task(
                self._periodic("process_refresh", self.process_refresh_interval, on_process_refresh)
            )
        self._tasks["data_refresh"] = asyncio.create_task(
            self._periodic("data_refresh", self.data_refresh_interval, self._full_refresh)
        )
        logger.info(f"[FileWatcher] watching directory: {self.root}")

    async def stop(self) -> None:
        """Cancel every task, set the stop event and forget all state."""
        if not self._running and not self._tasks:
            return

        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self.debouncer:
            self.debouncer.cancel()

        tasks = list(self._tasks.items())
        self._tasks.clear()
        for name, task in tasks:
            task.cancel()
        for name, task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                logger.debug(f"[FileWatcher] cancelled task: {name}")
            except Exception:
                logger.exception(f"[FileWatcher] task {name} failed during shutdown")

        self._pending.clear()
        self.debouncer = None
        self._stop_event = None
        self._on_data_change = None
        self._on_process_refresh = None
        logger.info("[FileWatcher] stopped")

    async def handle_changes(self, changes: Iterable[Tuple[Change, str]]) -> None:
        """Record a batch of raw file events and (re)arm the debouncer."""
        batch = [Path(changed_path) for _, changed_path in changes if changed_path.endswith(".jsonl")]
        if not batch or self.debouncer is None:
            return

        self.event_count += len(batch)
        self._pending.update(batch)
        self.debouncer.arm()

    def status(self) -> Dict[str, Any]:
        return {
            "active": self._running,
            "root": str(self.root) if self.root else None,
            "tasks": sorted(self._tasks),
            "pendingPaths": len(self._pending),
            "eventCount": self.event_count,
            "debounceFires": self.debouncer.fire_count if self.debouncer else 0,
        }

    async def _flush(self) -> None:
        paths = sorted(self._pending)
        self._pending.clear()
        if not paths:
            return

        if self.cache is not None:
            for path in paths:
                self.cache.invalidate_file(str(path))

        logger.debug(f"[FileWatcher] {len(paths)} changed files")
        if self._on_data_change is not None:
            await self._on_data_change(paths)

    async def _full_refresh(self) -> None:
        if self._on_data_change is not None:
            await self._on_data_change([])

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(
                self.root,
                watch_filter=jsonl_filter,
                stop_event=self._stop_event,
                debounce=max(50, int(self.debounce_seconds * 1000)),
            ):
                try:
                    await self.handle_changes(changes)
                except Exception:
                    logger.exception(f"[FileWatcher] error handling changes under {self.root}")
        except asyncio.CancelledError:
            logger.debug(f"[FileWatcher] watch loop cancelled for: {self.root}")
            raise
        except Exception:
            logger.exception(f"[FileWatcher] watch loop error for: {self.root}")

    async def _periodic(self, name: str, interval: float, callback: Callable[[], Awaitable[None]]) -> None:
        while True:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await callback()
            except Exception:
                logger.exception(f"[FileWatcher] periodic {name} failed")
