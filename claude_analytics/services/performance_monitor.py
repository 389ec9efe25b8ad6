"""Request, error and memory accounting for the health endpoint."""

import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional

import psutil
from fastapi import Request

from ..utils.logger import get_app_logger


BYTES_PER_MB = 1024 * 1024


def read_process_memory() -> Dict[str, int]:
    """Memory of the current process as reported by psutil."""
    info = psutil.Process().memory_info()
    return {"rss": info.rss, "vms": info.vms}


class PerformanceMonitor:
    """
    Keeps recent request, error and memory samples in bounded ring buffers.

    Stats are computed over a sliding window (five minutes by default).
    Health is ``degraded`` when the window holds more errors than
    ``error_threshold`` and ``warning`` when RSS exceeds
    ``memory_threshold_mb``; the memory check wins.
    """

    def __init__(
        self,
        error_threshold: int = 10,
        memory_threshold_mb: float = 300.0,
        window_seconds: float = 300.0,
        max_samples: int = 1000,
        clock: Callable[[], float] = time.time,
        memory_reader: Callable[[], Dict[str, int]] = read_process_memory,
    ):
        self.error_threshold = error_threshold
        self.memory_threshold_mb = memory_threshold_mb
        self.window_seconds = window_seconds
        self._clock = clock
        self._memory_reader = memory_reader
        self.started_at = clock()
        self.requests: Deque[Dict[str, Any]] = deque(maxlen=max_samples)
        self.errors: Deque[Dict[str, Any]] = deque(maxlen=max_samples)
        self.memory: Deque[Dict[str, Any]] = deque(maxlen=max_samples)
        self.counters: Dict[str, int] = defaultdict(int)
        self.logger = get_app_logger()

    def record_request(self, endpoint: str, duration_ms: float, status_code: int) -> None:
        self.requests.append({
            "endpoint": endpoint,
            "duration": duration_ms,
            "statusCode": status_code,
            "success": 200 <= status_code < 400,
            "timestamp": self._clock(),
        })
        self.counters["total_requests"] += 1
        if status_code >= 400:
            self.counters["error_requests"] += 1

    def record_error(self, kind: str, message: str, **metadata: Any) -> None:
        self.errors.append({"type": kind, "message": message, "timestamp": self._clock(), **metadata})
        self.counters[f"error_{kind}"] += 1
        self.logger.error(f"[PerformanceMonitor] error recorded: {kind} - {message}")

    def sample_memory(self) -> Optional[Dict[str, Any]]:
        try:
            sample = dict(self._memory_reader())
        except (psutil.Error, OSError) as e:
            self.logger.warning(f"[PerformanceMonitor] memory sampling failed: {e}")
            return None

        sample["timestamp"] = self._clock()
        self.memory.append(sample)
        return sample

    def stats(self) -> Dict[str, Any]:
        """Aggregates over the recent window."""
        cutoff = self._clock() - self.window_seconds
        requests = [r for r in self.requests if r["timestamp"] > cutoff]
        errors = [e for e in self.errors if e["timestamp"] > cutoff]
        memory = [m for m in self.memory if m["timestamp"] > cutoff]

        return {
            "uptime": round(self._clock() - self.started_at, 3),
            "requests": {
                "total": len(requests),
                "successful": sum(1 for r in requests if r["success"]),
                "errors": sum(1 for r in requests if not r["success"]),
                "averageResponseTime": _average(requests, "duration"),
                "endpointStats": _count_by(requests, "endpoint"),
            },
            "errors": {
                "total": len(errors),
                "byType": _count_by(errors, "type"),
            },
            "memory": {
                "current": memory[-1] if memory else None,
                "averageRss": _average(memory, "rss"),
                "peakRss": max((m["rss"] for m in memory), default=0),
            },
            "counters": dict(self.counters),
        }

    def health_status(self, stats: Dict[str, Any]) -> str:
        status = "healthy"
        if stats["errors"]["total"] > self.error_threshold:
            status = "degraded"
        current = stats["memory"]["current"]
        if current and current["rss"] > self.memory_threshold_mb * BYTES_PER_MB:
            status = "warning"
        return status

    async def http_middleware(self, request: Request, call_next):
        """FastAPI ``http`` middleware recording duration and status of every request."""
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            self.record_request(request.url.path, (time.perf_counter() - start) * 1000, 500)
            self.record_error("request", str(e), endpoint=request.url.path)
            raise

        self.record_request(request.url.path, (time.perf_counter() - start) * 1000, response.status_code)
        return response


def _average(items: List[Dict[str, Any]], key: str) -> float:
    if not items:
        return 0
    return round(sum(item.get(key) or 0 for item in items) / len(items), 2)


def _count_by(items: List[Dict[str, Any]], key: str) -> Dict[str, int]:
    counts: Dict[str, int] = defaultdict(int)
    for item in items:
        counts[str(item.get(key))] += 1
    return dict(counts)
