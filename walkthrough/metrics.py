"""
Thread-safe in-memory metrics collector for the worker.

Tracks:
  - Traffic: counters by event ('requests.generation_start', 'rooms.completed')
  - Latency: duration samples per operation (p50 / p95)
  - Errors: failure counters + the last 50 errors for RCA
  - Saturation: gauges ('active_runs')

All data is ephemeral (resets on restart). The durable record of each run
lives in the videos table.
"""

import time
import threading
from collections import defaultdict
from typing import Dict, List

MAX_SAMPLES = 100
MAX_ERRORS = 50


class MetricsRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._latency_samples: Dict[str, List[float]] = defaultdict(list)
        self._gauges: Dict[str, float] = defaultdict(float)
        self._recent_errors: List[dict] = []
        self._started_at = time.time()

    def inc_counter(self, name: str, amount: int = 1):
        """Increment a counter (e.g. 'runs.completed', 'errors.VIDEO_RATE_LIMIT')."""
        with self._lock:
            self._counters[name] += amount

    def record_latency(self, operation: str, duration_ms: float):
        """Record a latency sample in milliseconds."""
        with self._lock:
            samples = self._latency_samples[operation]
            samples.append(duration_ms)
            if len(samples) > MAX_SAMPLES:
                self._latency_samples[operation] = samples[-MAX_SAMPLES:]

    def set_gauge(self, name: str, value: float):
        with self._lock:
            self._gauges[name] = value

    def add_gauge(self, name: str, delta: float):
        with self._lock:
            self._gauges[name] += delta

    def record_error(self, operation: str, error_code: str, message: str, project_id: str = ""):
        """Record an error for root-cause analysis."""
        with self._lock:
            self._counters[f"errors.{error_code}"] += 1
            self._recent_errors.append({
                "timestamp": time.time(),
                "operation": operation,
                "error_code": error_code,
                "message": message[:300],
                "project_id": project_id,
            })
            if len(self._recent_errors) > MAX_ERRORS:
                self._recent_errors.pop(0)

    def get_snapshot(self) -> dict:
        """Return a complete metrics snapshot for the /metrics endpoint."""
        now = time.time()

        with self._lock:
            latency_stats = {}
            for operation, samples in self._latency_samples.items():
                if not samples:
                    continue
                sorted_s = sorted(samples)
                n = len(sorted_s)
                latency_stats[operation] = {
                    "p50": sorted_s[n // 2],
                    "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                    "avg": sum(sorted_s) / n,
                    "count": n,
                }

            error_patterns: Dict[str, int] = defaultdict(int)
            for err in self._recent_errors:
                error_patterns[f"{err['operation']}:{err['error_code']}"] += 1

            return {
                "timestamp": now,
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "latency": latency_stats,
                "recent_errors": list(self._recent_errors[-10:]),  # Last 10 for display
                "error_patterns": dict(error_patterns),
                "uptime_seconds": now - self._started_at,
            }
