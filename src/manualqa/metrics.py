"""
Request metrics for the manual Q&A API.

Keeps per-endpoint latency windows (for percentiles), error kinds and process
memory, and appends one JSON line per request to <METRICS_DIR>/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import psutil

from .config import METRICS_DIR
from .observability import get_logger

logger = get_logger(__name__)

LATENCY_WINDOW = 1000


@dataclass
class EndpointStats:
    requests: int = 0
    failures: int = 0
    latencies_ms: deque = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))

    def observe(self, latency_ms: float, success: bool):
        self.requests += 1
        if not success:
            self.failures += 1
        self.latencies_ms.append(float(latency_ms))

    def latency_summary(self) -> dict:
        if not self.latencies_ms:
            return {"avg_ms": 0.0, "p50_ms": 0.0, "p95_ms": 0.0, "max_ms": 0.0}
        window = np.fromiter(self.latencies_ms, dtype=np.float64)
        return {
            "avg_ms": round(float(window.mean()), 2),
            "p50_ms": round(float(np.percentile(window, 50)), 2),
            "p95_ms": round(float(np.percentile(window, 95)), 2),
            "max_ms": round(float(window.max()), 2),
        }


class MetricsCollector:
    """Thread-safe request metrics with a JSONL audit trail."""

    def __init__(self, log_dir: str | Path | None = None):
        self._lock = threading.Lock()
        self._started = time.time()
        self._overall = EndpointStats()
        self._endpoints: dict[str, EndpointStats] = {}
        self._error_kinds: Counter[str] = Counter()

        self._log_path = Path(log_dir or METRICS_DIR) / "metrics.jsonl"
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def record_request(
        self,
        endpoint: str,
        latency_ms: float,
        success: bool,
        error_kind: str | None = None,
    ) -> None:
        with self._lock:
            self._overall.observe(latency_ms, success)
            self._endpoints.setdefault(endpoint, EndpointStats()).observe(latency_ms, success)
            if not success:
                self._error_kinds[error_kind or "unknown"] += 1

        line = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "endpoint": endpoint,
            "latency_ms": round(latency_ms, 2),
            "success": success,
            "error_kind": error_kind,
        }
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(line, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("metrics_write_failed", path=str(self._log_path), error=str(exc))

    def get_summary(self) -> dict:
        with self._lock:
            total = self._overall.requests
            failures = self._overall.failures
            latency = self._overall.latency_summary()
            endpoints = {
                name: {"requests": stats.requests, "failures": stats.failures, **stats.latency_summary()}
                for name, stats in self._endpoints.items()
            }
            error_kinds = dict(self._error_kinds)

        uptime_s = time.time() - self._started
        memory = self._process.memory_info()
        return {
            "latency": latency,
            "throughput": {
                "total_requests": total,
                "requests_per_second": round(total / uptime_s, 4) if uptime_s > 0 else 0.0,
                "uptime_seconds": round(uptime_s, 1),
                "by_endpoint": endpoints,
            },
            "memory": {
                "rss_mb": round(memory.rss / (1024 * 1024), 1),
                "vms_mb": round(memory.vms / (1024 * 1024), 1),
            },
            "errors": {
                "count": failures,
                "rate_percent": round(failures / total * 100, 2) if total else 0.0,
                "by_kind": error_kinds,
            },
        }
