"""
Thread-safe in-memory metrics for the queue consumers.

Tracks per handler:
  - Traffic:    deliveries by outcome (`tasks.{handler}.ok` / `.failed` / `.dead_letter`)
  - Latency:    delivery duration samples
  - Saturation: queue depth and in-flight gauges (refreshed on /metrics)
  - Errors:     the most recent failures for RCA

All data is ephemeral (resets on restart). Durable state lives on the
video and bulk-job records.
"""

import time
import threading
from typing import Dict, List
from collections import defaultdict

_lock = threading.Lock()

# ── Counters ──────────────────────────────────────────────────────────────────
_counters: Dict[str, int] = defaultdict(int)

# ── Latency samples (last 100 per handler) ───────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# ── Gauges ────────────────────────────────────────────────────────────────────
_gauges: Dict[str, float] = defaultdict(float)

# ── Error log (last 50 errors for RCA) ────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'tasks.image_generate.ok')."""
    with _lock:
        _counters[name] += amount


def record_latency(handler: str, duration_ms: float):
    """Record a delivery latency sample in milliseconds."""
    with _lock:
        samples = _latency_samples[handler]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[handler] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    """Set a gauge value (e.g. 'queue_depth.voice_generate')."""
    with _lock:
        _gauges[name] = value


def record_error(handler: str, task_id: str, message: str):
    """Record a failed delivery for root-cause analysis."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "handler": handler,
            "task_id": task_id,
            "message": message[:300],
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_snapshot() -> dict:
    """Return a complete metrics snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for handler, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[handler] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[err["handler"]] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear everything (tests)."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()
