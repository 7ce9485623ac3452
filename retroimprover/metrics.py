"""
Thread-safe in-memory metrics for the backend.

Tracks what the pipeline needs to be observable:
  - Ledger:  debits, purchases and refunds (count + credits moved)
  - Jobs:    submissions, polls and outcomes per job kind
  - Stages:  completed / refunded / rejected stage attempts
  - Errors:  last 50 failures for root-cause analysis

Data is ephemeral and resets on restart.
"""

import time
import threading
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)

_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'ledger.refund.count', 'jobs.video.timeout')."""
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(component: str, error_type: str, message: str, user_id: str = ""):
    """Keep a bounded log of recent failures."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "component": component,
            "error_type": error_type,
            "message": message[:300],
            "user_id": user_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            patterns[f"{err['component']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear everything. Used by tests."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _recent_errors.clear()
