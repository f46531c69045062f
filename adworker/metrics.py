"""
Thread-safe in-memory metrics for the reconciler worker.

Tracks:
  - Sweeps: processed / completed / failed / network-deferred counters
  - Providers: submissions per task kind, status checks
  - Credits: refunds issued and refund failures
  - Errors: last 50 errors for RCA

All data is ephemeral (resets on restart). Durable history lives in the
project and credit_transactions tables.
"""

import time
import threading
from typing import Dict, List
from collections import defaultdict

_lock = threading.Lock()

# ── Counters ──────────────────────────────────────────────────────────────────
_counters: Dict[str, int] = defaultdict(int)

# ── Gauges ────────────────────────────────────────────────────────────────────
_gauges: Dict[str, float] = defaultdict(float)

# ── Error log (last 50 errors for RCA) ────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


# ── Public API ────────────────────────────────────────────────────────────────

def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'sweep.completed', 'provider.submit.video')."""
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    """Set a gauge value (e.g. 'last_sweep_at', 'last_sweep_candidates')."""
    with _lock:
        _gauges[name] = value


def record_error(source: str, error_type: str, message: str, project_id: str = ""):
    """Record an error for root-cause analysis."""
    with _lock:
        _counters[f"errors.{error_type}"] += 1
        _recent_errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_type": error_type,
            "message": message[:300],
            "project_id": project_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_snapshot() -> dict:
    """Return a metrics snapshot for the /metrics endpoint."""
    now = time.time()
    with _lock:
        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['source']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear everything. Used by tests."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _recent_errors.clear()
