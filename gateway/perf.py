"""
RPC metrics via structured JSONL logging.

Usage:
    from gateway import perf

    perf.configure(Path("/var/log/signal-gateway"))

    # Record a timing
    perf.timing("rpc_call_ms", 45.2, account="+15551234567", method="send")

    # Increment a counter
    perf.incr("notifications_dropped", account="+15551234567")

    # Context manager for timing a block
    with perf.timed("provision_ms", slot=3):
        provisioner.provision(3, "+15551234567")

Metrics are written to <dir>/perf-YYYY-MM-DD.jsonl. Until configure() is
called with a directory, every call is a no-op.
"""

import json
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

SCHEMA_VERSION = 1
MAX_FILE_SIZE_MB = 100

PERF_DIR: Optional[Path] = None


def configure(perf_dir: Optional[Path]) -> None:
    """Point metrics at a directory, or disable them with None."""
    global PERF_DIR
    PERF_DIR = Path(perf_dir) if perf_dir else None


def _log_metric(metric: str, value: float, **labels: Any) -> None:
    """Append metric to daily JSONL file. Never raises."""
    if PERF_DIR is None:
        return
    try:
        PERF_DIR.mkdir(parents=True, exist_ok=True)
        path = PERF_DIR / f"perf-{datetime.now():%Y-%m-%d}.jsonl"

        if path.exists() and path.stat().st_size > MAX_FILE_SIZE_MB * 1024 * 1024:
            print(
                f"[perf] WARNING: {path} exceeds {MAX_FILE_SIZE_MB}MB, skipping",
                file=sys.stderr,
            )
            return

        entry = {
            "v": SCHEMA_VERSION,
            "ts": datetime.now().isoformat(),
            "metric": metric,
            "value": value,
            **labels,
        }
        with open(path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except Exception as e:
        print(f"[perf] WARNING: failed to log metric: {e}", file=sys.stderr)


def timing(metric: str, ms: float, **labels: Any) -> None:
    """Record a timing metric in milliseconds."""
    _log_metric(metric, ms, **labels)


def incr(metric: str, count: int = 1, **labels: Any) -> None:
    """Record a counter increment."""
    _log_metric(metric, count, **labels)


def gauge(metric: str, value: float, **labels: Any) -> None:
    """Record a gauge metric (current value)."""
    _log_metric(metric, value, **labels)


@contextmanager
def timed(metric: str, **labels: Any):
    """Context manager to time a block of code."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        timing(metric, elapsed_ms, **labels)


def error(error_type: str, **labels: Any) -> None:
    """Record an error occurrence."""
    incr("error_count", error_type=error_type, **labels)
