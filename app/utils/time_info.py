"""
TIME INFORMATION UTILITY
========================

Timestamps for stored documents and timings for the stream summary.
Documents carry ISO-8601 UTC strings so they sort lexicographically;
stream timings use the monotonic clock so wall-clock jumps don't skew them.
"""

import datetime
import time


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with milliseconds, e.g. 2026-02-05T09:30:12.345+00:00."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds")


def monotonic_ms() -> float:
    """Milliseconds on the monotonic clock; only differences are meaningful."""
    return time.monotonic() * 1000.0


def elapsed_ms(started_ms: float) -> int:
    """Whole milliseconds since started_ms (a monotonic_ms() reading)."""
    return max(0, int(monotonic_ms() - started_ms))
