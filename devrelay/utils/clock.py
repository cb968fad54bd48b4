"""Centralised clock helpers.

Wall-clock time (``now_utc``) is used for anything shown to a client or
written to a trace. Idle/deadline arithmetic uses ``monotonic`` so a system
clock change cannot evict every session at once. Tests patch these two
functions instead of datetime/time.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return the current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def monotonic() -> float:
    """Seconds from an arbitrary fixed point; only differences are meaningful."""
    return time.monotonic()


def elapsed_ms(started: float) -> float:
    """Milliseconds since ``started`` (a ``monotonic()`` reading), rounded."""
    return round((time.monotonic() - started) * 1000, 1)
