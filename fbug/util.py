from __future__ import annotations

import time


def now_s() -> float:
    """Monotonic clock in seconds."""
    return time.monotonic()


def ms(value) -> float:
    """Milliseconds (None counts as zero) to seconds."""
    return float(value or 0) / 1000.0
