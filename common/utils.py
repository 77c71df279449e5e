from __future__ import annotations

import math
import time


def floor_ratio(width: int, height: int, scale: int = 10) -> int:
    """
    Truncated aspect ratio: floor((width / height) * scale).

    scale=10 gives the one-decimal ratio used for variant matching,
    scale=100 the two-decimal ratio used for aspect-preserving resize.
    A zero height yields 0.
    """
    if height <= 0:
        return 0
    return int(math.floor((float(width) / float(height)) * scale))


def clamp(v: int, lo: int, hi: int) -> int:
    return int(min(hi, max(lo, v)))


def timer_ms(func):
    """
    Decorator that returns (result, elapsed_ms) for benchmarking small functions.
    """
    def wrapper(*args, **kwargs):
        t0 = time.perf_counter()
        out = func(*args, **kwargs)
        dt_ms = (time.perf_counter() - t0) * 1e3
        return out, dt_ms
    return wrapper
