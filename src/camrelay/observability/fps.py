"""
FPS Window
==========

Bounded sliding-time-window rate estimator.

One FpsWindow is kept per measured quantity (camera callbacks, MJPEG
deliveries, RTSP encodes). Each window owns its lock so that recording on
one metric never contends with another.

Formula:
    rate = (count - 1) * 1000 / (newest - oldest)

    computed over the timestamps retained in the last `window_ms`,
    at most once per `recompute_ms`.

Design Rules:
    - Eviction happens before every insertion-triggered recomputation
    - Retained timestamps are non-decreasing and >= latest - window_ms
    - Fewer than 2 samples or a zero time span keep the previous rate
"""

import threading
from collections import deque
from typing import Deque, Optional


class FpsWindow:
    """
    Sliding-window frame rate estimator.

    All timestamps are monotonic milliseconds supplied by the caller, which
    keeps the estimator deterministic under test.

    Attributes:
        window_ms: Length of the retention window
        recompute_ms: Minimum spacing between recomputations
        rate: Last computed rate (events per second)

    Example:
        window = FpsWindow()
        for ts in range(0, 3000, 100):
            window.record(ts)
        print(window.rate)  # ~10.0
    """

    def __init__(self, window_ms: float = 2000.0, recompute_ms: float = 500.0) -> None:
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if recompute_ms <= 0:
            raise ValueError("recompute_ms must be positive")

        self.window_ms = window_ms
        self.recompute_ms = recompute_ms

        self._lock = threading.Lock()
        self._timestamps: Deque[float] = deque()
        self._rate: float = 0.0
        self._last_computed_ms: Optional[float] = None
        self._recompute_count: int = 0

    @property
    def rate(self) -> float:
        """Last computed rate in events per second."""
        with self._lock:
            return self._rate

    @property
    def size(self) -> int:
        """Number of retained timestamps."""
        with self._lock:
            return len(self._timestamps)

    @property
    def recompute_count(self) -> int:
        """How many times the rate has been recomputed."""
        with self._lock:
            return self._recompute_count

    def timestamps(self) -> list:
        """Copy of the retained timestamps, oldest first."""
        with self._lock:
            return list(self._timestamps)

    def record(self, timestamp_ms: float) -> Optional[float]:
        """
        Record one event and recompute the rate if due.

        Args:
            timestamp_ms: Monotonic time of the event

        Returns:
            The newly computed rate, or None if no recomputation happened.
        """
        with self._lock:
            # Keep the sequence non-decreasing when callers race on the clock
            if self._timestamps and timestamp_ms < self._timestamps[-1]:
                timestamp_ms = self._timestamps[-1]

            self._timestamps.append(timestamp_ms)
            cutoff = timestamp_ms - self.window_ms
            while self._timestamps and self._timestamps[0] < cutoff:
                self._timestamps.popleft()

            if len(self._timestamps) < 2:
                return None

            if (
                self._last_computed_ms is not None
                and timestamp_ms - self._last_computed_ms < self.recompute_ms
            ):
                return None

            span = self._timestamps[-1] - self._timestamps[0]
            if span <= 0:
                return None

            self._rate = (len(self._timestamps) - 1) * 1000.0 / span
            self._last_computed_ms = timestamp_ms
            self._recompute_count += 1
            return self._rate

    def reset(self) -> None:
        """Clear all samples and force the rate to exactly 0."""
        with self._lock:
            self._timestamps.clear()
            self._rate = 0.0
            self._last_computed_ms = None
