"""
Observability Module
====================

Frame-rate telemetry for the camera, MJPEG and RTSP paths.

Components:
    - FpsWindow: sliding 2 s window, recomputed at most every 500 ms
    - TelemetryAggregator: three independent windows, MJPEG normalization,
      change-gated snapshot publishing
    - TelemetrySnapshot: published value type
"""

from camrelay.observability.fps import FpsWindow
from camrelay.observability.telemetry import (
    Metric,
    Subscription,
    TelemetryAggregator,
    TelemetrySnapshot,
)

__all__ = [
    "FpsWindow",
    "Metric",
    "Subscription",
    "TelemetryAggregator",
    "TelemetrySnapshot",
]
