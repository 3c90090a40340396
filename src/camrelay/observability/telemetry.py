"""
Telemetry Aggregator
====================

Owns the three FPS metrics and publishes change-gated snapshots.

Metrics:
    - camera: every frame source callback (before any throttling)
    - mjpeg: one event per client per delivered JPEG, normalized by the
      current MJPEG client count into the per-client experienced rate
    - rtsp: one event per encoded access unit, NOT normalized (encode cost
      is the same whatever the number of sessions)

Publishing:
    A snapshot is pushed to subscribers only when one of its fields moved
    by more than `publish_threshold` from the last published snapshot.

Design Rules:
    - Each metric has its own FpsWindow and lock
    - No global telemetry lock
    - Subscribers are scoped registrations released explicitly
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from camrelay.observability.fps import FpsWindow
from camrelay.stream.clients import StreamProtocol


logger = logging.getLogger(__name__)


class Metric(str, Enum):
    """Measured quantities."""

    CAMERA = "camera"
    MJPEG = "mjpeg"
    RTSP = "rtsp"


_METRIC_PROTOCOL = {
    Metric.MJPEG: StreamProtocol.MJPEG,
    Metric.RTSP: StreamProtocol.RTSP,
}


@dataclass(frozen=True, slots=True)
class TelemetrySnapshot:
    """Published FPS values."""

    camera_fps: float = 0.0
    mjpeg_fps: float = 0.0
    rtsp_fps: float = 0.0

    def differs_from(self, other: "TelemetrySnapshot", threshold: float) -> bool:
        """True if any field moved by more than `threshold`."""
        return (
            abs(self.camera_fps - other.camera_fps) > threshold
            or abs(self.mjpeg_fps - other.mjpeg_fps) > threshold
            or abs(self.rtsp_fps - other.rtsp_fps) > threshold
        )

    def to_dict(self) -> dict:
        """Export as dict with rounded values."""
        return {
            "camera_fps": round(self.camera_fps, 2),
            "mjpeg_fps": round(self.mjpeg_fps, 2),
            "rtsp_fps": round(self.rtsp_fps, 2),
        }


SnapshotCallback = Callable[[TelemetrySnapshot], None]


class Subscription:
    """Handle for a snapshot subscriber. Release it when the consumer goes away."""

    def __init__(self, aggregator: "TelemetryAggregator", callback: SnapshotCallback) -> None:
        self._aggregator = aggregator
        self.callback = callback
        self._released = False

    @property
    def active(self) -> bool:
        return not self._released

    def release(self) -> None:
        """Remove the subscriber. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        self._aggregator._remove_subscription(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class TelemetryAggregator:
    """
    Aggregates camera, MJPEG and RTSP frame rates.

    Attributes:
        publish_threshold: Hysteresis band for publishing snapshots

    Example:
        telemetry = TelemetryAggregator(client_count=registry.count)
        registry.add_count_listener(telemetry.on_client_count)

        telemetry.record_event(Metric.CAMERA, monotonic_ms())
        print(telemetry.latest_snapshot())
    """

    def __init__(
        self,
        client_count: Callable[[StreamProtocol], int],
        window_ms: float = 2000.0,
        recompute_ms: float = 500.0,
        publish_threshold: float = 0.5,
    ) -> None:
        """
        Initialize the aggregator.

        Args:
            client_count: Returns the live client count for a protocol
            window_ms: FpsWindow retention length
            recompute_ms: FpsWindow recompute cadence
            publish_threshold: Minimum change before a snapshot is pushed
        """
        if publish_threshold < 0:
            raise ValueError("publish_threshold must be >= 0")

        self._client_count = client_count
        self.publish_threshold = publish_threshold

        self._windows: Dict[Metric, FpsWindow] = {
            metric: FpsWindow(window_ms=window_ms, recompute_ms=recompute_ms)
            for metric in Metric
        }

        self._publish_lock = threading.Lock()
        self._last_published = TelemetrySnapshot()
        self._published_count: int = 0

        self._subscriptions_lock = threading.Lock()
        self._subscriptions: List[Subscription] = []

        logger.info(
            f"TelemetryAggregator initialized: window={window_ms}ms, "
            f"recompute={recompute_ms}ms, threshold={publish_threshold}"
        )

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def window(self, metric: Metric) -> FpsWindow:
        """Direct access to a metric's window."""
        return self._windows[metric]

    def record_event(self, metric: Metric, timestamp_ms: float) -> None:
        """
        Record one event for a metric.

        Args:
            metric: Which quantity the event belongs to
            timestamp_ms: Monotonic time of the event
        """
        if self._windows[metric].record(timestamp_ms) is not None:
            self._maybe_publish()

    def check_and_reset(self, metric: Metric) -> bool:
        """
        Force a metric to 0 if its client count is zero.

        Without this an idle metric would keep its last value, since no
        further events arrive to trigger a recomputation.

        Returns:
            True if the metric was reset.
        """
        protocol = _METRIC_PROTOCOL.get(metric)
        if protocol is None or self._client_count(protocol) > 0:
            return False

        logger.debug(f"{metric.value} fps reset: no clients")
        self.reset(metric)
        return True

    def reset(self, metric: Metric) -> None:
        """Force a metric to 0 regardless of clients (e.g. the source stopped)."""
        self._windows[metric].reset()
        self._maybe_publish()

    def on_client_count(self, protocol: StreamProtocol, count: int) -> None:
        """ClientRegistry listener: reset the protocol's metric when it empties."""
        if count != 0:
            return
        for metric, metric_protocol in _METRIC_PROTOCOL.items():
            if metric_protocol == protocol:
                self.check_and_reset(metric)

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    @property
    def current_camera_fps(self) -> float:
        return self._windows[Metric.CAMERA].rate

    @property
    def current_mjpeg_fps(self) -> float:
        """Per-client MJPEG rate: aggregate deliveries divided by client count."""
        clients = self._client_count(StreamProtocol.MJPEG)
        if clients <= 0:
            return 0.0
        return self._windows[Metric.MJPEG].rate / clients

    @property
    def current_rtsp_fps(self) -> float:
        return self._windows[Metric.RTSP].rate

    def latest_snapshot(self) -> TelemetrySnapshot:
        """Current values, whether or not they have been published."""
        return TelemetrySnapshot(
            camera_fps=self.current_camera_fps,
            mjpeg_fps=self.current_mjpeg_fps,
            rtsp_fps=self.current_rtsp_fps,
        )

    @property
    def last_published(self) -> TelemetrySnapshot:
        with self._publish_lock:
            return self._last_published

    @property
    def published_count(self) -> int:
        with self._publish_lock:
            return self._published_count

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def subscribe(self, callback: SnapshotCallback) -> Subscription:
        """
        Register a snapshot subscriber.

        Args:
            callback: Called with each published TelemetrySnapshot

        Returns:
            Subscription handle; call release() (or use it as a context
            manager) when the subscriber goes away.
        """
        subscription = Subscription(self, callback)
        with self._subscriptions_lock:
            self._subscriptions.append(subscription)
        return subscription

    @property
    def subscriber_count(self) -> int:
        with self._subscriptions_lock:
            return len(self._subscriptions)

    def _remove_subscription(self, subscription: Subscription) -> None:
        with self._subscriptions_lock:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass

    def _maybe_publish(self) -> Optional[TelemetrySnapshot]:
        snapshot = self.latest_snapshot()
        with self._publish_lock:
            if not snapshot.differs_from(self._last_published, self.publish_threshold):
                return None
            self._last_published = snapshot
            self._published_count += 1

        with self._subscriptions_lock:
            subscriptions = list(self._subscriptions)

        for subscription in subscriptions:
            try:
                subscription.callback(snapshot)
            except Exception as e:
                logger.error(f"Telemetry subscriber failed: {e}")
        return snapshot
