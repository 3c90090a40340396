"""
MJPEG Pipeline
==============

Throttles, JPEG-encodes once, and fans each encoded frame out to every
registered MJPEG client queue.

Backpressure Policy:
    Newest-frame-wins with per-client isolation. A full client queue drops
    the frame for that client only; no blocking, no retry. A client that
    reaches `max_consecutive_drops` is handed to `on_slow_client`, which
    belongs to the connection owner and closes it normally.

Telemetry:
    One MJPEG event per successful per-client push. The aggregator divides
    by the client count to recover the per-client rate.
"""

import logging
from typing import Callable, Optional

import cv2
import numpy as np

from camrelay.observability.telemetry import Metric, TelemetryAggregator
from camrelay.pipeline.base import EncoderError, ThrottledPipeline, oriented_pixels
from camrelay.stream.clients import ClientRegistry, StreamClient, StreamProtocol
from camrelay.stream.frame import Frame, monotonic_ms


logger = logging.getLogger(__name__)


class JpegEncodeError(EncoderError):
    """Raised when OpenCV fails to produce a JPEG buffer."""
    pass


class JpegEncoder:
    """
    OpenCV JPEG encoder.

    Applies the frame orientation, then encodes with the configured quality.
    """

    def __init__(self, quality: int = 75) -> None:
        if not 1 <= quality <= 100:
            raise ValueError("quality must be in [1, 100]")
        self.quality = quality

    def encode(self, frame: Frame) -> bytes:
        """
        Encode a frame to JPEG bytes.

        Raises:
            JpegEncodeError: If encoding fails
        """
        pixels = oriented_pixels(frame)

        try:
            ok, buffer = cv2.imencode(
                ".jpg", pixels, [int(cv2.IMWRITE_JPEG_QUALITY), self.quality]
            )
        except cv2.error as e:
            raise JpegEncodeError(f"cv2.imencode raised on frame {frame.sequence}: {e}")

        if not ok:
            raise JpegEncodeError(f"cv2.imencode returned failure on frame {frame.sequence}")
        return np.asarray(buffer).tobytes()


SlowClientHandler = Callable[[StreamClient], None]


class MjpegPipeline(ThrottledPipeline):
    """
    MJPEG encode and fan-out pipeline.

    Attributes:
        latest_jpeg: Last encoded frame (served by the snapshot endpoint)
        max_consecutive_drops: Eviction threshold for slow clients

    Example:
        pipeline = MjpegPipeline(registry, telemetry, target_fps=10)
        bus.register(pipeline.offer, name="mjpeg")
        pipeline.start()
    """

    name = "mjpeg"

    def __init__(
        self,
        registry: ClientRegistry,
        telemetry: TelemetryAggregator,
        target_fps: float = 10.0,
        encoder: Optional[JpegEncoder] = None,
        max_consecutive_drops: int = 50,
        on_slow_client: Optional[SlowClientHandler] = None,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        """
        Initialize the MJPEG pipeline.

        Args:
            registry: Source of the live MJPEG client set
            telemetry: Receives one MJPEG event per client delivery
            target_fps: Maximum encoded frames per second
            encoder: JPEG encoder (default quality 75)
            max_consecutive_drops: Drops before a client is reported slow
            on_slow_client: Called once when a client crosses the threshold
            clock: Monotonic millisecond clock
        """
        if max_consecutive_drops < 1:
            raise ValueError("max_consecutive_drops must be >= 1")

        super().__init__(target_fps=target_fps, clock=clock)
        self.registry = registry
        self.telemetry = telemetry
        self.encoder = encoder or JpegEncoder()
        self.max_consecutive_drops = max_consecutive_drops
        self._on_slow_client = on_slow_client or self._evict

        self.latest_jpeg: Optional[bytes] = None
        self.deliveries: int = 0
        self.drops: int = 0
        self.evictions: int = 0

    def _has_consumers(self) -> bool:
        return self.registry.count(StreamProtocol.MJPEG) > 0

    def _encode_and_deliver(self, frame: Frame, now_ms: float) -> bool:
        jpeg = self.encoder.encode(frame)
        self.latest_jpeg = jpeg

        for client in self.registry.snapshot(StreamProtocol.MJPEG):
            if client.offer(jpeg):
                client.record_delivery(len(jpeg), now_ms)
                self.deliveries += 1
                self.telemetry.record_event(Metric.MJPEG, now_ms)
                continue

            if client.closed:
                continue

            self.drops += 1
            drops = client.record_drop()
            logger.debug(f"MJPEG client {client.client_id} queue full, dropped frame {frame.sequence}")
            if drops == self.max_consecutive_drops:
                logger.warning(
                    f"MJPEG client {client.client_id} too slow "
                    f"({drops} consecutive drops), disconnecting"
                )
                self.evictions += 1
                try:
                    self._on_slow_client(client)
                except Exception as e:
                    logger.error(f"Slow client handler failed for {client.client_id}: {e}")
        return True

    def _evict(self, client: StreamClient) -> None:
        self.registry.unregister(client, reason="too slow")

    def metrics_dict(self) -> dict:
        """Pipeline counters plus delivery totals."""
        return {
            **self.metrics.to_dict(),
            "target_fps": self.target_fps,
            "deliveries": self.deliveries,
            "drops": self.drops,
            "evictions": self.evictions,
            "overwritten_frames": self.overwritten_frames,
        }
