"""
Throttled Pipeline Base
=======================

Shared worker-thread scaffolding for the MJPEG and RTSP pipelines.

Each pipeline:
    - receives frames from the FrameBus through its own LatestFrameSlot
    - runs one encode worker thread, decoupled from the capture thread
    - skips frames arriving before its next due time, which advances by
      1000 / target_fps ms per accepted frame

Design Rules:
    - offer() never blocks (it is the FrameBus sink)
    - An encoder failure drops the current frame for this pipeline only
    - Target FPS changes are validated, never clamped
"""

import logging
import threading
from typing import Callable, Optional

import cv2
import numpy as np

from camrelay.stream.bus import LatestFrameSlot
from camrelay.stream.frame import Frame, monotonic_ms


logger = logging.getLogger(__name__)

_ROTATIONS = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}

# Clock jitter allowance when comparing against the next due time
_THROTTLE_TOLERANCE_MS = 1.0


class EncoderError(Exception):
    """Raised by an encoder collaborator when a frame cannot be encoded."""
    pass


def oriented_pixels(frame: Frame) -> np.ndarray:
    """Frame pixels rotated clockwise by the frame orientation."""
    rotation = _ROTATIONS.get(frame.orientation)
    if rotation is None:
        return frame.pixels
    return cv2.rotate(frame.pixels, rotation)


class PipelineMetrics:
    """Counters for pipeline observability."""

    __slots__ = (
        "frames_offered",
        "frames_throttled",
        "frames_idle",
        "frames_encoded",
        "encode_errors",
        "last_error",
    )

    def __init__(self) -> None:
        self.frames_offered: int = 0
        self.frames_throttled: int = 0
        self.frames_idle: int = 0
        self.frames_encoded: int = 0
        self.encode_errors: int = 0
        self.last_error: Optional[str] = None

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "frames_offered": self.frames_offered,
            "frames_throttled": self.frames_throttled,
            "frames_idle": self.frames_idle,
            "frames_encoded": self.frames_encoded,
            "encode_errors": self.encode_errors,
            "last_error": self.last_error,
        }


class ThrottledPipeline:
    """
    Base class for frame-rate limited encode pipelines.

    Subclasses implement `_has_consumers()` and `_encode_and_deliver()`.

    Attributes:
        name: Pipeline name (thread name suffix, logs)
        target_fps: Maximum accepted frames per second
        metrics: Operational counters
    """

    name = "pipeline"

    def __init__(
        self,
        target_fps: float,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self.set_target_fps(target_fps)
        self._clock = clock

        self._slot = LatestFrameSlot()
        self._thread: Optional[threading.Thread] = None
        self._running = threading.Event()
        self._next_due_ms: Optional[float] = None

        self.metrics = PipelineMetrics()

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    @property
    def target_fps(self) -> float:
        return self._target_fps

    @property
    def min_interval_ms(self) -> float:
        return 1000.0 / self._target_fps

    def set_target_fps(self, value: float) -> None:
        """
        Change the throttle rate.

        Raises:
            ValueError: If value is not positive
        """
        if value is None or value <= 0:
            raise ValueError(f"{self.name} target fps must be positive, got {value}")
        self._target_fps = float(value)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self.is_alive():
            logger.warning(f"{self.name} pipeline already running")
            return
        self._slot.reopen()
        self._running.set()
        self._next_due_ms = None
        self._thread = threading.Thread(
            target=self._run,
            name=f"encode-{self.name}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"{self.name} pipeline started: target {self._target_fps} fps")

    def stop(self, timeout: float = 2.0) -> None:
        self._running.clear()
        self._slot.close()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"{self.name} pipeline did not stop within {timeout}s")
            self._thread = None
        self._on_stopped()
        logger.info(f"{self.name} pipeline stopped")

    def restart(self) -> None:
        self.stop()
        self.start()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Frame path
    # -------------------------------------------------------------------------

    def offer(self, frame: Frame) -> None:
        """FrameBus sink: replace the pending frame, never block."""
        self.metrics.frames_offered += 1
        self._slot.put(frame)

    @property
    def overwritten_frames(self) -> int:
        """Frames replaced in the slot before the worker took them."""
        return self._slot.overwritten

    def process(self, frame: Frame) -> bool:
        """
        Run one frame through throttle, encode and delivery.

        Called by the worker thread; tests call it directly.

        Returns:
            True if the frame was encoded and handed on.
        """
        now = self._clock()
        interval = self.min_interval_ms
        if (
            self._next_due_ms is not None
            and now < self._next_due_ms - _THROTTLE_TOLERANCE_MS
        ):
            self.metrics.frames_throttled += 1
            return False

        if not self._has_consumers():
            self.metrics.frames_idle += 1
            return False

        # Advance the deadline by whole intervals so the average accepted
        # rate converges on target_fps; resync after a stall
        if self._next_due_ms is None or now - self._next_due_ms > interval:
            self._next_due_ms = now + interval
        else:
            self._next_due_ms += interval

        try:
            delivered = self._encode_and_deliver(frame, now)
        except EncoderError as e:
            self.metrics.encode_errors += 1
            self.metrics.last_error = str(e)
            logger.warning(f"{self.name} encode failed on frame {frame.sequence}: {e}")
            return False

        if delivered:
            self.metrics.frames_encoded += 1
        return delivered

    def _run(self) -> None:
        while self._running.is_set():
            frame = self._slot.take(timeout=0.5)
            if frame is None:
                continue
            try:
                self.process(frame)
            except Exception as e:
                self.metrics.last_error = str(e)
                logger.exception(f"{self.name} pipeline error on frame {frame.sequence}: {e}")

    # -------------------------------------------------------------------------
    # Subclass hooks
    # -------------------------------------------------------------------------

    def _has_consumers(self) -> bool:
        raise NotImplementedError

    def _encode_and_deliver(self, frame: Frame, now_ms: float) -> bool:
        raise NotImplementedError

    def _on_stopped(self) -> None:
        pass
