"""
Frame Bus
=========

Fans frames from the single producer out to every registered pipeline.

This module provides:
    - LatestFrameSlot: single-slot handoff that keeps only the newest frame
    - SinkRegistration: scoped registration handle (release on teardown)
    - FrameBus: publish() entry point called on the capture thread

Design Rules:
    - publish() never blocks on a consumer
    - A slow consumer only ever sees the most recent frame, never a backlog
    - The camera telemetry event is recorded before fan-out, for every frame
    - register/unregister are safe while publish() runs (copy-on-write)
"""

import logging
import threading
from typing import Callable, Optional, Tuple

from camrelay.stream.frame import Frame, monotonic_ms


logger = logging.getLogger(__name__)


class LatestFrameSlot:
    """
    Non-blocking "replace the pending frame" handoff.

    The producer calls put(); a consumer thread calls take(). If the
    consumer falls behind, the pending frame is overwritten and counted.

    Attributes:
        overwritten: Frames replaced before the consumer took them
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._frame: Optional[Frame] = None
        self._closed = False
        self.overwritten: int = 0

    def put(self, frame: Frame) -> bool:
        """
        Store the frame, replacing any pending one.

        Returns:
            True if the slot was empty, False if a pending frame was replaced.
        """
        with self._cond:
            replaced = self._frame is not None
            if replaced:
                self.overwritten += 1
            self._frame = frame
            self._cond.notify()
        return not replaced

    def take(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """
        Wait for a frame and remove it from the slot.

        Returns:
            The pending frame, or None on timeout or after close().
        """
        with self._cond:
            if self._frame is None and not self._closed:
                self._cond.wait(timeout=timeout)
            frame, self._frame = self._frame, None
            return frame

    def close(self) -> None:
        """Wake any waiting consumer."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        with self._cond:
            self._closed = False
            self._frame = None

    @property
    def pending(self) -> bool:
        with self._cond:
            return self._frame is not None


FrameSink = Callable[[Frame], None]


class SinkRegistration:
    """
    Handle returned by FrameBus.register().

    Must be released when the consumer is torn down; release() is
    idempotent and the handle works as a context manager.
    """

    def __init__(self, bus: "FrameBus", sink: FrameSink, name: str) -> None:
        self._bus = bus
        self.sink = sink
        self.name = name
        self.errors: int = 0
        self._released = False

    @property
    def active(self) -> bool:
        return not self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._bus.unregister(self)

    def __enter__(self) -> "SinkRegistration":
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"SinkRegistration(name={self.name!r}, active={self.active})"


class FrameBus:
    """
    Single-producer, many-consumer frame fan-out.

    Sinks must be non-blocking: pipelines register their
    LatestFrameSlot.put, the preview collaborator registers a callback
    that does its own handoff.

    Attributes:
        frames_published: Total frames published
        last_publish_ms: Monotonic time of the last publish

    Example:
        bus = FrameBus(on_frame=lambda ts: telemetry.record_event(Metric.CAMERA, ts))
        registration = bus.register(pipeline.offer, name="mjpeg")

        # Capture thread
        bus.publish(frame)

        # Teardown
        registration.release()
    """

    def __init__(
        self,
        on_frame: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        """
        Initialize the bus.

        Args:
            on_frame: Called with the publish timestamp before fan-out
                (camera FPS telemetry)
            clock: Monotonic millisecond clock
        """
        self._on_frame = on_frame
        self._clock = clock

        self._lock = threading.Lock()
        self._registrations: Tuple[SinkRegistration, ...] = ()

        self._latest: Optional[Frame] = None
        self.frames_published: int = 0
        self.last_publish_ms: Optional[float] = None

    def register(self, sink: FrameSink, name: str = "") -> SinkRegistration:
        """Register a non-blocking sink."""
        registration = SinkRegistration(self, sink, name or getattr(sink, "__qualname__", "sink"))
        with self._lock:
            self._registrations = self._registrations + (registration,)
        logger.info(f"FrameBus sink registered: {registration.name}")
        return registration

    def add_preview_callback(self, callback: FrameSink) -> SinkRegistration:
        """Register the preview collaborator's callback."""
        return self.register(callback, name="preview")

    def unregister(self, registration: SinkRegistration) -> bool:
        """
        Remove a sink. Idempotent.

        Returns:
            True if the sink was registered.
        """
        with self._lock:
            remaining = tuple(r for r in self._registrations if r is not registration)
            removed = len(remaining) != len(self._registrations)
            self._registrations = remaining
        registration._released = True
        if removed:
            logger.info(f"FrameBus sink unregistered: {registration.name}")
        return removed

    @property
    def sink_count(self) -> int:
        return len(self._registrations)

    @property
    def latest_frame(self) -> Optional[Frame]:
        return self._latest

    def frame_age_ms(self, now_ms: Optional[float] = None) -> Optional[float]:
        """Milliseconds since the last publish, or None if nothing was published."""
        if self.last_publish_ms is None:
            return None
        now = self._clock() if now_ms is None else now_ms
        return now - self.last_publish_ms

    def publish(self, frame: Frame) -> None:
        """
        Publish a frame to every sink.

        Called on the capture thread. Records the camera telemetry event
        first, then hands the frame to each sink. A failing sink is logged
        and skipped.
        """
        now = self._clock()
        if self._on_frame is not None:
            try:
                self._on_frame(now)
            except Exception as e:
                logger.error(f"Camera telemetry callback failed: {e}")

        self._latest = frame
        self.frames_published += 1
        self.last_publish_ms = now

        # Tuple read is atomic; concurrent register/unregister swap it
        for registration in self._registrations:
            try:
                registration.sink(frame)
            except Exception as e:
                registration.errors += 1
                logger.error(f"FrameBus sink {registration.name} failed on frame {frame.sequence}: {e}")
