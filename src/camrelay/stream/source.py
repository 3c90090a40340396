"""
Frame Sources
=============

Producers that feed the FrameBus from a dedicated capture thread.

Components:
    - FrameSource: Protocol every producer implements
    - SyntheticFrameSource: moving test pattern (no hardware needed)
    - OpenCvFrameSource: cv2.VideoCapture device or URL

The camera hardware itself is a black box; these sources only turn its
callbacks into Frame objects and call FrameBus.publish().
"""

import logging
import threading
import time
from typing import Optional, Protocol

import cv2
import numpy as np

from camrelay.stream.bus import FrameBus
from camrelay.stream.frame import Frame


logger = logging.getLogger(__name__)


class FrameSourceError(Exception):
    """Raised when a frame source cannot be opened."""
    pass


class FrameSource(Protocol):
    """Protocol for frame producers."""

    name: str

    def start(self) -> None:
        """Start the capture thread."""
        ...

    def stop(self) -> None:
        """Stop the capture thread and release the device."""
        ...

    def restart(self) -> None:
        """Stop, then start again. Raises FrameSourceError on failure."""
        ...

    def is_alive(self) -> bool:
        """True while the capture thread is running."""
        ...


class _ThreadedSource:
    """Capture thread scaffolding shared by the concrete sources."""

    name = "source"

    def __init__(self, bus: FrameBus, fps: float, orientation: int = 0) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        self.bus = bus
        self.fps = fps
        self.orientation = orientation

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._sequence: int = 0
        self.last_error: Optional[str] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning(f"{self.name} already running")
            return
        self._open()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"capture-{self.name}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"{self.name} started at {self.fps} fps")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        self._close()
        logger.info(f"{self.name} stopped")

    def restart(self) -> None:
        self.stop()
        self.start()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        period = 1.0 / self.fps
        next_time = time.monotonic()
        while not self._stop_event.is_set():
            try:
                pixels = self._read()
            except FrameSourceError as e:
                self.last_error = str(e)
                logger.error(f"{self.name} capture failed: {e}")
                break

            if pixels is not None:
                self._sequence += 1
                self.bus.publish(
                    Frame.from_array(pixels, self._sequence, orientation=self.orientation)
                )

            next_time += period
            delay = next_time - time.monotonic()
            if delay > 0:
                self._stop_event.wait(delay)
            else:
                next_time = time.monotonic()

    def _open(self) -> None:
        pass

    def _close(self) -> None:
        pass

    def _read(self) -> Optional[np.ndarray]:
        raise NotImplementedError


class SyntheticFrameSource(_ThreadedSource):
    """
    Moving color-bar test pattern.

    Used when no camera is attached and by integration smoke runs.
    """

    name = "synthetic"

    def __init__(
        self,
        bus: FrameBus,
        width: int = 640,
        height: int = 480,
        fps: float = 30.0,
        orientation: int = 0,
    ) -> None:
        super().__init__(bus, fps, orientation)
        self.width = width
        self.height = height
        self._bars = self._make_bars(width, height)

    @staticmethod
    def _make_bars(width: int, height: int) -> np.ndarray:
        colors = np.array(
            [
                [255, 255, 255], [0, 255, 255], [255, 255, 0], [0, 255, 0],
                [255, 0, 255], [0, 0, 255], [255, 0, 0], [0, 0, 0],
            ],
            dtype=np.uint8,
        )
        columns = (np.arange(width) * len(colors) // width).astype(np.intp)
        row = colors[columns]
        return np.repeat(row[np.newaxis, :, :], height, axis=0)

    def _read(self) -> Optional[np.ndarray]:
        shift = (self._sequence * 4) % self.width
        pixels = np.roll(self._bars, shift, axis=1)
        cv2.putText(
            pixels,
            f"#{self._sequence + 1}",
            (16, max(32, self.height // 8)),
            cv2.FONT_HERSHEY_SIMPLEX,
            1.0,
            (32, 32, 32),
            2,
        )
        return pixels


class OpenCvFrameSource(_ThreadedSource):
    """
    Camera or stream read through cv2.VideoCapture.

    Args:
        device: Device index ("0") or capture URL
    """

    name = "opencv"

    def __init__(
        self,
        bus: FrameBus,
        device: str = "0",
        width: int = 1280,
        height: int = 720,
        fps: float = 30.0,
        orientation: int = 0,
    ) -> None:
        super().__init__(bus, fps, orientation)
        self.device = device
        self.width = width
        self.height = height
        self._capture: Optional[cv2.VideoCapture] = None
        self._failed_reads: int = 0

    def _open(self) -> None:
        target = int(self.device) if self.device.isdigit() else self.device
        capture = cv2.VideoCapture(target)
        if not capture.isOpened():
            capture.release()
            raise FrameSourceError(f"Cannot open capture device {self.device!r}")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        capture.set(cv2.CAP_PROP_FPS, self.fps)
        self._capture = capture
        self._failed_reads = 0

    def _close(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None

    def _read(self) -> Optional[np.ndarray]:
        if self._capture is None:
            raise FrameSourceError("Capture device not open")
        ok, pixels = self._capture.read()
        if not ok or pixels is None:
            self._failed_reads += 1
            if self._failed_reads >= int(self.fps * 2):
                raise FrameSourceError(
                    f"{self._failed_reads} consecutive read failures on {self.device!r}"
                )
            return None
        self._failed_reads = 0
        return pixels


def create_frame_source(
    backend: str,
    bus: FrameBus,
    device: str = "0",
    width: int = 1280,
    height: int = 720,
    fps: float = 30.0,
    orientation: int = 0,
) -> FrameSource:
    """
    Create a frame source for the configured backend.

    Raises:
        ValueError: Unknown backend
    """
    if backend == "synthetic":
        logger.info("Using SyntheticFrameSource")
        return SyntheticFrameSource(bus, width=width, height=height, fps=fps, orientation=orientation)
    if backend == "opencv":
        logger.info(f"Using OpenCvFrameSource: device={device}")
        return OpenCvFrameSource(
            bus, device=device, width=width, height=height, fps=fps, orientation=orientation
        )
    raise ValueError(f"Unknown frame source backend: {backend}")
