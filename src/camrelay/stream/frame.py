"""
Frame Data Model
=================

Internal frame representation shared by every pipeline.

This module defines the typed Frame class that is the interface between
the frame source and the encode pipelines.

Design Rules:
    - This is the ONLY frame format passed to pipelines
    - Pixel buffers are made read-only on construction
    - Pipelines borrow frames concurrently and never copy them in place
"""

import time
from dataclasses import dataclass
from typing import Optional

import numpy as np


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds, used for every frame/telemetry timestamp."""
    return time.monotonic() * 1000.0


@dataclass(frozen=True, slots=True)
class Frame:
    """
    Captured frame from the frame source.

    It is immutable (frozen, read-only pixels) so that the MJPEG and RTSP
    pipelines can read it from different threads at the same time.

    Attributes:
        pixels: BGR image, shape (height, width, 3), dtype uint8
        width: Width in pixels
        height: Height in pixels
        orientation: Rotation to apply before encoding (0, 90, 180, 270)
        timestamp_ms: Monotonic capture time in milliseconds
        sequence: Producer frame counter
    """

    pixels: np.ndarray
    width: int
    height: int
    orientation: int
    timestamp_ms: float
    sequence: int

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 3:
            raise ValueError(f"Frame pixels must be HxWx3, got {self.pixels.shape}")
        if self.pixels.shape[0] != self.height or self.pixels.shape[1] != self.width:
            raise ValueError(
                f"Frame size {self.width}x{self.height} does not match "
                f"pixel buffer {self.pixels.shape[1]}x{self.pixels.shape[0]}"
            )
        if self.orientation not in (0, 90, 180, 270):
            raise ValueError(f"Unsupported orientation: {self.orientation}")
        self.pixels.flags.writeable = False

    @classmethod
    def from_array(
        cls,
        pixels: np.ndarray,
        sequence: int,
        orientation: int = 0,
        timestamp_ms: Optional[float] = None,
    ) -> "Frame":
        """
        Build a frame from a BGR array, stamping it with the monotonic clock.

        Args:
            pixels: BGR image array
            sequence: Producer frame counter
            orientation: Rotation to apply before encoding
            timestamp_ms: Capture time; defaults to now

        Returns:
            New immutable Frame
        """
        height, width = pixels.shape[:2]
        return cls(
            pixels=pixels,
            width=width,
            height=height,
            orientation=orientation,
            timestamp_ms=monotonic_ms() if timestamp_ms is None else timestamp_ms,
            sequence=sequence,
        )

    def __repr__(self) -> str:
        """Compact repr that doesn't dump the pixel buffer."""
        return (
            f"Frame(sequence={self.sequence}, "
            f"size={self.width}x{self.height}, "
            f"orientation={self.orientation}, "
            f"timestamp_ms={self.timestamp_ms:.1f})"
        )
