"""
Stream Module
=============

Frame model, fan-out bus, client bookkeeping and frame sources.

This module provides the ingestion and distribution layer:
    - Frame: immutable captured frame
    - FrameBus: non-blocking single-producer fan-out
    - LatestFrameSlot: newest-frame-wins handoff used by pipelines
    - ClientRegistry / StreamClient: connected consumers per protocol
    - create_frame_source: synthetic or OpenCV capture producer

Example:
    from camrelay.stream import ClientRegistry, FrameBus, StreamProtocol

    registry = ClientRegistry()
    bus = FrameBus()
    client = registry.register(StreamProtocol.MJPEG, remote="10.0.0.5")
"""

from camrelay.stream.frame import Frame, monotonic_ms
from camrelay.stream.clients import (
    ClientLimitReached,
    ClientRegistry,
    StreamClient,
    StreamProtocol,
)
from camrelay.stream.bus import FrameBus, LatestFrameSlot, SinkRegistration


__all__ = [
    "Frame",
    "monotonic_ms",
    "ClientLimitReached",
    "ClientRegistry",
    "StreamClient",
    "StreamProtocol",
    "FrameBus",
    "LatestFrameSlot",
    "SinkRegistration",
]
