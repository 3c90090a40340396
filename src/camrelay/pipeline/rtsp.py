"""
RTSP Pipeline
=============

Throttles and H.264-encodes frames once, then hands each access unit to
the RTSP server for per-session RTP delivery.

Telemetry:
    Exactly one RTSP event per encoded access unit. The value is the
    encoder output rate and does not depend on the number of sessions.

Design Rules:
    - No encoding while no RTSP session is registered
    - Per-session send failures are the broadcaster's concern
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence, Tuple

from camrelay.observability.telemetry import Metric, TelemetryAggregator
from camrelay.pipeline.base import ThrottledPipeline
from camrelay.pipeline.h264 import NAL_TYPE_IDR, nal_type
from camrelay.stream.clients import ClientRegistry, StreamProtocol
from camrelay.stream.frame import Frame, monotonic_ms


logger = logging.getLogger(__name__)

# RTP clock rate for H.264
RTP_CLOCK_RATE = 90_000


@dataclass(frozen=True, slots=True)
class AccessUnit:
    """NAL units of one encoded picture."""

    nal_units: Tuple[bytes, ...]
    keyframe: bool
    timestamp_90k: int
    timestamp_ms: float

    @property
    def size(self) -> int:
        return sum(len(unit) for unit in self.nal_units)


class H264Encoder(Protocol):
    """Encoder collaborator used by RtspPipeline."""

    def encode(self, frame: Frame) -> Sequence[bytes]:
        """Return the NAL units for one frame. Raises EncoderError."""
        ...

    def request_keyframe(self) -> None:
        ...

    @property
    def parameter_sets(self) -> Tuple[Optional[bytes], Optional[bytes]]:
        """(SPS, PPS), each None until first seen."""
        ...

    def close(self) -> None:
        ...


class AccessUnitBroadcaster(Protocol):
    """Receives every encoded access unit (the RTSP server)."""

    def broadcast(self, access_unit: AccessUnit) -> None:
        ...


class RtspPipeline(ThrottledPipeline):
    """
    H.264 encode pipeline feeding the RTSP server.

    Attributes:
        encoder: H.264 encoder collaborator
        broadcaster: Access unit consumer (may be attached after start)
        access_units: Access units produced since creation

    Example:
        pipeline = RtspPipeline(registry, telemetry, PyAvH264Encoder(), target_fps=30)
        pipeline.attach(rtsp_server)
        bus.register(pipeline.offer, name="rtsp")
        pipeline.start()
    """

    name = "rtsp"

    def __init__(
        self,
        registry: ClientRegistry,
        telemetry: TelemetryAggregator,
        encoder: H264Encoder,
        target_fps: float = 30.0,
        broadcaster: Optional[AccessUnitBroadcaster] = None,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        super().__init__(target_fps=target_fps, clock=clock)
        self.registry = registry
        self.telemetry = telemetry
        self.encoder = encoder
        self.broadcaster = broadcaster
        self.access_units: int = 0

    def attach(self, broadcaster: AccessUnitBroadcaster) -> None:
        self.broadcaster = broadcaster

    def request_keyframe(self) -> None:
        """Make the next access unit an IDR (new session joined)."""
        self.encoder.request_keyframe()

    @property
    def parameter_sets(self) -> Tuple[Optional[bytes], Optional[bytes]]:
        return self.encoder.parameter_sets

    def _has_consumers(self) -> bool:
        return self.registry.count(StreamProtocol.RTSP) > 0

    def _encode_and_deliver(self, frame: Frame, now_ms: float) -> bool:
        nal_units = tuple(self.encoder.encode(frame))
        if not nal_units:
            return False

        access_unit = AccessUnit(
            nal_units=nal_units,
            keyframe=any(nal_type(unit) == NAL_TYPE_IDR for unit in nal_units),
            timestamp_90k=int(frame.timestamp_ms * RTP_CLOCK_RATE / 1000) & 0xFFFFFFFF,
            timestamp_ms=frame.timestamp_ms,
        )
        self.access_units += 1
        self.telemetry.record_event(Metric.RTSP, now_ms)

        if self.broadcaster is not None:
            self.broadcaster.broadcast(access_unit)
        return True

    def _on_stopped(self) -> None:
        self.encoder.close()

    def metrics_dict(self) -> dict:
        return {
            **self.metrics.to_dict(),
            "target_fps": self.target_fps,
            "access_units": self.access_units,
            "overwritten_frames": self.overwritten_frames,
        }
