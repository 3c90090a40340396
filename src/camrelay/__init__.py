"""
CamRelay
========

Single-source camera relay with self-monitoring.

One live video source is fanned out to independently consumable network
streams (MJPEG over HTTP, H.264 over RTSP/RTP) while a watchdog keeps
every component healthy.

Components:
    - stream: frames, fan-out bus, client registry, frame sources
    - pipeline: throttled MJPEG and H.264 encode pipelines
    - transport: MJPEG HTTP framing, RTP packetization, RTSP server
    - observability: FPS telemetry
    - supervision: watchdog state machine and health probes

Example:
    from camrelay.config import settings
    from camrelay.service import StreamingService

    service = StreamingService(settings)
    service.start()
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
