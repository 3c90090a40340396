"""
Pipeline Module
===============

Throttled encode pipelines fed by the FrameBus.

Components:
    - ThrottledPipeline: worker thread, latest-frame slot, FPS throttle
    - MjpegPipeline / JpegEncoder: JPEG encode once, fan out to clients
    - RtspPipeline / PyAvH264Encoder: H.264 access units for the RTSP server
"""

from camrelay.pipeline.base import EncoderError, PipelineMetrics, ThrottledPipeline
from camrelay.pipeline.mjpeg import JpegEncodeError, JpegEncoder, MjpegPipeline
from camrelay.pipeline.h264 import H264EncodeError, PyAvH264Encoder, split_nal_units
from camrelay.pipeline.rtsp import AccessUnit, RtspPipeline

__all__ = [
    "EncoderError",
    "PipelineMetrics",
    "ThrottledPipeline",
    "JpegEncodeError",
    "JpegEncoder",
    "MjpegPipeline",
    "H264EncodeError",
    "PyAvH264Encoder",
    "split_nal_units",
    "AccessUnit",
    "RtspPipeline",
]
