"""
Transport Module
================

Network delivery of encoded frames.

Components:
    - mjpeg_http: multipart framing and per-client stream generator
    - rtp: H.264 RTP packetizer (single NAL and FU-A)
    - rtsp_server: threaded asyncio RTSP server with UDP delivery
"""

from camrelay.transport.mjpeg_http import MEDIA_TYPE, mjpeg_stream, multipart_chunk
from camrelay.transport.rtp import RtpPacketizer
from camrelay.transport.rtsp_server import RtspServer, RtspServerError

__all__ = [
    "MEDIA_TYPE",
    "mjpeg_stream",
    "multipart_chunk",
    "RtpPacketizer",
    "RtspServer",
    "RtspServerError",
]
