"""
H.264 Encoder
=============

PyAV (libx264) wrapper producing Annex-B NAL units for the RTSP pipeline.

Design Rules:
    - Zero-latency tuning: one input frame yields one access unit
    - The codec context is rebuilt when the frame size changes
    - SPS/PPS are captured from keyframes for the SDP description
"""

import logging
from fractions import Fraction
from typing import List, Optional, Tuple

import av
import numpy as np
from av.video.frame import PictureType

from camrelay.pipeline.base import EncoderError, oriented_pixels
from camrelay.stream.frame import Frame


logger = logging.getLogger(__name__)


_START_CODE = b"\x00\x00\x01"

NAL_TYPE_IDR = 5
NAL_TYPE_SPS = 7
NAL_TYPE_PPS = 8


class H264EncodeError(EncoderError):
    """Raised when the H.264 encoder rejects a frame."""
    pass


def nal_type(unit: bytes) -> int:
    """NAL unit type from the first header byte."""
    return unit[0] & 0x1F


def split_nal_units(data: bytes) -> List[bytes]:
    """
    Split an Annex-B byte stream into NAL units (start codes removed).

    Both 3-byte and 4-byte start codes are accepted. Data without any
    start code is returned as a single unit.
    """
    if not data:
        return []

    pos = data.find(_START_CODE)
    if pos == -1:
        return [data]

    units: List[bytes] = []
    while pos != -1:
        begin = pos + len(_START_CODE)
        following = data.find(_START_CODE, begin)
        if following == -1:
            unit = data[begin:]
        else:
            # Leading zero of a 4-byte start code belongs to the next unit
            unit = data[begin:following].rstrip(b"\x00")
        if unit:
            units.append(unit)
        pos = following
    return units


class PyAvH264Encoder:
    """
    libx264 encoder driven through av.CodecContext.

    Attributes:
        fps: Nominal frame rate (sets time base and GOP timing)
        bitrate: Target bitrate in bits per second
        gop_size: Frames between forced keyframes
        sps: Last sequence parameter set seen, or None
        pps: Last picture parameter set seen, or None

    Example:
        encoder = PyAvH264Encoder(fps=30, bitrate=2_000_000)
        nal_units = encoder.encode(frame)
    """

    def __init__(
        self,
        fps: float = 30.0,
        bitrate: int = 2_000_000,
        gop_size: int = 30,
        codec_name: str = "libx264",
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        self.fps = fps
        self.bitrate = bitrate
        self.gop_size = gop_size
        self.codec_name = codec_name

        self._codec: Optional[av.CodecContext] = None
        self._size: Optional[Tuple[int, int]] = None
        self._pts: int = 0
        self._keyframe_requested = False

        self.sps: Optional[bytes] = None
        self.pps: Optional[bytes] = None

    @property
    def parameter_sets(self) -> Tuple[Optional[bytes], Optional[bytes]]:
        return self.sps, self.pps

    def request_keyframe(self) -> None:
        """Force the next encoded frame to be an IDR."""
        self._keyframe_requested = True

    def _open(self, width: int, height: int) -> None:
        rate = Fraction(self.fps).limit_denominator(1000)
        try:
            codec = av.CodecContext.create(self.codec_name, "w")
            codec.width = width
            codec.height = height
            codec.pix_fmt = "yuv420p"
            codec.time_base = 1 / rate
            codec.framerate = rate
            codec.bit_rate = self.bitrate
            codec.gop_size = self.gop_size
            codec.max_b_frames = 0
            codec.options = {"tune": "zerolatency", "preset": "ultrafast"}
            codec.open()
        except (av.FFmpegError, ValueError) as e:
            raise H264EncodeError(f"Cannot open {self.codec_name} at {width}x{height}: {e}")

        self._codec = codec
        self._size = (width, height)
        self._pts = 0
        self.sps = None
        self.pps = None
        logger.info(
            f"H.264 encoder opened: {self.codec_name} {width}x{height} "
            f"@ {float(rate):g} fps, {self.bitrate} bps, gop {self.gop_size}"
        )

    def encode(self, frame: Frame) -> List[bytes]:
        """
        Encode one frame.

        Returns:
            NAL units of the resulting access unit (empty if the encoder
            produced no output for this frame).

        Raises:
            H264EncodeError: If the encoder fails
        """
        pixels = oriented_pixels(frame)
        # yuv420p needs even dimensions
        height = pixels.shape[0] & ~1
        width = pixels.shape[1] & ~1
        if (width, height) != (pixels.shape[1], pixels.shape[0]):
            pixels = np.ascontiguousarray(pixels[:height, :width])

        if self._codec is None or self._size != (width, height):
            self._open(width, height)

        try:
            video_frame = av.VideoFrame.from_ndarray(pixels, format="bgr24")
            video_frame = video_frame.reformat(format="yuv420p")
            video_frame.pts = self._pts
            if self._keyframe_requested:
                video_frame.pict_type = PictureType.I
                self._keyframe_requested = False
            packets = self._codec.encode(video_frame)
        except (av.FFmpegError, ValueError) as e:
            raise H264EncodeError(f"Encoding frame {frame.sequence} failed: {e}")
        self._pts += 1

        units: List[bytes] = []
        for packet in packets:
            units.extend(split_nal_units(bytes(packet)))

        for unit in units:
            kind = nal_type(unit)
            if kind == NAL_TYPE_SPS:
                self.sps = unit
            elif kind == NAL_TYPE_PPS:
                self.pps = unit
        return units

    def close(self) -> None:
        if self._codec is not None:
            logger.info("H.264 encoder closed")
        self._codec = None
        self._size = None
