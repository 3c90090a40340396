"""
RTSP Pipeline Tests
===================

H.264 access unit production, telemetry and NAL unit handling.
"""

import pytest

from camrelay.observability.telemetry import Metric
from camrelay.pipeline.h264 import (
    H264EncodeError,
    NAL_TYPE_IDR,
    NAL_TYPE_PPS,
    NAL_TYPE_SPS,
    PyAvH264Encoder,
    nal_type,
    split_nal_units,
)
from camrelay.pipeline.rtsp import RTP_CLOCK_RATE, RtspPipeline
from camrelay.stream.clients import StreamProtocol


class RecordingBroadcaster:
    def __init__(self):
        self.access_units = []

    def broadcast(self, access_unit):
        self.access_units.append(access_unit)


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def pipeline(registry, telemetry, fake_encoder, broadcaster, clock):
    return RtspPipeline(
        registry, telemetry, fake_encoder, target_fps=30,
        broadcaster=broadcaster, clock=clock,
    )


class TestRtspPipeline:
    """Tests for RtspPipeline."""

    def test_idle_without_sessions(self, pipeline, fake_encoder, broadcaster, frame_factory):
        assert not pipeline.process(frame_factory())
        assert fake_encoder.encoded == 0
        assert broadcaster.access_units == []

    def test_one_event_per_access_unit_regardless_of_sessions(
        self, pipeline, registry, telemetry, broadcaster, clock, frame_factory
    ):
        for _ in range(4):
            registry.register(StreamProtocol.RTSP)

        for i in range(3):
            clock.now = i * 50.0
            pipeline.process(frame_factory(sequence=i, timestamp_ms=clock.now))

        assert len(broadcaster.access_units) == 3
        assert telemetry.window(Metric.RTSP).size == 3
        assert pipeline.access_units == 3

    def test_first_access_unit_is_keyframe(self, pipeline, registry, broadcaster, frame_factory):
        registry.register(StreamProtocol.RTSP)
        pipeline.process(frame_factory(sequence=1, timestamp_ms=1000.0))

        unit = broadcaster.access_units[0]
        assert unit.keyframe
        assert [nal_type(n) for n in unit.nal_units] == [NAL_TYPE_SPS, NAL_TYPE_PPS, NAL_TYPE_IDR]
        assert unit.timestamp_90k == 1000 * RTP_CLOCK_RATE // 1000
        assert unit.size == sum(len(n) for n in unit.nal_units)

    def test_request_keyframe_forwards_to_encoder(self, pipeline, registry, broadcaster, clock, frame_factory):
        registry.register(StreamProtocol.RTSP)
        clock.now = 0.0
        pipeline.process(frame_factory(sequence=1))
        clock.now = 40.0
        pipeline.process(frame_factory(sequence=2))
        assert not broadcaster.access_units[1].keyframe

        pipeline.request_keyframe()
        clock.now = 80.0
        pipeline.process(frame_factory(sequence=3))

        assert broadcaster.access_units[2].keyframe

    def test_encoder_failure_drops_frame(
        self, pipeline, registry, telemetry, fake_encoder, broadcaster, clock, frame_factory
    ):
        fake_encoder.fail_on = {2}
        registry.register(StreamProtocol.RTSP)

        for i in (1, 2, 3):
            clock.now = i * 40.0
            pipeline.process(frame_factory(sequence=i))

        assert len(broadcaster.access_units) == 2
        assert pipeline.metrics.encode_errors == 1
        assert telemetry.window(Metric.RTSP).size == 2

    def test_stop_closes_encoder(self, pipeline, fake_encoder):
        pipeline.stop()
        assert fake_encoder.closed

    def test_parameter_sets_from_encoder(self, pipeline, registry, fake_encoder, frame_factory):
        assert pipeline.parameter_sets == (None, None)
        registry.register(StreamProtocol.RTSP)
        pipeline.process(frame_factory())
        assert pipeline.parameter_sets == (fake_encoder.SPS, fake_encoder.PPS)


class TestSplitNalUnits:
    """Tests for Annex-B parsing."""

    def test_empty(self):
        assert split_nal_units(b"") == []

    def test_no_start_code(self):
        assert split_nal_units(b"\x65\x88") == [b"\x65\x88"]

    def test_mixed_start_codes(self):
        stream = (
            b"\x00\x00\x00\x01\x67\x42\x00"
            b"\x00\x00\x01\x68\xce"
            b"\x00\x00\x00\x01\x65\x88\x84"
        )
        units = split_nal_units(stream)
        assert units == [b"\x67\x42", b"\x68\xce", b"\x65\x88\x84"]
        assert [nal_type(u) for u in units] == [NAL_TYPE_SPS, NAL_TYPE_PPS, NAL_TYPE_IDR]


class TestPyAvH264Encoder:
    """Tests for the libx264 encoder wrapper."""

    def test_first_frame_is_keyframe_with_parameter_sets(self, frame_factory):
        encoder = PyAvH264Encoder(fps=30, gop_size=30)
        try:
            units = encoder.encode(frame_factory(sequence=1, width=65, height=49))
        except H264EncodeError as e:
            pytest.skip(f"libx264 unavailable: {e}")

        try:
            kinds = [nal_type(unit) for unit in units]
            assert NAL_TYPE_IDR in kinds
            sps, pps = encoder.parameter_sets
            assert nal_type(sps) == NAL_TYPE_SPS
            assert nal_type(pps) == NAL_TYPE_PPS

            # Odd sizes are cropped to even for yuv420p
            assert encoder._size == (64, 48)
        finally:
            encoder.close()

    def test_rejects_bad_fps(self):
        with pytest.raises(ValueError):
            PyAvH264Encoder(fps=0)
