"""
MJPEG Pipeline Tests
====================

Throttling, fan-out, slow-client handling and JPEG encoding.
"""

import cv2
import numpy as np
import pytest

from camrelay.observability.telemetry import Metric
from camrelay.pipeline.mjpeg import JpegEncodeError, JpegEncoder, MjpegPipeline
from camrelay.stream.clients import StreamProtocol


CAMERA_INTERVAL_MS = 1000.0 / 30


class FailingJpegEncoder:
    """Encoder double that always fails."""

    def encode(self, frame):
        raise JpegEncodeError("encoder broke")


@pytest.fixture
def pipeline(registry, telemetry, clock):
    return MjpegPipeline(registry, telemetry, target_fps=10, clock=clock)


def feed(pipeline, clock, frame_factory, count: int, interval_ms: float, drain=()):
    """Run `count` frames through process(), draining the given clients after each."""
    accepted = 0
    for i in range(count):
        clock.now = i * interval_ms
        if pipeline.process(frame_factory(sequence=i, timestamp_ms=clock.now)):
            accepted += 1
        for client in drain:
            while client.take(timeout=0) is not None:
                pass
    return accepted


class TestThrottle:
    """Tests for the FPS throttle."""

    def test_thirty_fps_camera_throttled_to_ten(self, pipeline, registry, clock, frame_factory):
        client = registry.register(StreamProtocol.MJPEG)

        accepted = feed(pipeline, clock, frame_factory, 90, CAMERA_INTERVAL_MS, drain=[client])

        assert accepted == 30
        assert pipeline.metrics.frames_throttled == 60
        assert client.delivered_frames == 30

    def test_small_jitter_is_tolerated(self, pipeline, registry, clock, frame_factory):
        """A frame arriving just before its due time still counts as on time."""
        registry.register(StreamProtocol.MJPEG)
        clock.now = 0.0
        assert pipeline.process(frame_factory(sequence=1))
        clock.now = 99.5
        assert pipeline.process(frame_factory(sequence=2))
        clock.now = 150.0
        assert not pipeline.process(frame_factory(sequence=3))

    def test_resyncs_after_stall(self, pipeline, registry, clock, frame_factory):
        """A long gap does not cause a burst of catch-up frames."""
        registry.register(StreamProtocol.MJPEG)
        clock.now = 0.0
        pipeline.process(frame_factory(sequence=1))

        clock.now = 5000.0
        assert pipeline.process(frame_factory(sequence=2))
        clock.now = 5033.0
        assert not pipeline.process(frame_factory(sequence=3))

    def test_set_target_fps_validates(self, pipeline):
        with pytest.raises(ValueError):
            pipeline.set_target_fps(0)
        with pytest.raises(ValueError):
            pipeline.set_target_fps(-5)
        assert pipeline.target_fps == 10

        pipeline.set_target_fps(25)
        assert pipeline.min_interval_ms == pytest.approx(40.0)


class TestIdle:
    """Tests for the no-client fast path."""

    def test_no_encode_without_clients(self, pipeline, clock, frame_factory, telemetry):
        assert not pipeline.process(frame_factory())
        assert pipeline.metrics.frames_idle == 1
        assert pipeline.latest_jpeg is None
        assert telemetry.window(Metric.MJPEG).size == 0

    def test_idle_frames_do_not_consume_deadline(self, pipeline, registry, clock, frame_factory):
        clock.now = 0.0
        pipeline.process(frame_factory(sequence=1))

        registry.register(StreamProtocol.MJPEG)
        clock.now = 10.0
        assert pipeline.process(frame_factory(sequence=2))


class TestFanOut:
    """Tests for per-client delivery."""

    def test_one_telemetry_event_per_client_delivery(self, pipeline, registry, telemetry, clock, frame_factory):
        clients = [registry.register(StreamProtocol.MJPEG) for _ in range(3)]

        pipeline.process(frame_factory())

        assert pipeline.deliveries == 3
        assert telemetry.window(Metric.MJPEG).size == 3
        assert all(client.pending == 1 for client in clients)
        assert clients[0].take(timeout=0) == pipeline.latest_jpeg

    def test_slow_client_does_not_stall_others(self, registry, telemetry, clock, frame_factory):
        pipeline = MjpegPipeline(
            registry, telemetry, target_fps=10, max_consecutive_drops=3, clock=clock,
        )
        fast = registry.register(StreamProtocol.MJPEG)
        slow = registry.register(StreamProtocol.MJPEG)

        feed(pipeline, clock, frame_factory, 5, 100.0, drain=[fast])

        assert fast.delivered_frames == 5
        assert slow.delivered_frames == 2
        assert slow.dropped_frames == 3
        assert pipeline.evictions == 1
        assert slow.closed
        assert slow.close_reason == "too slow"
        assert registry.count(StreamProtocol.MJPEG) == 1
        assert telemetry.window(Metric.MJPEG).size == 7

    def test_custom_slow_client_handler(self, registry, telemetry, clock, frame_factory):
        reported = []
        pipeline = MjpegPipeline(
            registry, telemetry, target_fps=10, max_consecutive_drops=1,
            on_slow_client=reported.append, clock=clock,
        )
        slow = registry.register(StreamProtocol.MJPEG)

        feed(pipeline, clock, frame_factory, 4, 100.0)

        # Reported once when crossing the threshold, then still registered
        assert reported == [slow]
        assert registry.count(StreamProtocol.MJPEG) == 1

    def test_encoder_failure_drops_frame_only(self, registry, telemetry, clock, frame_factory):
        pipeline = MjpegPipeline(
            registry, telemetry, target_fps=10, encoder=FailingJpegEncoder(), clock=clock,
        )
        client = registry.register(StreamProtocol.MJPEG)

        assert not pipeline.process(frame_factory())

        assert pipeline.metrics.encode_errors == 1
        assert pipeline.metrics.last_error == "encoder broke"
        assert client.pending == 0
        assert telemetry.window(Metric.MJPEG).size == 0

    def test_metrics_dict(self, pipeline):
        data = pipeline.metrics_dict()
        assert data["target_fps"] == 10
        assert data["deliveries"] == 0
        assert "overwritten_frames" in data


class TestJpegEncoder:
    """Tests for the OpenCV JPEG encoder."""

    def test_encodes_valid_jpeg(self, frame_factory):
        jpeg = JpegEncoder(quality=80).encode(frame_factory(width=64, height=48))
        assert jpeg[:2] == b"\xff\xd8"
        decoded = cv2.imdecode(np.frombuffer(jpeg, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == (48, 64, 3)

    def test_applies_orientation(self, frame_factory):
        jpeg = JpegEncoder().encode(frame_factory(width=64, height=48, orientation=90))
        decoded = cv2.imdecode(np.frombuffer(jpeg, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == (64, 48, 3)

    def test_rejects_bad_quality(self):
        with pytest.raises(ValueError):
            JpegEncoder(quality=0)
        with pytest.raises(ValueError):
            JpegEncoder(quality=101)
