"""
Frame Bus Tests
===============

Frame validation, fan-out, sink isolation and the latest-frame slot.
"""

import numpy as np
import pytest

from camrelay.stream.bus import FrameBus, LatestFrameSlot
from camrelay.stream.frame import Frame


class TestFrame:
    """Tests for the Frame value type."""

    def test_from_array(self, frame_factory):
        frame = frame_factory(sequence=5, timestamp_ms=12.5, width=32, height=16)
        assert (frame.width, frame.height) == (32, 16)
        assert frame.sequence == 5
        assert frame.timestamp_ms == 12.5

    def test_pixels_are_read_only(self, frame):
        with pytest.raises(ValueError):
            frame.pixels[0, 0, 0] = 1

    def test_rejects_grayscale(self):
        with pytest.raises(ValueError):
            Frame.from_array(np.zeros((8, 8), dtype=np.uint8), sequence=1)

    def test_rejects_bad_orientation(self, frame_factory):
        with pytest.raises(ValueError):
            frame_factory(orientation=45)


class TestFrameBus:
    """Tests for FrameBus fan-out."""

    def test_camera_event_recorded_before_fan_out(self, clock, frame_factory):
        order = []
        bus = FrameBus(on_frame=lambda ts: order.append(("camera", ts)), clock=clock)
        bus.register(lambda frame: order.append(("sink", frame.sequence)), name="sink")

        clock.now = 250.0
        bus.publish(frame_factory(sequence=3))

        assert order == [("camera", 250.0), ("sink", 3)]
        assert bus.frames_published == 1
        assert bus.last_publish_ms == 250.0

    def test_failing_sink_is_isolated(self, clock, frame_factory):
        received = []

        def broken(frame):
            raise RuntimeError("sink exploded")

        bus = FrameBus(clock=clock)
        bad = bus.register(broken, name="broken")
        bus.register(received.append, name="good")

        bus.publish(frame_factory(sequence=1))
        bus.publish(frame_factory(sequence=2))

        assert [f.sequence for f in received] == [1, 2]
        assert bad.errors == 2

    def test_registration_release(self, clock, frame_factory):
        received = []
        bus = FrameBus(clock=clock)
        registration = bus.register(received.append, name="temp")
        assert bus.sink_count == 1

        registration.release()
        registration.release()
        bus.publish(frame_factory())

        assert received == []
        assert bus.sink_count == 0
        assert not registration.active

    def test_registration_context_manager(self, clock):
        bus = FrameBus(clock=clock)
        with bus.add_preview_callback(lambda frame: None) as registration:
            assert registration.name == "preview"
            assert bus.sink_count == 1
        assert bus.sink_count == 0

    def test_latest_frame_and_age(self, clock, frame_factory):
        bus = FrameBus(clock=clock)
        assert bus.latest_frame is None
        assert bus.frame_age_ms() is None

        clock.now = 1000.0
        frame = frame_factory(sequence=9)
        bus.publish(frame)
        clock.advance(300.0)

        assert bus.latest_frame is frame
        assert bus.frame_age_ms() == 300.0


class TestLatestFrameSlot:
    """Tests for the replace-pending handoff."""

    def test_put_overwrites_pending(self, frame_factory):
        slot = LatestFrameSlot()
        assert slot.put(frame_factory(sequence=1)) is True
        assert slot.put(frame_factory(sequence=2)) is False

        assert slot.overwritten == 1
        assert slot.take(timeout=0.01).sequence == 2
        assert not slot.pending

    def test_take_times_out(self):
        assert LatestFrameSlot().take(timeout=0.01) is None

    def test_close_wakes_consumer(self, frame_factory):
        slot = LatestFrameSlot()
        slot.close()
        assert slot.take(timeout=5.0) is None

        slot.reopen()
        slot.put(frame_factory(sequence=4))
        assert slot.take(timeout=0.01).sequence == 4
