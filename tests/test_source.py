"""
Frame Source Tests
==================

Synthetic source publishing and the backend factory.
"""

import time

import pytest

from camrelay.stream.bus import FrameBus
from camrelay.stream.source import SyntheticFrameSource, create_frame_source


def wait_for(condition, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


class TestSyntheticSource:
    """Tests for the test-pattern source."""

    def test_publishes_frames(self):
        bus = FrameBus()
        source = SyntheticFrameSource(bus, width=64, height=48, fps=50, orientation=90)
        source.start()
        try:
            assert wait_for(lambda: bus.frames_published >= 3)
        finally:
            source.stop()

        frame = bus.latest_frame
        assert (frame.width, frame.height) == (64, 48)
        assert frame.orientation == 90
        assert not source.is_alive()

    def test_sequence_increases(self):
        sequences = []
        bus = FrameBus()
        bus.register(lambda frame: sequences.append(frame.sequence), name="collector")
        source = SyntheticFrameSource(bus, width=32, height=32, fps=100)
        source.start()
        try:
            assert wait_for(lambda: len(sequences) >= 5)
        finally:
            source.stop()

        assert sequences == sorted(sequences)
        assert len(set(sequences)) == len(sequences)

    def test_restart(self):
        bus = FrameBus()
        source = SyntheticFrameSource(bus, width=32, height=32, fps=50)
        source.start()
        try:
            source.restart()
            assert source.is_alive()
        finally:
            source.stop()


class TestFactory:
    """Tests for create_frame_source()."""

    def test_synthetic_backend(self):
        source = create_frame_source("synthetic", FrameBus(), width=32, height=32, fps=10)
        assert isinstance(source, SyntheticFrameSource)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_frame_source("v4l2-magic", FrameBus())

    def test_rejects_zero_fps(self):
        with pytest.raises(ValueError):
            SyntheticFrameSource(FrameBus(), fps=0)
