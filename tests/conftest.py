"""
Test Configuration
==================

Pytest fixtures and test doubles for CamRelay.

Time-dependent components take injectable clocks; the fixtures here
provide a manually advanced clock, synthetic frames, an inline executor
for the watchdog and a fake H.264 encoder.
"""

from concurrent.futures import Executor, Future
from typing import List, Optional, Tuple

import numpy as np
import pytest

from camrelay.config import Settings
from camrelay.observability.telemetry import TelemetryAggregator
from camrelay.stream.clients import ClientRegistry
from camrelay.stream.frame import Frame


class FakeClock:
    """Manually advanced clock. Call it to read the time."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, delta: float) -> float:
        self.now += delta
        return self.now


class InlineExecutor(Executor):
    """Runs submitted callables synchronously on the caller's thread."""

    def __init__(self) -> None:
        self.submitted = 0

    def submit(self, fn, /, *args, **kwargs) -> Future:
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """Queues submitted callables until run_all() is called."""

    def __init__(self) -> None:
        self.pending: List[Tuple] = []

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_all(self) -> int:
        count = 0
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            future.set_result(fn(*args, **kwargs))
            count += 1
        return count


class FakeH264Encoder:
    """H264Encoder double producing one small IDR or P slice per frame."""

    SPS = b"\x67\x42\xc0\x1f\x8c\x8d"
    PPS = b"\x68\xce\x3c\x80"

    def __init__(self, fail_on: Optional[set] = None, gop: int = 30) -> None:
        self.fail_on = fail_on or set()
        self.gop = gop
        self.encoded = 0
        self.keyframe_requests = 0
        self.closed = False
        self._force_key = True

    def encode(self, frame: Frame) -> List[bytes]:
        from camrelay.pipeline.h264 import H264EncodeError

        if frame.sequence in self.fail_on:
            raise H264EncodeError(f"fake failure on {frame.sequence}")
        key = self._force_key or self.encoded % self.gop == 0
        self._force_key = False
        self.encoded += 1
        if key:
            return [self.SPS, self.PPS, b"\x65" + bytes(100)]
        return [b"\x41" + bytes(50)]

    def request_keyframe(self) -> None:
        self.keyframe_requests += 1
        self._force_key = True

    @property
    def parameter_sets(self):
        return (self.SPS, self.PPS) if self.encoded else (None, None)

    def close(self) -> None:
        self.closed = True


def make_frame(sequence: int = 1, timestamp_ms: float = 0.0, width: int = 64,
               height: int = 48, orientation: int = 0) -> Frame:
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    pixels[:, : width // 2] = (255, 0, 0)
    return Frame.from_array(pixels, sequence, orientation=orientation, timestamp_ms=timestamp_ms)


@pytest.fixture
def clock():
    """Millisecond fake clock starting at 0."""
    return FakeClock()


@pytest.fixture
def registry():
    return ClientRegistry(queue_size=2)


@pytest.fixture
def telemetry(registry):
    """Aggregator wired to the registry the way the service wires it."""
    aggregator = TelemetryAggregator(client_count=registry.count)
    registry.add_count_listener(aggregator.on_client_count)
    return aggregator


@pytest.fixture
def frame():
    return make_frame()


@pytest.fixture
def frame_factory():
    """Callable building synthetic frames: frame_factory(sequence=..., timestamp_ms=...)."""
    return make_frame


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def deferred_executor():
    return DeferredExecutor()


@pytest.fixture
def fake_encoder():
    return FakeH264Encoder()


@pytest.fixture
def test_settings():
    """Settings for service/API tests: synthetic source, no RTSP, no watchdog thread."""
    return Settings.model_validate({
        "source": {"backend": "synthetic", "width": 64, "height": 48, "fps": 30},
        "rtsp": {"enabled": False},
        "watchdog": {"enabled": False},
        "server": {"request_pool_size": 4, "stream_pool_size": 4},
    })
