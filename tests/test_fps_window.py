"""
FPS Window Tests
================

Sliding-window rate estimation with explicit timestamps.
"""

import pytest

from camrelay.observability.fps import FpsWindow


class TestFpsWindowRate:
    """Tests for the rate formula."""

    def test_steady_rate(self):
        """Events every 100 ms converge on 10 fps."""
        window = FpsWindow(window_ms=2000, recompute_ms=500)
        for ts in range(0, 3001, 100):
            window.record(ts)
        assert window.rate == pytest.approx(10.0)

    def test_thirty_fps(self):
        """Events every 33.3 ms give ~30 fps."""
        window = FpsWindow()
        for i in range(200):
            window.record(i * 1000.0 / 30)
        assert window.rate == pytest.approx(30.0, abs=0.1)

    def test_single_sample_keeps_zero(self):
        """Fewer than two samples never produce a rate."""
        window = FpsWindow()
        assert window.record(100.0) is None
        assert window.rate == 0.0

    def test_zero_span_keeps_previous_rate(self):
        """Identical timestamps do not divide by zero."""
        window = FpsWindow()
        window.record(50.0)
        assert window.record(50.0) is None
        assert window.rate == 0.0
        assert window.size == 2

    def test_rejects_bad_parameters(self):
        with pytest.raises(ValueError):
            FpsWindow(window_ms=0)
        with pytest.raises(ValueError):
            FpsWindow(recompute_ms=-1)


class TestFpsWindowRetention:
    """Tests for eviction and ordering."""

    def test_evicts_old_timestamps(self):
        """Retained timestamps are never older than latest - window_ms."""
        window = FpsWindow(window_ms=2000)
        for ts in range(0, 3001, 100):
            window.record(ts)
        retained = window.timestamps()
        assert retained[0] == 1000
        assert retained[-1] == 3000
        assert window.size == 21

    def test_out_of_order_timestamp_is_clamped(self):
        """The retained sequence stays non-decreasing."""
        window = FpsWindow()
        window.record(100.0)
        window.record(90.0)
        assert window.timestamps() == [100.0, 100.0]

    def test_rate_drops_after_gap(self):
        """A long gap evicts the old burst."""
        window = FpsWindow(window_ms=2000, recompute_ms=500)
        for ts in range(0, 1001, 10):
            window.record(ts)
        assert window.rate == pytest.approx(100.0)

        window.record(5000)
        window.record(6000)
        assert window.timestamps() == [5000, 6000]
        assert window.rate == pytest.approx(1.0)


class TestFpsWindowCadence:
    """Tests for recompute throttling."""

    def test_recompute_at_most_every_interval(self):
        """Recomputation happens only when recompute_ms elapsed."""
        window = FpsWindow(window_ms=2000, recompute_ms=500)
        window.record(0)
        assert window.record(100) == pytest.approx(10.0)
        for ts in (200, 300, 400, 500):
            assert window.record(ts) is None
        assert window.record(600) is not None
        assert window.recompute_count == 2

    def test_reset_forces_exact_zero(self):
        """reset() clears samples and sets the rate to exactly 0."""
        window = FpsWindow()
        for ts in range(0, 1000, 50):
            window.record(ts)
        assert window.rate > 0

        window.reset()
        assert window.rate == 0.0
        assert window.size == 0

        # Cadence restarts: two fresh samples recompute immediately
        window.record(5000)
        assert window.record(5100) == pytest.approx(10.0)
