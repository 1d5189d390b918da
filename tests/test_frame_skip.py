"""
Unit tests for adaptive frame skipping.
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from roadeye.frame_skip import (
    FrameGate,
    FrameSkipController,
    describe_frame_rate,
    skip_factor_for_latency,
)


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def controller(clock):
    return FrameSkipController(clock=clock)


class TestSkipFactorMapping:
    """Tests for latency thresholds."""

    @pytest.mark.parametrize("latency, expected", [
        (250.0, 3),
        (200.1, 3),
        (200.0, 2),
        (151.0, 2),
        (150.0, 1),
        (81.0, 1),
        (80.0, 0),
        (10.0, 0),
    ])
    def test_thresholds(self, latency, expected):
        assert skip_factor_for_latency(latency) == expected

    def test_describe_frame_rate(self):
        assert describe_frame_rate(0) == "Max"
        assert describe_frame_rate(1) == "1/2"
        assert describe_frame_rate(2) == "1/3"
        assert describe_frame_rate(5) == "1/6"


class TestFrameSkipController:
    """Tests for FrameSkipController."""

    def test_initial_state(self, controller):
        assert controller.skip_factor == 2
        assert controller.mean_latency_ms is None

    def test_slow_latency_scenario(self, controller, clock):
        """Test five 250 ms samples across the adaptation interval give factor 3."""
        for _ in range(5):
            controller.observe(250.0)
            clock.advance(500.0)

        assert controller.skip_factor == 3

    def test_fast_latency_reduces_skip(self, controller, clock):
        for _ in range(5):
            controller.observe(30.0)
            clock.advance(500.0)

        assert controller.skip_factor == 0

    def test_needs_min_samples(self, controller, clock):
        """Test that fewer than five samples never change the factor."""
        for _ in range(4):
            controller.observe(300.0)
            clock.advance(3000.0)

        assert controller.skip_factor == 2

    def test_rate_limited(self, controller, clock):
        """Test at most one evaluation per interval."""
        for _ in range(5):
            controller.observe(300.0)
            clock.advance(500.0)
        assert controller.skip_factor == 3

        # Fast samples inside the interval are recorded but not acted on
        for _ in range(10):
            controller.observe(10.0)
        assert controller.skip_factor == 3

        clock.advance(2000.0)
        controller.observe(10.0)
        assert controller.skip_factor == 0

    def test_mean_truncated_to_whole_ms(self, clock):
        """Test that a 200.4 ms mean counts as 200 ms."""
        controller = FrameSkipController(initial_skip=0, clock=clock)
        for _ in range(5):
            controller.observe(200.4)
            clock.advance(500.0)

        assert controller.skip_factor == 2

    def test_history_bounded(self, controller):
        for i in range(25):
            controller.observe(float(i))

        assert len(controller.latencies_ms) == 10
        assert list(controller.latencies_ms)[0] == 15.0

    def test_reset(self, controller, clock):
        for _ in range(5):
            controller.observe(300.0)
            clock.advance(500.0)
        controller.reset()

        assert controller.skip_factor == 2
        assert len(controller.latencies_ms) == 0
        assert controller.last_adaptation_ms is None


class TestFrameGate:
    """Tests for the frame acceptance gate."""

    def test_accepts_every_k_plus_one(self, controller):
        gate = FrameGate(controller)
        accepted = [gate.accept() for _ in range(9)]

        # Skip factor 2: frames 0, 3, 6
        assert accepted == [True, False, False] * 3

    def test_follows_skip_factor(self, controller):
        controller.skip_factor = 0
        gate = FrameGate(controller)
        assert all(gate.accept() for _ in range(5))

    def test_reset(self, controller):
        gate = FrameGate(controller)
        gate.accept()
        gate.reset()
        assert gate.accept() is True
