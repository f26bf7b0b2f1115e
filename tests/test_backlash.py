"""Tests for the backlash analysis."""

import math
import sys
from pathlib import Path

import pytest

# Ensure the package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from autoguider.backlash import MIN_POINTS, BacklashAnalysis
from autoguider.guide_types import BacklashDirection, BacklashPoint


def _points(values, drift=0.0, direction=(1.0, 0.0)):
    dx, dy = direction
    points = []
    for s, v in enumerate(values):
        p = v + drift * s
        points.append(BacklashPoint(s, float(s), p * dx, p * dy))
    return points


# forward, forward, backward, backward
CYCLE = [0, 1, 2, 1, 0, 1, 2, 1, 0, 1]


class TestBacklashAnalysis:
    def test_too_few_points(self, caplog):
        analysis = BacklashAnalysis()
        assert analysis(_points([0, 1, 2, 1])) is None
        assert "at least" in caplog.text

    def test_update_waits_for_enough_points(self):
        analysis = BacklashAnalysis()
        results = [analysis.update(p) for p in _points(CYCLE)]
        assert all(r is None for r in results[:MIN_POINTS - 1])
        assert all(r is not None for r in results[MIN_POINTS - 1:])
        assert len(analysis.points) == len(CYCLE)

    def test_drift_recovered(self):
        result = BacklashAnalysis()(_points(CYCLE, drift=0.1))
        assert result is not None
        assert result.drift == pytest.approx(0.1, rel=0.1)

    def test_direction_follows_forward_moves(self):
        angle = math.radians(30)
        direction = (math.cos(angle), math.sin(angle))
        result = BacklashAnalysis(BacklashDirection.RA)(_points(CYCLE, direction=direction))
        assert result.direction == BacklashDirection.RA
        assert result.x == pytest.approx(direction[0], abs=1e-6)
        assert result.y == pytest.approx(direction[1], abs=1e-6)
        assert result.lateral == pytest.approx(0.0, abs=1e-9)

    def test_reversed_axis_is_flipped(self):
        result = BacklashAnalysis()(_points(CYCLE, direction=(0.0, -1.0)))
        assert result.x == pytest.approx(0.0, abs=1e-6)
        assert result.y == pytest.approx(-1.0, abs=1e-6)

    def test_step_sizes_without_backlash(self):
        result = BacklashAnalysis()(_points(CYCLE))
        assert result.forward == pytest.approx(1.0, abs=1e-6)
        assert result.backward == pytest.approx(1.0, abs=1e-6)
        assert result.longitudinal == pytest.approx(0.0, abs=1e-6)

    def test_lost_motion_after_reversal(self):
        # the first move after each reversal only covers half a step
        values = [0, 0.5, 1.5, 1.0, 0.0, 0.5, 1.5, 1.0, 0.0, 0.5, 1.5, 1.0, 0.0]
        result = BacklashAnalysis()(_points(values))
        assert result.drift == pytest.approx(0.0, abs=1e-9)
        assert result.f == pytest.approx(0.5, abs=1e-6)
        assert result.forward == pytest.approx(1.0, abs=1e-6)
        assert result.b == pytest.approx(0.5, abs=1e-6)
        assert result.backward == pytest.approx(1.0, abs=1e-6)

    def test_window_starts_on_cycle(self):
        analysis = BacklashAnalysis(last_points=6)
        window = analysis._window(_points(CYCLE + [2, 1, 0]))
        assert len(window) == 9
        assert window[0].id % 4 == 0

    def test_static_points(self):
        assert BacklashAnalysis()(_points([0, 0, 0, 0, 0, 0])) is None
