"""Tests for star detection and the trackers.

Images are rendered synthetically; no camera is needed.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure the package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from autoguider.exceptions import TrackingFailed
from autoguider.guide_types import GuideImage, ImageRectangle, Offset
from autoguider.tracker import (
    NullTracker,
    OffsetQuantizer,
    PhaseTracker,
    StarDetector,
    StarTracker,
    create_tracker,
    luminance,
)


def _star_image(x, y, size=(100, 80), sigma=2.0, amplitude=1000.0, background=100.0):
    width, height = size
    yy, xx = np.mgrid[0:height, 0:width].astype(float)
    pixels = background + amplitude * np.exp(-((xx - x) ** 2 + (yy - y) ** 2) / (2 * sigma ** 2))
    return pixels.astype(np.uint16)


def _texture(seed=3, size=64):
    rng = np.random.default_rng(seed)
    return (rng.random((size, size)) * 1000.0).astype(np.float32)


# ---------------------------------------------------------------------------
# luminance
# ---------------------------------------------------------------------------
class TestLuminance:
    def test_mono(self):
        out = luminance(np.ones((4, 5), dtype=np.uint8))
        assert out.shape == (4, 5)
        assert out.dtype == np.float32

    def test_rgb_averaged(self):
        rgb = np.zeros((4, 5, 3), dtype=np.uint16)
        rgb[:, :, 0] = 30
        assert luminance(rgb)[0, 0] == pytest.approx(10.0)

    def test_unsupported_types(self):
        with pytest.raises(TrackingFailed):
            luminance(np.zeros((4, 4), dtype=bool))
        with pytest.raises(TrackingFailed):
            luminance(np.zeros((4, 4, 2), dtype=np.uint8))
        with pytest.raises(TrackingFailed):
            luminance([[1, 2], [3, 4]])


# ---------------------------------------------------------------------------
# StarDetector
# ---------------------------------------------------------------------------
class TestStarDetector:
    def test_subpixel_position(self):
        x, y = StarDetector()(_star_image(40.3, 30.7))
        assert x == pytest.approx(40.3, abs=0.1)
        assert y == pytest.approx(30.7, abs=0.1)

    def test_search_area(self):
        pixels = _star_image(20.0, 20.0) + _star_image(70.0, 50.0, amplitude=500.0, background=0.0)
        x, y = StarDetector()(pixels, (50, 30, 40, 40))
        assert x == pytest.approx(70.0, abs=0.1)
        assert y == pytest.approx(50.0, abs=0.1)

    def test_blank_image(self):
        with pytest.raises(TrackingFailed):
            StarDetector()(np.full((80, 100), 100, dtype=np.uint16))

    def test_star_on_border(self):
        with pytest.raises(TrackingFailed):
            StarDetector()(_star_image(1.0, 1.0))

    def test_area_outside_image(self):
        with pytest.raises(TrackingFailed):
            StarDetector()(_star_image(40.0, 30.0), (500, 500, 10, 10))


# ---------------------------------------------------------------------------
# Trackers
# ---------------------------------------------------------------------------
class TestStarTracker:
    def test_acquire_and_locate(self):
        tracker = StarTracker.acquire(GuideImage(_star_image(50.0, 40.0)), radius=20)
        assert tracker.reference.x == pytest.approx(50.0, abs=0.1)
        assert tracker.rectangle == ImageRectangle(30, 20, 41, 41)
        offset = tracker.locate(GuideImage(_star_image(53.0, 38.0)))
        assert offset.x == pytest.approx(3.0, abs=0.1)
        assert offset.y == pytest.approx(-2.0, abs=0.1)

    def test_sub_frame_origin(self):
        tracker = StarTracker.acquire(GuideImage(_star_image(50.0, 40.0)))
        sub = _star_image(53.0, 38.0)[20:80, 30:90]
        offset = tracker(GuideImage(sub, origin=(30, 20)))
        assert offset.x == pytest.approx(3.0, abs=0.1)
        assert offset.y == pytest.approx(-2.0, abs=0.1)

    def test_star_outside_search_rectangle(self):
        tracker = StarTracker.acquire(GuideImage(_star_image(30.0, 30.0)), radius=10)
        with pytest.raises(TrackingFailed):
            tracker.locate(GuideImage(_star_image(75.0, 60.0)))

    def test_post_filter(self):
        tracker = StarTracker(Offset(50.0, 40.0), post_filter=OffsetQuantizer(1.0))
        offset = tracker.locate(GuideImage(_star_image(52.3, 40.0)))
        assert offset == Offset(2.0, 0.0)


class TestOffsetQuantizer:
    def test_rounding(self):
        q = OffsetQuantizer(0.5)
        assert q(Offset(0.74, -0.26)) == Offset(0.5, -0.5)

    def test_invalid_step(self):
        with pytest.raises(ValueError):
            OffsetQuantizer(0.0)


class TestPhaseTracker:
    def test_first_image_is_reference(self):
        tracker = PhaseTracker()
        assert tracker.locate(GuideImage(_texture())) == Offset(0.0, 0.0)

    def test_detects_shift(self):
        base = _texture()
        tracker = PhaseTracker()
        tracker.locate(GuideImage(base))
        # content moves 3 px right and 2 px up
        shifted = np.roll(base, shift=(-2, 3), axis=(0, 1))
        offset = tracker.locate(GuideImage(shifted))
        assert offset.x == pytest.approx(3.0, abs=0.5)
        assert offset.y == pytest.approx(-2.0, abs=0.5)

    def test_low_response(self):
        tracker = PhaseTracker(min_response=1.1)
        tracker.locate(GuideImage(_texture()))
        with pytest.raises(TrackingFailed):
            tracker.locate(GuideImage(_texture(seed=4)))

    def test_shape_change(self):
        tracker = PhaseTracker()
        tracker.locate(GuideImage(_texture(size=64)))
        with pytest.raises(TrackingFailed):
            tracker.locate(GuideImage(_texture(size=32)))

    def test_reset(self):
        tracker = PhaseTracker()
        tracker.locate(GuideImage(_texture()))
        tracker.reset()
        assert tracker.locate(GuideImage(_texture(seed=9))) == Offset(0.0, 0.0)


class TestCreateTracker:
    def test_star(self):
        cfg = {"search_radius": 15, "quantization": 0.5}
        tracker = create_tracker("star", GuideImage(_star_image(50.0, 40.0)), cfg)
        assert isinstance(tracker, StarTracker)
        assert tracker.rectangle.width == 31
        assert isinstance(tracker.post_filter, OffsetQuantizer)

    def test_phase_is_referenced(self):
        image = GuideImage(_texture())
        tracker = create_tracker("phase", image, {})
        offset = tracker.locate(image)
        assert abs(offset) == pytest.approx(0.0, abs=0.01)

    def test_null(self):
        tracker = create_tracker("null", GuideImage(_texture()))
        assert isinstance(tracker, NullTracker)
        assert tracker.locate(GuideImage(_texture())) == Offset(0.0, 0.0)
