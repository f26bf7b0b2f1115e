"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Star Tracking Module

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Trackers measure how far the guide star has moved from its reference
position.  All positions are absolute sensor coordinates, so images
read out as a sub-frame are translated by their origin first.

Uses OpenCV (cv2) for smoothing, peak search, centroiding and phase
correlation.
"""

import abc
import logging
from typing import Callable, Optional, Tuple

import cv2
import numpy as np

from .exceptions import TrackingFailed
from .guide_types import GuideImage, ImageRectangle, Offset

logger = logging.getLogger(__name__)

PostFilter = Callable[[Offset], Offset]


def luminance(pixels: np.ndarray) -> np.ndarray:
    """Return a float32 2-D luminance array for *pixels*.

    Raises:
        TrackingFailed: for pixel types that cannot be tracked.
    """
    if not isinstance(pixels, np.ndarray):
        raise TrackingFailed(f"unsupported image type {type(pixels).__name__}")
    if pixels.dtype.kind not in "uif":
        raise TrackingFailed(f"unsupported pixel type {pixels.dtype}")
    if pixels.ndim == 2:
        return pixels.astype(np.float32)
    if pixels.ndim == 3 and pixels.shape[2] in (3, 4):
        return pixels[:, :, :3].astype(np.float32).mean(axis=2)
    raise TrackingFailed(f"unsupported image shape {pixels.shape}")


# ---------------------------------------------------------------------------
# Star detector
# ---------------------------------------------------------------------------
class StarDetector:
    """Locate a single star with sub-pixel accuracy.

    The brightest point of the smoothed search area is taken as the
    approximate position.  Pixels within the half-maximum radius (at
    least ``min_radius``) are then averaged with background-subtracted
    weights.

    Args:
        threshold:  Minimum peak height above background, in units of the
                    background noise.
        smoothing:  Gaussian sigma used before the peak search.
        min_radius: Smallest centroid radius in pixels.
        max_radius: Largest half-maximum radius considered.
    """

    def __init__(
        self,
        threshold: float = 5.0,
        smoothing: float = 1.0,
        min_radius: int = 5,
        max_radius: int = 20,
    ):
        self.threshold = threshold
        self.smoothing = smoothing
        self.min_radius = min_radius
        self.max_radius = max_radius

    @staticmethod
    def _clip(area: Tuple[int, int, int, int], shape) -> Tuple[int, int, int, int]:
        x, y, w, h = area
        x0 = max(0, x)
        y0 = max(0, y)
        x1 = min(shape[1], x + w)
        y1 = min(shape[0], y + h)
        return x0, y0, x1, y1

    def _radius(self, data: np.ndarray, px: int, py: int, k: int) -> int:
        half = data[py, px] / 2.0
        window = data[py - k:py + k + 1, px - k:px + k + 1]
        yy, xx = np.mgrid[-k:k + 1, -k:k + 1]
        rings = np.ceil(np.hypot(xx, yy)).astype(int)
        for r in range(k + 1):
            ring = window[rings == r]
            if ring.size and np.all(ring <= half):
                return r
        return k

    def __call__(
        self, pixels: np.ndarray, area: Optional[Tuple[int, int, int, int]] = None
    ) -> Tuple[float, float]:
        """Return the star position ``(x, y)`` in image coordinates.

        Args:
            pixels: Image data.
            area:   Search rectangle ``(x, y, width, height)`` in image
                    coordinates; the whole image when ``None``.

        Raises:
            TrackingFailed: when no star stands out from the background
                or the star is too close to the image border.
        """
        data = luminance(pixels)
        if area is None:
            area = (0, 0, data.shape[1], data.shape[0])
        x0, y0, x1, y1 = self._clip(area, data.shape)
        if x1 - x0 < 3 or y1 - y0 < 3:
            raise TrackingFailed(f"search area {area} outside image {data.shape}")

        region = data[y0:y1, x0:x1]
        smoothed = cv2.GaussianBlur(region, (0, 0), self.smoothing)
        _, max_val, _, max_loc = cv2.minMaxLoc(smoothed)

        level = float(np.median(smoothed))
        noise = 1.4826 * float(np.median(np.abs(smoothed - level)))
        if max_val - level <= self.threshold * max(noise, 1e-6):
            raise TrackingFailed(
                f"no star above threshold (peak {max_val:.1f}, "
                f"background {level:.1f}, noise {noise:.2f})"
            )

        px = x0 + int(max_loc[0])
        py = y0 + int(max_loc[1])
        background = float(np.median(region))
        bg_data = data - background

        k = min(px, py, data.shape[1] - 1 - px, data.shape[0] - 1 - py, self.max_radius)
        if k < 3:
            raise TrackingFailed(f"star at ({px},{py}) too close to border")
        r = max(self._radius(bg_data, px, py, k), self.min_radius)
        if r > min(px, py, data.shape[1] - 1 - px, data.shape[0] - 1 - py):
            raise TrackingFailed(f"not enough room for centroid radius {r} at ({px},{py})")

        window = np.clip(bg_data[py - r:py + r + 1, px - r:px + r + 1], 0, None)
        moments = cv2.moments(window.astype(np.float32))
        if moments["m00"] <= 0:
            raise TrackingFailed(f"empty centroid window at ({px},{py})")
        cx = px - r + moments["m10"] / moments["m00"]
        cy = py - r + moments["m01"] / moments["m00"]
        logger.debug("Star found at (%.2f, %.2f), radius %d", cx, cy, r)
        return float(cx), float(cy)


# ---------------------------------------------------------------------------
# Post filters
# ---------------------------------------------------------------------------
class OffsetQuantizer:
    """Round offsets to multiples of *step* pixels."""

    def __init__(self, step: float = 1.0):
        if step <= 0:
            raise ValueError(f"quantization step must be positive, got {step}")
        self.step = step

    def __call__(self, offset: Offset) -> Offset:
        return Offset(
            round(offset.x / self.step) * self.step,
            round(offset.y / self.step) * self.step,
        )


# ---------------------------------------------------------------------------
# Trackers
# ---------------------------------------------------------------------------
class Tracker(abc.ABC):
    """Measure the guide star offset from its reference position."""

    def __init__(self, post_filter: Optional[PostFilter] = None):
        self.post_filter = post_filter

    @abc.abstractmethod
    def _locate(self, image: GuideImage, rectangle: Optional[ImageRectangle]) -> Offset:
        """Raw offset of the star in *image*."""

    def locate(self, image: GuideImage, rectangle: Optional[ImageRectangle] = None) -> Offset:
        """Return the star offset, passed through the post filter.

        Raises:
            TrackingFailed: if the star cannot be located.
        """
        offset = self._locate(image, rectangle)
        if self.post_filter is not None:
            offset = self.post_filter(offset)
        return offset

    def __call__(self, image: GuideImage) -> Offset:
        return self.locate(image)


class StarTracker(Tracker):
    """Track a star relative to a fixed reference point.

    Args:
        reference: Reference position (absolute sensor coordinates).
        rectangle: Default search rectangle (absolute sensor coordinates),
                   the whole image when ``None``.
        detector:  Callable ``(pixels, area) -> (x, y)``.
    """

    def __init__(
        self,
        reference: Offset,
        rectangle: Optional[ImageRectangle] = None,
        detector: Optional[StarDetector] = None,
        post_filter: Optional[PostFilter] = None,
    ):
        super().__init__(post_filter)
        self.reference = reference
        self.rectangle = rectangle
        self.detector = detector or StarDetector()

    @classmethod
    def acquire(
        cls,
        image: GuideImage,
        radius: int = 50,
        detector: Optional[StarDetector] = None,
        post_filter: Optional[PostFilter] = None,
    ) -> "StarTracker":
        """Build a tracker referenced to the brightest star in *image*."""
        detector = detector or StarDetector()
        x, y = detector(image.pixels)
        ox, oy = image.origin
        reference = Offset(x + ox, y + oy)
        logger.info("Guide star acquired at %s", reference)
        return cls(
            reference,
            ImageRectangle.around(reference, radius),
            detector=detector,
            post_filter=post_filter,
        )

    def _locate(self, image: GuideImage, rectangle: Optional[ImageRectangle]) -> Offset:
        rectangle = rectangle or self.rectangle
        ox, oy = image.origin
        area = None
        if rectangle is not None:
            area = (rectangle.x - ox, rectangle.y - oy, rectangle.width, rectangle.height)
        x, y = self.detector(image.pixels, area)
        found = Offset(x + ox, y + oy)
        return found - self.reference

    def __str__(self) -> str:
        return f"StarTracker(reference={self.reference}, rectangle={self.rectangle})"


class PhaseTracker(Tracker):
    """Image-to-image phase correlation against the first image seen.

    Suited to extended objects where no single star dominates.  The
    search rectangle is ignored.
    """

    def __init__(self, min_response: float = 0.05, post_filter: Optional[PostFilter] = None):
        super().__init__(post_filter)
        self.min_response = min_response
        self._reference: Optional[np.ndarray] = None
        self._window: Optional[np.ndarray] = None

    def reset(self) -> None:
        self._reference = None

    def _locate(self, image: GuideImage, rectangle: Optional[ImageRectangle]) -> Offset:
        data = luminance(image.pixels)
        if self._reference is None:
            self._window = cv2.createHanningWindow((data.shape[1], data.shape[0]), cv2.CV_32F)
            self._reference = data * self._window
            return Offset(0.0, 0.0)
        if data.shape != self._reference.shape:
            raise TrackingFailed(
                f"image shape {data.shape} differs from reference {self._reference.shape}"
            )
        (dx, dy), response = cv2.phaseCorrelate(self._reference, data * self._window)
        if response < self.min_response:
            raise TrackingFailed(f"phase correlation response {response:.3f} too low")
        return Offset(float(dx), float(dy))


class NullTracker(Tracker):
    """Always reports a zero offset; useful for open-loop tests."""

    def _locate(self, image: GuideImage, rectangle: Optional[ImageRectangle]) -> Offset:
        return Offset(0.0, 0.0)


def create_tracker(
    method: str,
    image: GuideImage,
    config: Optional[dict] = None,
) -> Tracker:
    """Factory that builds a tracker by config name from a first image."""
    cfg = config or {}
    name = (method or "star").lower().strip()
    if name == "phase":
        tracker: Tracker = PhaseTracker(cfg.get("min_response", 0.05))
        tracker.locate(image)
        return tracker
    if name == "null":
        return NullTracker()
    post_filter = None
    if cfg.get("quantization", 0.0) > 0:
        post_filter = OffsetQuantizer(cfg["quantization"])
    detector = StarDetector(
        threshold=cfg.get("threshold", 5.0),
        smoothing=cfg.get("smoothing", 1.0),
    )
    return StarTracker.acquire(
        image,
        radius=int(cfg.get("search_radius", 50)),
        detector=detector,
        post_filter=post_filter,
    )
