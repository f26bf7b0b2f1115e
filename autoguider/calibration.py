"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Calibration Module

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Provides the affine calibration model that maps guide-port activation
times to pixel displacement, a CalibrationSolver that fits the model
from measured calibration points using scipy.linalg.lstsq, and the
grid-constant computation that chooses the calibration pulse length.
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

import astropy.units as u
import numpy as np
from scipy import linalg

from .exceptions import InsufficientCalibrationData, SingularCalibration
from .guide_types import CalibrationPoint, Offset

logger = logging.getLogger(__name__)

DET_EPSILON = 1e-10

SIDEREAL_RATE = (2 * math.pi * u.rad) / (86400 * u.s)


# ---------------------------------------------------------------------------
# Calibration model
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class CalibrationModel:
    """Affine map ``offset = A * correction + t * drift``.

    ``a0, a1, a3, a4`` form the matrix A (pixels per second of RA/DEC
    activation), ``a2, a5`` the drift vector in pixels per second.
    Instances are immutable so a running guiding cycle always sees a
    complete model.
    """

    a0: float = 1.0
    a1: float = 0.0
    a2: float = 0.0
    a3: float = 0.0
    a4: float = 1.0
    a5: float = 0.0

    @classmethod
    def identity(cls) -> "CalibrationModel":
        return cls()

    @classmethod
    def from_coefficients(cls, a: Sequence[float]) -> "CalibrationModel":
        if len(a) != 6:
            raise ValueError(f"need 6 coefficients, got {len(a)}")
        return cls(*(float(v) for v in a))

    @property
    def coefficients(self) -> Tuple[float, ...]:
        return (self.a0, self.a1, self.a2, self.a3, self.a4, self.a5)

    @property
    def det(self) -> float:
        return self.a0 * self.a4 - self.a3 * self.a1

    def is_invertible(self) -> bool:
        return math.isfinite(self.det) and abs(self.det) >= DET_EPSILON

    # ------------------------------------------------------------------
    # Forward and inverse evaluation
    # ------------------------------------------------------------------
    def apply(self, correction: Offset, t: float) -> Offset:
        """Pixel offset produced by *correction* seconds after *t* seconds."""
        return Offset(
            self.a0 * correction.x + self.a1 * correction.y + t * self.a2,
            self.a3 * correction.x + self.a4 * correction.y + t * self.a5,
        )

    def invert(self, offset: Offset, t: float) -> Offset:
        """Correction (RA, DEC seconds) that produces *offset* in time *t*.

        Raises:
            SingularCalibration: if the matrix part is not invertible.
        """
        det = self.det
        if not math.isfinite(det) or abs(det) < DET_EPSILON:
            raise SingularCalibration(f"calibration {self} has det={det:g}")
        dx = offset.x - t * self.a2
        dy = offset.y - t * self.a5
        return Offset(
            (dx * self.a4 - dy * self.a1) / det,
            (self.a0 * dy - self.a3 * dx) / det,
        )

    def default_correction(self) -> Offset:
        """Correction per second that cancels the drift."""
        return self.invert(Offset(0.0, 0.0), 1.0)

    def quality(self) -> float:
        """1 for perpendicular RA/DEC directions, 0 for parallel ones."""
        ra_norm = math.hypot(self.a0, self.a3)
        dec_norm = math.hypot(self.a1, self.a4)
        if ra_norm == 0 or dec_norm == 0:
            return 0.0
        cos_angle = (self.a0 * self.a1 + self.a3 * self.a4) / (ra_norm * dec_norm)
        q = 1.0 - cos_angle * cos_angle
        if math.isnan(q):
            return 0.0
        return q

    def rescale(self, scale: float) -> "CalibrationModel":
        """Model for pixels *scale* times larger, e.g. after binning."""
        return CalibrationModel(
            self.a0 * scale,
            self.a1 * scale,
            self.a2,
            self.a3 * scale,
            self.a4 * scale,
            self.a5,
        )

    @classmethod
    def fit(cls, points: Iterable[CalibrationPoint]) -> "CalibrationModel":
        solver = CalibrationSolver()
        for point in points:
            solver.add_point(point)
        return solver.solve()

    def __str__(self) -> str:
        return "[{:.4f},{:.4f},{:.4f};{:.4f},{:.4f},{:.4f}]".format(
            *self.coefficients
        )


# ---------------------------------------------------------------------------
# Least-squares solver
# ---------------------------------------------------------------------------
class CalibrationSolver:
    """Fit a :class:`CalibrationModel` from calibration points.

    Each point contributes one row ``(ra, dec, t)`` to the design matrix;
    the x and y star offsets are regressed separately against it.
    """

    MIN_POINTS = 3

    def __init__(self) -> None:
        self._points: List[CalibrationPoint] = []

    def add_point(self, point: CalibrationPoint) -> None:
        self._points.append(point)
        logger.debug(
            "Calibration point added: t=%.2f, ra=%.2f, dec=%.2f, star=%s",
            point.t,
            point.ra,
            point.dec,
            point.star,
        )

    @property
    def points(self) -> List[CalibrationPoint]:
        return list(self._points)

    def __len__(self) -> int:
        return len(self._points)

    def solve(self) -> CalibrationModel:
        """Run the regression and return the fitted model.

        Raises:
            InsufficientCalibrationData: fewer than 3 points, a rank
                deficient design matrix or a singular fitted model.
        """
        if len(self._points) < self.MIN_POINTS:
            raise InsufficientCalibrationData(
                f"need at least {self.MIN_POINTS} calibration points, "
                f"got {len(self._points)}"
            )

        design = np.array([[p.ra, p.dec, p.t] for p in self._points], dtype=float)
        xs = np.array([p.star.x for p in self._points], dtype=float)
        ys = np.array([p.star.y for p in self._points], dtype=float)

        coef_x, _, rank, _ = linalg.lstsq(design, xs)
        if rank < 3:
            raise InsufficientCalibrationData(
                f"calibration points are degenerate (rank {rank})"
            )
        coef_y, _, _, _ = linalg.lstsq(design, ys)

        model = CalibrationModel(
            float(coef_x[0]),
            float(coef_x[1]),
            float(coef_x[2]),
            float(coef_y[0]),
            float(coef_y[1]),
            float(coef_y[2]),
        )
        if not model.is_invertible():
            raise InsufficientCalibrationData(
                f"fitted calibration {model} is singular"
            )
        logger.info(
            "Calibration solved: %s (det=%.4f, quality=%.3f, %d points)",
            model,
            model.det,
            model.quality(),
            len(self._points),
        )
        return model


# ---------------------------------------------------------------------------
# Grid constant
# ---------------------------------------------------------------------------
class GridConstant:
    """Optical scale of the guide camera and the guide-port speed.

    Args:
        focal_length: Guide scope focal length in metres (0 = unknown).
        pixel_size:   Guide camera pixel size in metres.
        guide_rate:   Guide speed as a fraction of the sidereal rate.
    """

    DEFAULT_FOCAL_LENGTH = 0.24

    def __init__(self, focal_length: float, pixel_size: float, guide_rate: float = 0.5):
        if focal_length < 0:
            raise ValueError(f"focal length {focal_length:.3f} cannot be negative")
        if focal_length == 0:
            focal_length = self.DEFAULT_FOCAL_LENGTH
            logger.warning("Focal length undefined, using %.3f", focal_length)
        if focal_length > 100:
            raise ValueError(f"focal length {focal_length} too large")
        if pixel_size <= 0 or pixel_size > 100e-6:
            raise ValueError(
                f"pixel size {pixel_size * 1e6:.1f}um must be <= 100um and positive"
            )
        if guide_rate <= 0:
            guide_rate = 0.5
        self.focal_length = focal_length * u.m
        self.pixel_size = pixel_size * u.m
        self.guide_rate = guide_rate

    @property
    def angle_per_pixel(self) -> u.Quantity:
        return (self.pixel_size / self.focal_length).decompose() * u.rad

    @property
    def arcsec_per_pixel(self) -> float:
        return float(self.angle_per_pixel.to_value(u.arcsec))

    @property
    def arcsec_per_second(self) -> float:
        return float((SIDEREAL_RATE * self.guide_rate).to_value(u.arcsec / u.s))

    @property
    def pixels_per_second(self) -> float:
        return self.arcsec_per_second / self.arcsec_per_pixel

    def __call__(self, pixels: float) -> float:
        """Seconds of activation that move the star by about *pixels*.

        The displacement is kept between 5 and 100 pixels and at least
        5 arc seconds.
        """
        if pixels * self.arcsec_per_pixel < 5:
            pixels = 5 / self.arcsec_per_pixel
        pixels = min(max(pixels, 5.0), 100.0)
        return pixels / self.pixels_per_second


def grid_constant(focal_length: float, pixel_size: float, guide_rate: float = 0.5) -> float:
    """Calibration pulse length in seconds.

    Uses the larger of the times needed to move the star 30 pixels and
    60 arc seconds, limited to 5..15 seconds. Returns 0 when the focal
    length is unknown so the caller can fall back to a fixed value.

    Raises:
        ValueError: when more than 60 seconds would be needed.
    """
    if focal_length <= 0:
        return 0.0
    gc = GridConstant(focal_length, pixel_size, guide_rate)
    pixel_time = 30.0 / gc.pixels_per_second
    angle_time = 60.0 / gc.arcsec_per_second
    seconds = max(pixel_time, angle_time)
    logger.debug(
        "Grid constant candidates: %.1fs (30px), %.1fs (60arcsec)",
        pixel_time,
        angle_time,
    )
    if seconds > 60:
        raise ValueError(f"grid constant {seconds:.1f}s too large")
    if seconds < 5:
        seconds = 5.0
    if seconds > 15:
        seconds = 15.0
    return seconds
