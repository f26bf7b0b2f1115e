"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Backlash Analysis

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Fits a hysteresis model to star positions recorded while one axis is
pulsed in the repeating pattern forward, forward, backward, backward.

Every point is projected onto the principal direction of the point
cloud.  Point ``s`` has seen ``K[j]`` moves of phase ``j`` (``j = s % 4``
for the move that produced it), so the projected position is modelled as

    X = f*K0 + forward*K1 - b*K2 - backward*K3 + offset + drift*t

``f`` and ``b`` are the displacements of the first move after a
reversal, ``forward`` and ``backward`` those of the repeated move.  A
mount with backlash shows ``f < forward`` and ``b < backward``.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np
from scipy import linalg, stats

from .guide_types import BacklashDirection, BacklashPoint, BacklashResult

logger = logging.getLogger(__name__)

MIN_POINTS = 5

# pulse sign for each phase of the move cycle
MOVE_PATTERN = (1, 1, -1, -1)


class BacklashAnalysis:
    """Incremental backlash analyser.

    Args:
        direction:   Axis that is being pulsed.
        interval:    Pulse length in seconds (informational).
        last_points: Only analyse the most recent points (0 = all).  The
                     window always starts on a full move cycle.
    """

    def __init__(
        self,
        direction: BacklashDirection = BacklashDirection.DEC,
        interval: float = 5.0,
        last_points: int = 0,
    ):
        self.direction = direction
        self.interval = interval
        self.last_points = max(0, int(last_points))
        self._points: List[BacklashPoint] = []

    @property
    def points(self) -> List[BacklashPoint]:
        return list(self._points)

    def update(self, point: BacklashPoint) -> Optional[BacklashResult]:
        """Add *point* and return the refitted result once enough points exist."""
        self._points.append(point)
        if len(self._points) < MIN_POINTS:
            return None
        return self(self._points)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _window(self, points: Sequence[BacklashPoint]) -> Sequence[BacklashPoint]:
        if self.last_points == 0 or len(points) <= self.last_points:
            return points
        start = 4 * ((len(points) - self.last_points) // 4)
        return points[start:]

    @staticmethod
    def _principal_direction(xy: np.ndarray) -> np.ndarray:
        cov = np.cov(xy, rowvar=False, bias=True)
        eigenvalues, eigenvectors = np.linalg.eigh(cov)
        v = eigenvectors[:, int(np.argmax(eigenvalues))]
        return v / np.hypot(v[0], v[1])

    @staticmethod
    def _orient(direction: np.ndarray, xy: np.ndarray) -> np.ndarray:
        """Flip *direction* so that forward moves increase the projection."""
        steps = np.diff(xy, axis=0)
        signs = np.array([MOVE_PATTERN[s % 4] for s in range(len(steps))])
        progress = float(np.sum((steps @ direction) * signs))
        if progress < 0:
            return -direction
        return direction

    @staticmethod
    def _drift(t: np.ndarray, projected: np.ndarray) -> float:
        """Average slope of the projection over time within each phase."""
        slopes = []
        for phase in range(4):
            tt = t[phase::4]
            xx = projected[phase::4]
            if len(tt) < 2 or np.ptp(tt) == 0:
                continue
            slopes.append(stats.linregress(tt, xx).slope)
        if not slopes:
            return 0.0
        return float(np.mean(slopes))

    @staticmethod
    def _move_counts(n: int) -> np.ndarray:
        counts = np.zeros((n, 4))
        k = np.zeros(4)
        for s in range(n):
            counts[s] = k
            k[s % 4] += 1
        return counts

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def __call__(self, points: Sequence[BacklashPoint]) -> Optional[BacklashResult]:
        """Fit the hysteresis model.

        Returns:
            The :class:`BacklashResult`, or ``None`` with fewer than 5 points
            or when the point cloud has no extent.
        """
        window = self._window(points)
        n = len(window)
        if n < MIN_POINTS:
            logger.error("Need at least %d backlash points, got %d", MIN_POINTS, n)
            return None

        xy = np.array([[p.x, p.y] for p in window], dtype=float)
        t = np.array([p.t for p in window], dtype=float)
        if np.allclose(xy, xy[0]):
            logger.error("Backlash points do not move, cannot determine direction")
            return None

        direction = self._orient(self._principal_direction(xy), xy)
        projected = xy @ direction
        lateral_component = xy[:, 0] * direction[1] - xy[:, 1] * direction[0]
        lateral = float(np.std(lateral_component, ddof=1))

        drift = self._drift(t, projected)

        counts = self._move_counts(n)
        design = np.column_stack([
            counts[:, 0],
            counts[:, 1],
            -counts[:, 2],
            -counts[:, 3],
            np.ones(n),
        ])
        rhs = projected - drift * t
        solution, _, rank, _ = linalg.lstsq(design, rhs)
        if rank < 5:
            logger.debug("Backlash system has rank %d with %d points", rank, n)
        f, forward, b, backward, offset = (float(v) for v in solution)

        residuals = rhs - design @ solution
        longitudinal = float(np.std(residuals, ddof=1))

        result = BacklashResult(
            direction=self.direction,
            x=float(direction[0]),
            y=float(direction[1]),
            longitudinal=longitudinal,
            lateral=lateral,
            forward=forward,
            backward=backward,
            f=f,
            b=b,
            offset=offset,
            drift=drift,
        )
        logger.debug("Backlash analysis (%d points): %s", n, result)
        return result
