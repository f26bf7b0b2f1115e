"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Kalman Filter

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Constant-velocity Kalman filter for the guide star position.  The state
vector is ``(x, vx, y, vy)``; only the positions are measured.
"""

import logging
from typing import Optional

import numpy as np

from .guide_types import Offset

logger = logging.getLogger(__name__)


class KalmanFilter:
    """Smooth noisy star offsets into a position and velocity estimate.

    Args:
        dt:                Time between measurements in seconds.
        system_error:      Standard deviation of the random-walk velocity
                           noise (pixels per sqrt(second) per second).
        measurement_error: Standard deviation of a single measurement
                           in pixels.
    """

    def __init__(self, dt: float, system_error: float = 1.0, measurement_error: float = 1.0):
        if dt <= 0:
            raise ValueError(f"time step must be positive, got {dt}")
        self.dt = float(dt)

        self.phi = np.eye(4)
        self.phi[0, 1] = self.dt
        self.phi[2, 3] = self.dt

        self.h = np.zeros((2, 4))
        self.h[0, 0] = 1.0
        self.h[1, 2] = 1.0

        self.q = np.zeros((4, 4))
        self.r = np.eye(2)
        self.system_error = system_error
        self.measurement_error = measurement_error
        self.configure(system_error, measurement_error)

        self.x: Optional[np.ndarray] = None
        self.p = np.eye(4) * (measurement_error ** 2)

    def configure(self, system_error: float, measurement_error: float) -> None:
        """Recompute the noise covariances, keeping the current state."""
        self.system_error = float(system_error)
        self.measurement_error = float(measurement_error)

        dt = self.dt
        block = np.array([
            [dt ** 3 / 3.0, dt ** 2 / 2.0],
            [dt ** 2 / 2.0, dt],
        ]) * self.system_error ** 2
        q = np.zeros((4, 4))
        q[0:2, 0:2] = block
        q[2:4, 2:4] = block
        self.q = q
        self.r = np.eye(2) * self.measurement_error ** 2
        logger.debug(
            "Kalman filter configured: system_error=%.3f, measurement_error=%.3f",
            self.system_error,
            self.measurement_error,
        )

    @property
    def initialized(self) -> bool:
        return self.x is not None

    def update(self, measurement: Offset) -> Offset:
        """Fold one measurement into the estimate and return the position."""
        z = np.array([measurement.x, measurement.y], dtype=float)
        if self.x is None:
            self.x = np.array([z[0], 0.0, z[1], 0.0])
            self.p = np.eye(4) * (self.measurement_error ** 2)
            return self.offset()

        # predict
        x_pred = self.phi @ self.x
        p_pred = self.phi @ self.p @ self.phi.T + self.q

        # correct
        s = self.h @ p_pred @ self.h.T + self.r
        k = p_pred @ self.h.T @ np.linalg.inv(s)
        self.x = x_pred + k @ (z - self.h @ x_pred)
        p = (np.eye(4) - k @ self.h) @ p_pred
        self.p = 0.5 * (p + p.T)
        return self.offset()

    def offset(self) -> Offset:
        if self.x is None:
            return Offset(0.0, 0.0)
        return Offset(float(self.x[0]), float(self.x[2]))

    def velocity(self) -> Offset:
        if self.x is None:
            return Offset(0.0, 0.0)
        return Offset(float(self.x[1]), float(self.x[3]))

    def reset(self) -> None:
        self.x = None
        self.p = np.eye(4) * (self.measurement_error ** 2)
