"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Guiding Value Types

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Small immutable value objects shared by the tracker, the calibration
model, the actuator and the guiding procedures.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import numpy as np


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Offset:
    """2-D displacement.

    Depending on context the components are pixels (tracker output) or
    seconds of guide-port activation (RA, DEC corrections).
    """

    x: float = 0.0
    y: float = 0.0

    def __add__(self, other: "Offset") -> "Offset":
        return Offset(self.x + other.x, self.y + other.y)

    def __sub__(self, other: "Offset") -> "Offset":
        return Offset(self.x - other.x, self.y - other.y)

    def __mul__(self, factor: float) -> "Offset":
        return Offset(self.x * factor, self.y * factor)

    __rmul__ = __mul__

    def __neg__(self) -> "Offset":
        return Offset(-self.x, -self.y)

    def __abs__(self) -> float:
        return math.hypot(self.x, self.y)

    def is_nan(self) -> bool:
        return math.isnan(self.x) or math.isnan(self.y)

    def __str__(self) -> str:
        return f"({self.x:.3f},{self.y:.3f})"


@dataclass(frozen=True)
class ImageRectangle:
    """Axis-aligned rectangle in absolute sensor coordinates."""

    x: int
    y: int
    width: int
    height: int

    def contains(self, px: float, py: float) -> bool:
        return (self.x <= px < self.x + self.width) and (
            self.y <= py < self.y + self.height
        )

    @classmethod
    def around(cls, center: Offset, radius: int) -> "ImageRectangle":
        """Square of side ``2 * radius + 1`` centred on *center*."""
        cx = int(round(center.x))
        cy = int(round(center.y))
        return cls(cx - radius, cy - radius, 2 * radius + 1, 2 * radius + 1)


@dataclass
class GuideImage:
    """Guide camera frame.

    ``origin`` is the position of the frame's top-left pixel on the full
    sensor, non-zero when only a sub-frame was read out.
    """

    pixels: np.ndarray
    origin: Tuple[int, int] = (0, 0)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


@dataclass(frozen=True)
class Exposure:
    exposure_time: float = 1.0
    frame: Optional[ImageRectangle] = None


# ---------------------------------------------------------------------------
# Guide port commands
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class GuidePortCommand:
    """One activation request: four non-negative pulse widths in seconds.

    At most one direction per axis may be active.
    """

    ra_plus: float = 0.0
    ra_minus: float = 0.0
    dec_plus: float = 0.0
    dec_minus: float = 0.0

    def __post_init__(self):
        for name in ("ra_plus", "ra_minus", "dec_plus", "dec_minus"):
            value = getattr(self, name)
            if math.isnan(value) or value < 0:
                raise ValueError(f"pulse width {name}={value} must be >= 0")
        if self.ra_plus > 0 and self.ra_minus > 0:
            raise ValueError("ra_plus and ra_minus are mutually exclusive")
        if self.dec_plus > 0 and self.dec_minus > 0:
            raise ValueError("dec_plus and dec_minus are mutually exclusive")

    @classmethod
    def from_correction(cls, tx: float, ty: float) -> "GuidePortCommand":
        """Split signed RA/DEC durations into directional pulse widths."""
        return cls(
            ra_plus=tx if tx > 0 else 0.0,
            ra_minus=-tx if tx < 0 else 0.0,
            dec_plus=ty if ty > 0 else 0.0,
            dec_minus=-ty if ty < 0 else 0.0,
        )

    @property
    def duration(self) -> float:
        """Time the longest pulse keeps the port active."""
        return max(self.ra_plus, self.ra_minus, self.dec_plus, self.dec_minus)

    @property
    def ra(self) -> float:
        return self.ra_plus - self.ra_minus

    @property
    def dec(self) -> float:
        return self.dec_plus - self.dec_minus

    def is_empty(self) -> bool:
        return self.duration <= 0.0


# ---------------------------------------------------------------------------
# Calibration and backlash samples
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class CalibrationPoint:
    """Star position after cumulative corrections ``ra``/``dec`` at time ``t``."""

    t: float
    ra: float
    dec: float
    star: Offset


class BacklashDirection(Enum):
    RA = "RA"
    DEC = "DEC"


@dataclass(frozen=True)
class BacklashPoint:
    id: int
    t: float
    x: float
    y: float


@dataclass(frozen=True)
class BacklashResult:
    direction: BacklashDirection
    x: float
    y: float
    longitudinal: float
    lateral: float
    forward: float
    backward: float
    f: float
    b: float
    offset: float
    drift: float

    def __str__(self) -> str:
        return (
            f"{self.direction.value}: dir=({self.x:.3f},{self.y:.3f}) "
            f"forward={self.forward:.3f} backward={self.backward:.3f} "
            f"f={self.f:.3f} b={self.b:.3f} drift={self.drift:.4f} "
            f"lon={self.longitudinal:.3f} lat={self.lateral:.3f}"
        )


# ---------------------------------------------------------------------------
# Tracking records
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class TrackingPoint:
    """One guiding cycle: measured offset and the correction applied (s)."""

    t: float
    tracking_offset: Offset
    correction: Offset


@dataclass
class TrackingSummary:
    """Running statistics of one guiding run."""

    count: int = 0
    last_offset: Offset = field(default_factory=Offset)
    _sum_x: float = 0.0
    _sum_y: float = 0.0
    _sum_sq: float = 0.0

    def add(self, point: TrackingPoint) -> None:
        o = point.tracking_offset
        self.count += 1
        self.last_offset = o
        self._sum_x += o.x
        self._sum_y += o.y
        self._sum_sq += o.x * o.x + o.y * o.y

    @property
    def mean(self) -> Offset:
        if self.count == 0:
            return Offset()
        return Offset(self._sum_x / self.count, self._sum_y / self.count)

    @property
    def rms(self) -> float:
        if self.count == 0:
            return 0.0
        return math.sqrt(self._sum_sq / self.count)


@dataclass(frozen=True)
class ProgressInfo:
    t: float
    progress: float
    aborted: bool = False


# ---------------------------------------------------------------------------
# Supervisor state
# ---------------------------------------------------------------------------
class ProcessState(Enum):
    IDLE = "idle"
    CALIBRATING = "calibrating"
    CALIBRATED = "calibrated"
    GUIDING = "guiding"
    BACKLASH_TESTING = "backlash_testing"
    FAILED = "failed"

    @property
    def active(self) -> bool:
        """True while a worker thread owns the guide port."""
        return self in (
            ProcessState.CALIBRATING,
            ProcessState.GUIDING,
            ProcessState.BACKLASH_TESTING,
        )
