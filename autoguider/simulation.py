"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Simulation Devices

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

A simulated mount, guide port and guide camera for running the guiding
procedures without hardware.  All three share a :class:`SimulatedClock`
so that pulses, exposures and waits advance virtual time instantly.
"""

import logging
import math
import threading
import time
from typing import List, Optional, Tuple

import numpy as np

from .devices import GuidePortDevice, Imager
from .exceptions import DeviceError
from .guide_types import Exposure, GuideImage, GuidePortCommand, Offset
from .process import Clock

logger = logging.getLogger(__name__)

# mount axes are deliberately not aligned with the sensor axes
RA_VECTOR = Offset(math.sqrt(0.5) * math.sqrt(3) / 2, math.sqrt(0.5) * 0.5)
DEC_VECTOR = Offset(-0.5, math.sqrt(3) / 2)

# 15"/s guide speed on 10um pixels behind a 0.6m focal length [px/s]
PIXEL_SPEED = ((15.0 / 3600.0) * (math.pi / 180.0)) / (10e-6 / 0.6)


class SimulatedClock(Clock):
    """Virtual time shared by all simulated devices.

    Every sleep advances the virtual time immediately.  With a positive
    *real_time_factor* each sleep also blocks for that fraction of the
    requested time, which keeps background threads from spinning.
    """

    def __init__(self, start: float = 0.0, real_time_factor: float = 0.0):
        self._now = start
        self._lock = threading.Lock()
        self.real_time_factor = real_time_factor

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        if seconds > 0:
            with self._lock:
                self._now += seconds

    def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        time.sleep(max(seconds, 0.0) * self.real_time_factor)

    def wait(self, event: threading.Event, seconds: float) -> bool:
        if event.is_set():
            return True
        self.advance(seconds)
        return event.wait(max(seconds, 0.0) * self.real_time_factor)


# ---------------------------------------------------------------------------
# Mount
# ---------------------------------------------------------------------------
class SimulatedMount:
    """Star displacement caused by guide pulses and drift.

    Pulses are executed over time: a pulse of ``t`` seconds has fully
    moved the star only after ``t`` seconds of (virtual) time.

    Args:
        clock:       Shared clock.
        pixel_speed: Star speed in px/s while an output is active.
        drift:       Uncorrected drift in px/s.
        backlash:    Seconds of DEC activation lost after a reversal.
    """

    def __init__(
        self,
        clock: SimulatedClock,
        pixel_speed: float = PIXEL_SPEED,
        drift: Offset = Offset(0.0, 0.0),
        backlash: float = 0.0,
        ra_vector: Offset = RA_VECTOR,
        dec_vector: Offset = DEC_VECTOR,
    ):
        self.clock = clock
        self.pixel_speed = pixel_speed
        self.drift = drift
        self.backlash = backlash
        self.ra_vector = ra_vector
        self.dec_vector = dec_vector
        self._lock = threading.Lock()
        self._start = clock.now()
        self._last = self._start
        self._ra = 0.0
        self._dec = 0.0
        self._moved = Offset(0.0, 0.0)
        self._dec_sign = 0.0
        self._slack = 0.0

    def _advance_locked(self) -> None:
        now = self.clock.now()
        elapsed = now - self._last
        self._last = now
        if elapsed <= 0:
            return
        ra_change = math.copysign(min(abs(self._ra), elapsed), self._ra) if self._ra else 0.0
        dec_change = math.copysign(min(abs(self._dec), elapsed), self._dec) if self._dec else 0.0
        self._ra -= ra_change
        self._dec -= dec_change
        if self._slack > 0 and dec_change:
            absorbed = min(self._slack, abs(dec_change))
            self._slack -= absorbed
            dec_change = math.copysign(abs(dec_change) - absorbed, dec_change)
        self._moved = (
            self._moved
            + self.ra_vector * (ra_change * self.pixel_speed)
            + self.dec_vector * (dec_change * self.pixel_speed)
        )

    def activate(self, ra: float, dec: float) -> None:
        """Start a pulse of *ra* / *dec* signed seconds."""
        with self._lock:
            self._advance_locked()
            self._ra = ra
            self._dec = dec
            if dec:
                sign = math.copysign(1.0, dec)
                if self._dec_sign and sign != self._dec_sign:
                    self._slack = self.backlash
                self._dec_sign = sign

    def offset(self) -> Offset:
        """Current star displacement in pixels."""
        with self._lock:
            self._advance_locked()
            elapsed = self._last - self._start
            return self._moved + self.drift * elapsed


class SimulatedGuidePort(GuidePortDevice):
    def __init__(self, mount: SimulatedMount):
        super().__init__(mount.clock)
        self.mount = mount
        self.history: List[GuidePortCommand] = []
        self.fail = False

    def _activate(self, command: GuidePortCommand) -> None:
        if self.fail:
            raise DeviceError("simulated guide port failure")
        self.history.append(command)
        self.mount.activate(command.ra, command.dec)


# ---------------------------------------------------------------------------
# Camera
# ---------------------------------------------------------------------------
class SimulatedImager(Imager):
    """Render a single gaussian star displaced by the simulated mount.

    Args:
        mount:      Source of the star displacement.
        size:       Sensor ``(width, height)`` in pixels.
        star:       Star position at zero displacement.
        sigma:      Gaussian width of the star image.
        amplitude:  Peak value above background.
        background: Sky level.
        noise:      Standard deviation of additive gaussian noise.
        seed:       Noise generator seed.
    """

    def __init__(
        self,
        mount: SimulatedMount,
        size: Tuple[int, int] = (160, 160),
        star: Tuple[float, float] = (80.0, 80.0),
        sigma: float = 2.0,
        amplitude: float = 1000.0,
        background: float = 100.0,
        noise: float = 0.0,
        seed: Optional[int] = None,
    ):
        self.mount = mount
        self.clock = mount.clock
        self.size = size
        self.star = star
        self.sigma = sigma
        self.amplitude = amplitude
        self.background = background
        self.noise = noise
        self._rng = np.random.default_rng(seed)
        self._exposure: Optional[Exposure] = None
        self.star_visible = True
        self.failures = 0
        self.exposures = 0

    def start_exposure(self, exposure: Exposure) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise DeviceError("simulated exposure failure")
        self._exposure = exposure
        self.exposures += 1

    def wait(self, timeout: Optional[float] = None) -> bool:
        if self._exposure is None:
            return False
        self.clock.sleep(self._exposure.exposure_time)
        return True

    def get_image(self) -> GuideImage:
        if self._exposure is None:
            raise DeviceError("no exposure started")
        frame = self._exposure.frame
        if frame is None:
            x0, y0, width, height = 0, 0, self.size[0], self.size[1]
        else:
            x0, y0, width, height = frame.x, frame.y, frame.width, frame.height
        yy, xx = np.mgrid[y0:y0 + height, x0:x0 + width].astype(float)
        pixels = np.full((height, width), self.background, dtype=float)
        if self.star_visible:
            d = self.mount.offset()
            sx = self.star[0] + d.x
            sy = self.star[1] + d.y
            pixels += self.amplitude * np.exp(
                -((xx - sx) ** 2 + (yy - sy) ** 2) / (2 * self.sigma ** 2)
            )
        if self.noise > 0:
            pixels += self._rng.normal(0.0, self.noise, pixels.shape)
        pixels = np.clip(pixels, 0, 65535).astype(np.uint16)
        return GuideImage(pixels, (x0, y0))
