"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Device Interfaces

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Hardware-agnostic interfaces for the guide camera and the guide port.
Concrete implementations live in :mod:`guideport_drivers` and
:mod:`simulation`.
"""

import abc
import logging
import threading
from typing import Optional

from .exceptions import DeviceError
from .guide_types import Exposure, GuideImage, GuidePortCommand
from .process import Clock, SystemClock

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Imager
# ---------------------------------------------------------------------------
class Imager(abc.ABC):
    """Guide camera.  Raises :class:`DeviceError` on failure."""

    @abc.abstractmethod
    def start_exposure(self, exposure: Exposure) -> None:
        """Begin an exposure (non-blocking)."""

    @abc.abstractmethod
    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the exposure is complete; ``False`` on timeout."""

    @abc.abstractmethod
    def get_image(self) -> GuideImage:
        """Return the image of the last completed exposure."""


# ---------------------------------------------------------------------------
# Guide port
# ---------------------------------------------------------------------------
class GuidePortDevice(abc.ABC):
    """Base class for all guide ports.

    :meth:`activate` starts the four pulses and returns; the port stays
    busy until the longest pulse has elapsed.  A second activation
    during that time is rejected with :class:`DeviceError`.
    """

    # pulses ending within this margin count as finished
    BUSY_TOLERANCE = 1e-3

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._busy_until = 0.0

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._clock.now() < self._busy_until - self.BUSY_TOLERANCE

    def activate(
        self,
        ra_plus: float = 0.0,
        ra_minus: float = 0.0,
        dec_plus: float = 0.0,
        dec_minus: float = 0.0,
    ) -> None:
        """Activate the outputs for the given number of seconds.

        Raises:
            DeviceError: if a previous activation is still in progress or
                the hardware rejects the command.
            ValueError:  for negative or conflicting pulse widths.
        """
        command = GuidePortCommand(ra_plus, ra_minus, dec_plus, dec_minus)
        with self._lock:
            now = self._clock.now()
            if now < self._busy_until - self.BUSY_TOLERANCE:
                raise DeviceError(
                    f"guide port busy for another {self._busy_until - now:.3f}s"
                )
            self._busy_until = now + command.duration
        logger.debug(
            "Guide port activate: RA+%.3f RA-%.3f DEC+%.3f DEC-%.3f",
            command.ra_plus,
            command.ra_minus,
            command.dec_plus,
            command.dec_minus,
        )
        try:
            self._activate(command)
        except DeviceError:
            with self._lock:
                self._busy_until = 0.0
            raise

    @abc.abstractmethod
    def _activate(self, command: GuidePortCommand) -> None:
        """Send *command* to the hardware."""
