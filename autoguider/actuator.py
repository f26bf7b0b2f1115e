"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Guide Port Actuator

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Turns a correction in seconds of RA/DEC activation into guide-port
pulses.  Two styles are supported:

* **GuidePortActuator** – one bounded pulse (or a short train of
  sub-pulses) per guiding cycle.
* **DrivingProcess**    – a background thread that keeps issuing short
  pulses at a fixed cadence with a duty cycle set by the guiding loop.
"""

import logging
import math
import threading
from typing import Optional, Tuple

from .devices import GuidePortDevice
from .exceptions import DeviceError
from .guide_types import GuidePortCommand, Offset
from .process import Clock, ProcessThread

logger = logging.getLogger(__name__)


def _clamp(value: float, limit: float) -> float:
    return max(-limit, min(limit, value))


# ---------------------------------------------------------------------------
# Discrete pulses
# ---------------------------------------------------------------------------
class GuidePortActuator:
    """Issue bounded correction pulses and block for their duration."""

    def __init__(self, device: GuidePortDevice, clock: Optional[Clock] = None):
        self.device = device
        self.clock = clock or device.clock

    def _pulse(self, command: GuidePortCommand) -> None:
        if command.is_empty():
            return
        self.device.activate(
            command.ra_plus, command.ra_minus, command.dec_plus, command.dec_minus
        )
        self.clock.sleep(command.duration)

    def apply(
        self,
        correction: Offset,
        max_interval: float,
        sequential: bool = False,
        stepped: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[GuidePortCommand]:
        """Apply *correction* (RA, DEC seconds) limited to *max_interval*.

        In sequential mode the RA and DEC pulses together never exceed
        *max_interval*; otherwise each axis is limited separately and both
        run at the same time.  Setting *cancel* skips any pulse that has
        not started yet.

        Returns:
            The total command issued, or ``None`` if the correction was
            discarded.
        """
        if correction.is_nan():
            logger.warning("Discarding invalid correction %s", correction)
            return None
        if max_interval <= 0:
            logger.warning("Non-positive correction interval %.3f, nothing sent", max_interval)
            return None

        tx = _clamp(correction.x, max_interval)
        ty = _clamp(correction.y, max_interval)
        if sequential:
            magnitude = abs(tx) + abs(ty)
        else:
            magnitude = max(abs(tx), abs(ty))
        if magnitude > max_interval:
            scale = max_interval / magnitude
            tx *= scale
            ty *= scale

        command = GuidePortCommand.from_correction(tx, ty)
        logger.debug(
            "Correction %s -> RA %.3fs, DEC %.3fs (sequential=%s, stepped=%s)",
            correction,
            tx,
            ty,
            sequential,
            stepped,
        )
        if command.is_empty():
            return command

        if sequential:
            self._pulse(GuidePortCommand(ra_plus=command.ra_plus, ra_minus=command.ra_minus))
            if cancel is not None and cancel.is_set():
                logger.debug("Cancelled after RA pulse, DEC pulse skipped")
                return command
            self._pulse(GuidePortCommand(dec_plus=command.dec_plus, dec_minus=command.dec_minus))
        elif stepped:
            steps = max(1, int(math.floor(max_interval)))
            step = GuidePortCommand.from_correction(tx / steps, ty / steps)
            for i in range(steps):
                if i > 0 and cancel is not None and cancel.is_set():
                    logger.debug("Cancelled after %d of %d steps", i, steps)
                    break
                self._pulse(step)
        else:
            self._pulse(command)
        return command

    def move(self, ra: float, dec: float) -> GuidePortCommand:
        """Move RA by *ra* seconds, then DEC by *dec* seconds, unclamped."""
        command = GuidePortCommand.from_correction(ra, dec)
        self._pulse(GuidePortCommand(ra_plus=command.ra_plus, ra_minus=command.ra_minus))
        self._pulse(GuidePortCommand(dec_plus=command.dec_plus, dec_minus=command.dec_minus))
        return command


# ---------------------------------------------------------------------------
# Continuous duty cycle
# ---------------------------------------------------------------------------
class DrivingProcess:
    """Keep the guide port driving with a signed duty cycle per axis.

    Every *interval* seconds the current ``(tx, ty)`` is turned into
    pulses of ``|t| * interval`` seconds.  :meth:`set_correction` takes
    effect at the next cycle.
    """

    def __init__(
        self,
        device: GuidePortDevice,
        interval: float = 1.0,
        clock: Optional[Clock] = None,
    ):
        if interval <= 0:
            raise ValueError(f"driving interval must be positive, got {interval}")
        self.device = device
        self.interval = interval
        self.clock = clock or device.clock
        self._lock = threading.Lock()
        self._tx = 0.0
        self._ty = 0.0
        self._thread: Optional[ProcessThread] = None
        self.cycles = 0

    # -- Correction ----------------------------------------------------------
    def set_correction(self, tx: float, ty: float) -> None:
        """Set the duty cycle for RA and DEC, each clamped to [-1, 1]."""
        if math.isnan(tx) or math.isnan(ty):
            logger.warning("Ignoring invalid duty cycle (%s, %s)", tx, ty)
            return
        tx = _clamp(tx, 1.0)
        ty = _clamp(ty, 1.0)
        with self._lock:
            self._tx = tx
            self._ty = ty
        logger.debug("Duty cycle set to RA %.3f, DEC %.3f", tx, ty)

    @property
    def correction(self) -> Tuple[float, float]:
        with self._lock:
            return self._tx, self._ty

    # -- Thread control ------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.running

    @property
    def error(self) -> Optional[BaseException]:
        if self._thread is None:
            return None
        return self._thread.error

    def start(self) -> None:
        if self.running:
            logger.warning("Driving process already running")
            return
        self.cycles = 0
        self._thread = ProcessThread(self._run, name="driving-process")
        self._thread.start()
        logger.info("Driving process started (interval %.1fs)", self.interval)

    def stop(self) -> None:
        if self._thread is not None:
            self._thread.stop()

    def wait(self, timeout: Optional[float] = None) -> bool:
        if self._thread is None:
            return True
        return self._thread.wait(timeout)

    def _run(self, thread: ProcessThread) -> None:
        while not thread.terminate:
            tx, ty = self.correction
            command = GuidePortCommand.from_correction(tx * self.interval, ty * self.interval)
            start = self.clock.now()
            if not command.is_empty():
                try:
                    self.device.activate(
                        command.ra_plus,
                        command.ra_minus,
                        command.dec_plus,
                        command.dec_minus,
                    )
                except DeviceError:
                    logger.error("Driving process stopped by guide port failure")
                    raise
                self.clock.sleep(command.duration)
            self.cycles += 1
            remaining = self.interval - (self.clock.now() - start)
            if remaining > 0:
                self.clock.wait(thread.stop_event, remaining)
        logger.info("Driving process stopped after %d cycles", self.cycles)
