"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Guiding Procedure

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

The closed guiding loop: every interval an image is taken, the star
offset is measured and filtered, the calibration model converts it into
a correction, and the correction is sent to the guide port either as a
single pulse or as the duty cycle of a DrivingProcess.
"""

import logging
import math
from typing import Optional, Sequence, Tuple

from .actuator import DrivingProcess
from .basic_process import BasicProcess, GuiderContext
from .calibration import CalibrationModel
from .control import create_control
from .events import TrackingPointObserved
from .exceptions import DeviceError, TrackingFailed
from .guide_types import Offset, TrackingPoint, TrackingSummary
from .process import ProcessThread
from .tracker import Tracker

logger = logging.getLogger(__name__)

MODE_PULSE = "pulse"
MODE_CONTINUOUS = "continuous"

MIN_INTERVAL = 1.0


class TrackingProcess(BasicProcess):
    """Guiding loop.

    Args:
        context:               Shared devices.
        model:                 Calibration snapshot used for the whole run.
        tracker:               Tracker; built from the first image if None.
        interval:              Cycle length in seconds (at least 1s).
        gain:                  Fraction of the offset corrected per cycle.
        mode:                  ``"pulse"`` or ``"continuous"``.
        sequential:            Pulse RA and DEC one after the other.
        stepped:               Split pulses into one-second sub-pulses.
        control:               Control filter name (none, gain, kalman).
        filter_parameters:     Parameters of the control filter.
        driving_interval:      Cadence of the duty-cycle thread.
        max_tracking_failures: Consecutive lost frames before giving up.
        duration:              Stop after this many seconds (0 = never).
    """

    name = "guiding"

    def __init__(
        self,
        context: GuiderContext,
        model: CalibrationModel,
        tracker: Optional[Tracker] = None,
        interval: float = 10.0,
        gain: float = 1.0,
        mode: str = MODE_PULSE,
        sequential: bool = False,
        stepped: bool = False,
        control: str = "kalman",
        filter_parameters: Sequence[float] = (1.0, 1.0),
        driving_interval: float = 1.0,
        max_tracking_failures: int = 3,
        duration: float = 0.0,
    ):
        super().__init__(context, tracker)
        if mode not in (MODE_PULSE, MODE_CONTINUOUS):
            raise ValueError(f"unknown guiding mode {mode!r}")
        if interval < MIN_INTERVAL:
            logger.warning("Guiding interval %.2fs too short, using %.1fs", interval, MIN_INTERVAL)
            interval = MIN_INTERVAL
        if mode == MODE_PULSE and interval < 5:
            logger.warning("Guide port interval %.2fs is short for pulse guiding", interval)
        self.model = model
        self.interval = interval
        self.gain = gain
        self.mode = mode
        self.sequential = sequential
        self.stepped = stepped
        self.control_method = control
        self.filter_parameters = filter_parameters
        self.driving_interval = driving_interval
        self.max_tracking_failures = max(1, max_tracking_failures)
        self.duration = duration
        self.summary = TrackingSummary()
        self.last_point: Optional[TrackingPoint] = None
        self.tracking_id: Optional[int] = None
        self._driving: Optional[DrivingProcess] = None

    @property
    def filter_parameters(self) -> Tuple[float, ...]:
        return self._filter_parameters

    @filter_parameters.setter
    def filter_parameters(self, values: Sequence[float]) -> None:
        # replaced as a whole, the loop picks it up on its next cycle
        self._filter_parameters = tuple(float(v) for v in values)

    def _wait_next(self, thread: ProcessThread, cycle_start: float) -> None:
        self.pause(thread, self.interval - (self.clock.now() - cycle_start))

    def _correct(self, thread: ProcessThread, correction: Offset, correction_time: float) -> Offset:
        """Send *correction* to the guide port, return what was applied."""
        if self._driving is not None:
            duty = correction * (1.0 / correction_time)
            self._driving.set_correction(duty.x, duty.y)
            return duty
        self.actuator.apply(
            correction,
            self.interval,
            sequential=self.sequential,
            stepped=self.stepped,
            cancel=thread.stop_event,
        )
        return correction

    def main(self, thread: ProcessThread) -> None:
        logger.info(
            "Guiding started: %s mode, interval %.1fs, gain %.2f, %s filter, calibration %s",
            self.mode,
            self.interval,
            self.gain,
            self.control_method,
            self.model,
        )
        control = create_control(self.control_method, self.interval, self.filter_parameters)
        self.tracking_id = self.context.store.add_tracking({
            "calibration": self.model.coefficients,
            "interval": self.interval,
            "mode": self.mode,
        })

        if self.mode == MODE_CONTINUOUS:
            self._driving = DrivingProcess(
                self.context.guideport, self.driving_interval, self.clock
            )
            drift = self.model.default_correction()
            self._driving.set_correction(drift.x, drift.y)
            self._driving.start()

        try:
            self._loop(thread, control)
        finally:
            if self._driving is not None:
                self._driving.stop()
                self._driving.wait()
            logger.info(
                "Guiding ended after %d points, rms offset %.2f px",
                self.summary.count,
                self.summary.rms,
            )

    def _loop(self, thread: ProcessThread, control) -> None:
        start = self.clock.now()
        last_correction = start
        failures = 0
        while True:
            thread.check_cancelled()
            cycle_start = self.clock.now()
            if self.duration and cycle_start - start >= self.duration:
                logger.info("Guiding duration of %.0fs reached", self.duration)
                return
            if self._driving is not None and self._driving.error is not None:
                raise DeviceError("duty cycle driving failed") from self._driving.error

            image = self.acquire_image(thread)
            try:
                offset = self.ensure_tracker(image).locate(image)
                if offset.is_nan():
                    raise TrackingFailed("tracker returned an invalid offset")
            except TrackingFailed as exc:
                failures += 1
                if failures >= self.max_tracking_failures:
                    logger.error("Guide star lost in %d consecutive images", failures)
                    raise
                logger.warning(
                    "Tracking failed (%d/%d): %s", failures, self.max_tracking_failures, exc
                )
                self._wait_next(thread, cycle_start)
                continue
            failures = 0

            control.parameters = self.filter_parameters
            filtered = control.correct(offset)

            now = self.clock.now()
            correction_time = max(now - last_correction, self.interval)
            last_correction = now
            correction = self.model.invert(filtered * -self.gain, correction_time)
            if math.isnan(correction.x) or math.isnan(correction.y):
                logger.warning("Skipping invalid correction for offset %s", offset)
                self._wait_next(thread, cycle_start)
                continue

            thread.check_cancelled()
            applied = self._correct(thread, correction, correction_time)

            point = TrackingPoint(now - start, offset, applied)
            self.last_point = point
            self.summary.add(point)
            self.context.store.add_tracking_point(self.tracking_id, point)
            self.emit(TrackingPointObserved(self.tracking_id, point))
            logger.debug("Tracking: offset %s, correction %s", offset, applied)

            self._wait_next(thread, cycle_start)
