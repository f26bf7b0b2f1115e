"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Backlash Procedure

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Pulses one axis forward, forward, backward, backward over and over,
records the star position after every move and refits the backlash
model after each new point.
"""

import logging
from typing import List, Optional

from .backlash import MOVE_PATTERN, BacklashAnalysis
from .basic_process import BasicProcess, GuiderContext
from .events import BacklashPointObserved, BacklashResultUpdated
from .guide_types import BacklashDirection, BacklashPoint, BacklashResult, GuideImage
from .process import ProcessThread
from .tracker import Tracker

logger = logging.getLogger(__name__)


class BacklashProcess(BasicProcess):
    """Backlash characterisation of one axis.

    Args:
        context:     Shared devices.
        direction:   Axis to pulse.
        interval:    Length of each pulse in seconds.
        last_points: Analyse only the most recent points (0 = all).
        max_points:  Stop after this many points (0 = until stopped).
        settle_time: Wait after each move before exposing.
        tracker:     Tracker; built from the first image if None.
    """

    name = "backlash"

    def __init__(
        self,
        context: GuiderContext,
        direction: BacklashDirection = BacklashDirection.DEC,
        interval: float = 5.0,
        last_points: int = 0,
        max_points: int = 0,
        settle_time: float = 0.0,
        tracker: Optional[Tracker] = None,
    ):
        super().__init__(context, tracker)
        if interval <= 0:
            raise ValueError(f"backlash pulse interval must be positive, got {interval}")
        self.direction = direction
        self.interval = interval
        self.max_points = max_points
        self.settle_time = settle_time
        self.analysis = BacklashAnalysis(direction, interval, last_points)
        self.points: List[BacklashPoint] = []
        self.result: Optional[BacklashResult] = None
        self._start = 0.0

    def _record(self, image: GuideImage) -> None:
        offset = self.tracker.locate(image)
        point = BacklashPoint(
            len(self.points), self.clock.now() - self._start, offset.x, offset.y
        )
        self.points.append(point)
        self.emit(BacklashPointObserved(point))
        result = self.analysis.update(point)
        if result is not None:
            self.result = result
            self.emit(BacklashResultUpdated(result))

    def _move(self, sequence: int) -> None:
        pulse = MOVE_PATTERN[sequence % 4] * self.interval
        if self.direction == BacklashDirection.RA:
            self.actuator.move(pulse, 0.0)
        else:
            self.actuator.move(0.0, pulse)

    def main(self, thread: ProcessThread) -> None:
        logger.info(
            "Backlash test started: %s axis, %.1fs pulses", self.direction.value, self.interval
        )
        self._start = self.clock.now()
        image = self.acquire_image(thread)
        self.ensure_tracker(image)
        self._record(image)

        sequence = 0
        while True:
            thread.check_cancelled()
            if self.max_points and len(self.points) >= self.max_points:
                break
            self._move(sequence)
            sequence += 1
            self.pause(thread, self.settle_time)
            self._record(self.acquire_image(thread))

        logger.info("Backlash test complete: %s", self.result)
