"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Calibration Procedure

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Moves the mount over a grid of RA/DEC offsets, returning to the start
after every grid point, and fits a CalibrationModel to the observed
star positions.  The return moves add zero-correction samples that pin
down the drift.
"""

import logging
from typing import Optional

from .basic_process import BasicProcess, GuiderContext
from .calibration import CalibrationModel, CalibrationSolver
from .events import CalibrationCompleted, CalibrationPointObserved, CalibrationProgress
from .exceptions import Cancelled
from .guide_types import CalibrationPoint, GuideImage, ProgressInfo
from .process import ProcessThread
from .tracker import Tracker

logger = logging.getLogger(__name__)


class CalibrationProcess(BasicProcess):
    """Grid calibration of the guide port.

    Args:
        context:       Shared devices.
        grid:          Pulse length of one grid step in seconds.
        grid_range:    Grid half-width; ``1`` gives a 3x3 grid.
        settle_time:   Wait after each move before exposing.
        tracker:       Tracker to use; built from the first image if None.
    """

    name = "calibration"

    def __init__(
        self,
        context: GuiderContext,
        grid: float,
        grid_range: int = 1,
        settle_time: float = 0.0,
        tracker: Optional[Tracker] = None,
    ):
        super().__init__(context, tracker)
        if grid <= 0:
            raise ValueError(f"grid constant must be positive, got {grid}")
        if grid_range < 1:
            raise ValueError(f"grid range must be at least 1, got {grid_range}")
        self.grid = grid
        self.grid_range = grid_range
        self.settle_time = settle_time
        self.solver = CalibrationSolver()
        self.calibration_id: Optional[int] = None
        self.model: Optional[CalibrationModel] = None
        self.progress = 0.0
        self._start = 0.0

    def _elapsed(self) -> float:
        return self.clock.now() - self._start

    def _add_point(self, image: GuideImage, ra: float, dec: float) -> None:
        star = self.tracker.locate(image)
        point = CalibrationPoint(self._elapsed(), ra, dec, star)
        self.solver.add_point(point)
        self.context.store.add_calibration_point(self.calibration_id, point)
        self.emit(CalibrationPointObserved(self.calibration_id, point))

    def _measure(self, thread: ProcessThread, ra: float, dec: float) -> None:
        self.actuator.move(ra, dec)
        self.pause(thread, self.settle_time)
        self._add_point(self.acquire_image(thread), ra, dec)

        thread.check_cancelled()
        self.actuator.move(-ra, -dec)
        self.pause(thread, self.settle_time)
        self._add_point(self.acquire_image(thread), 0.0, 0.0)

    def _report(self, progress: float, aborted: bool = False) -> None:
        self.progress = progress
        self.emit(CalibrationProgress(ProgressInfo(self._elapsed(), progress, aborted)))

    def main(self, thread: ProcessThread) -> None:
        logger.info(
            "Calibration started: grid %.2fs, range %d", self.grid, self.grid_range
        )
        self._start = self.clock.now()
        self.calibration_id = self.context.store.add_calibration(CalibrationModel.identity())

        size = 2 * self.grid_range + 1
        try:
            image = self.acquire_image(thread)
            self.ensure_tracker(image)
            self._add_point(image, 0.0, 0.0)

            for ra in range(-self.grid_range, self.grid_range + 1):
                for dec in range(-self.grid_range, self.grid_range + 1):
                    if ra == 0 and dec == 0:
                        continue
                    thread.check_cancelled()
                    self._measure(thread, self.grid * ra, self.grid * dec)
                    index = size * (ra + self.grid_range) + (dec + self.grid_range) + 1
                    self._report(index / (size * size))
        except Cancelled:
            self._report(self.progress, aborted=True)
            raise

        model = self.solver.solve()
        self.context.store.complete_calibration(self.calibration_id, model)
        self.model = model
        self._report(1.0)
        self.emit(CalibrationCompleted(self.calibration_id, model))
        logger.info("Calibration %d complete: %s", self.calibration_id, model)
