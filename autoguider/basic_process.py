"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Guiding Procedure Base

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Common harness of the calibration, guiding and backlash procedures:
the shared device context, image acquisition with bounded retries and
cancellable waits.
"""

import abc
import logging
from dataclasses import dataclass, field
from typing import Optional

from .actuator import GuidePortActuator
from .devices import GuidePortDevice, Imager
from .events import EventDispatcher
from .exceptions import DeviceError
from .guide_types import Exposure, GuideImage
from .persistence import MemoryStore, PersistenceStore
from .process import Clock, ProcessThread, SystemClock
from .tracker import Tracker, create_tracker

logger = logging.getLogger(__name__)


@dataclass
class GuiderContext:
    """Devices and sinks shared by all procedures of one guider."""

    imager: Imager
    guideport: GuidePortDevice
    clock: Clock = field(default_factory=SystemClock)
    store: PersistenceStore = field(default_factory=MemoryStore)
    events: EventDispatcher = field(default_factory=EventDispatcher)
    exposure: Exposure = field(default_factory=Exposure)
    tracker_config: dict = field(default_factory=dict)
    max_image_failures: int = 3

    def __post_init__(self):
        self.actuator = GuidePortActuator(self.guideport, self.clock)


class BasicProcess(abc.ABC):
    """Base class of a procedure run on a :class:`ProcessThread`."""

    name = "process"

    def __init__(self, context: GuiderContext, tracker: Optional[Tracker] = None):
        self.context = context
        self.tracker = tracker
        self.clock = context.clock
        self.actuator = context.actuator

    @abc.abstractmethod
    def main(self, thread: ProcessThread) -> None:
        """Run the procedure; raise :class:`Cancelled` when stopped."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def emit(self, event: object) -> None:
        self.context.events.emit(event)

    def acquire_image(self, thread: ProcessThread) -> GuideImage:
        """Expose and return an image, retrying camera failures.

        Raises:
            DeviceError: after ``max_image_failures`` consecutive failures.
            Cancelled:   if a stop was requested.
        """
        imager = self.context.imager
        failures = 0
        while True:
            thread.check_cancelled()
            try:
                imager.start_exposure(self.context.exposure)
                if not imager.wait(self.context.exposure.exposure_time + 30.0):
                    raise DeviceError("exposure did not complete")
                return imager.get_image()
            except DeviceError as exc:
                failures += 1
                if failures >= self.context.max_image_failures:
                    logger.error("%s: giving up after %d image failures", self.name, failures)
                    raise
                logger.warning(
                    "%s: image acquisition failed (%d/%d): %s",
                    self.name,
                    failures,
                    self.context.max_image_failures,
                    exc,
                )

    def ensure_tracker(self, image: GuideImage) -> Tracker:
        """Use the configured tracker or build one from *image*."""
        if self.tracker is None:
            cfg = self.context.tracker_config
            self.tracker = create_tracker(cfg.get("method", "star"), image, cfg)
        return self.tracker

    def pause(self, thread: ProcessThread, seconds: float) -> None:
        """Wait for *seconds*, returning early when a stop is requested."""
        if seconds > 0:
            self.clock.wait(thread.stop_event, seconds)
