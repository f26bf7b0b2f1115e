"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Guider Supervisor

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

The Guider owns the calibration model, the state machine and at most
one worker thread running a calibration, guiding or backlash procedure.
Callers start, stop and wait for activities; the worker reports its
outcome back through the state machine.
"""

import logging
import math
import threading
from typing import Optional, Sequence, Tuple

from .backlash_process import BacklashProcess
from .basic_process import BasicProcess, GuiderContext
from .calibration import CalibrationModel, GridConstant, grid_constant
from .calibration_process import CalibrationProcess
from .events import Observer, StateChanged
from .exceptions import BadState, Cancelled, SingularCalibration
from .guide_types import (
    BacklashDirection,
    BacklashResult,
    ProcessState,
    TrackingPoint,
    TrackingSummary,
)
from .guider_state import GuiderStateMachine
from .process import ProcessThread
from .tracker import Tracker
from .tracking_process import TrackingProcess

logger = logging.getLogger(__name__)


def _configured_filter_parameters(guiding: dict) -> Tuple[float, ...]:
    """Parameters of the filter named in a ``guiding`` config section."""
    method = str(guiding.get("filter", "kalman")).lower().strip()
    if method == "gain":
        return (float(guiding.get("filter_gain", 1.0)),)
    if method == "kalman":
        return (
            float(guiding.get("system_error", 1.0)),
            float(guiding.get("measurement_error", 1.0)),
        )
    return ()


class Guider:
    """Supervisor of the guiding procedures.

    Args:
        context: Devices, clock, persistence store and event dispatcher.
        config:  Configuration dictionary (``calibration``, ``guiding``,
                 ``backlash`` and ``guider`` sections are used).
        name:    Name used for threads and log messages.
    """

    def __init__(self, context: GuiderContext, config: Optional[dict] = None, name: str = "guider"):
        self.context = context
        self.config = config or {}
        self.name = name
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._machine = GuiderStateMachine()
        self._model = CalibrationModel.identity()
        self._calibrated = False
        self._worker: Optional[ProcessThread] = None
        self._process: Optional[BasicProcess] = None
        self.last_error: Optional[BaseException] = None
        self.last_backlash: Optional[BacklashResult] = None
        self._filter_parameters: Optional[Tuple[float, ...]] = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def state(self) -> ProcessState:
        with self._lock:
            return self._machine.state

    @property
    def calibration(self) -> CalibrationModel:
        return self._model

    @property
    def calibrated(self) -> bool:
        return self._calibrated

    @property
    def progress(self) -> float:
        process = self._process
        if isinstance(process, CalibrationProcess):
            return process.progress
        return 0.0

    def summary(self) -> TrackingSummary:
        process = self._process
        if not isinstance(process, TrackingProcess):
            raise BadState(f"no guiding run in state {self.state.value}")
        return process.summary

    def last_action(self) -> TrackingPoint:
        process = self._process
        if not isinstance(process, TrackingProcess) or process.last_point is None:
            raise BadState("no guiding action recorded")
        return process.last_point

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def add_observer(self, observer: Observer) -> None:
        self.context.events.add(observer)

    def remove_observer(self, observer: Observer) -> None:
        self.context.events.remove(observer)

    # ------------------------------------------------------------------
    # Calibration model
    # ------------------------------------------------------------------
    def use_calibration(self, model: CalibrationModel) -> None:
        """Install a previously determined calibration."""
        if not model.is_invertible():
            raise SingularCalibration(f"calibration {model} is not invertible")
        with self._lock:
            old = self._machine.state
            self._machine.calibration_installed()
            self._model = model
            self._calibrated = True
            new = self._machine.state
        logger.info("Using calibration %s", model)
        self._notify(old, new)

    def uncalibrate(self) -> None:
        with self._lock:
            old = self._machine.state
            self._machine.calibration_removed()
            self._model = CalibrationModel.identity()
            self._calibrated = False
            new = self._machine.state
        self._notify(old, new)

    def set_filter_parameters(self, parameters: Sequence[float]) -> None:
        """Replace the control filter parameters, also while guiding.

        The values take precedence over the ``guiding`` config section
        for this and later runs; missing trailing values keep the
        filter defaults.

        Raises:
            ValueError: if a value is negative or not a finite number.
        """
        values = tuple(float(p) for p in parameters)
        if any(not math.isfinite(v) or v < 0 for v in values):
            raise ValueError(f"invalid filter parameters {values}")
        self._filter_parameters = values
        process = self._process
        if isinstance(process, TrackingProcess):
            process.filter_parameters = values
        logger.info("Filter parameters set to %s", values)

    @property
    def filter_parameters(self) -> Tuple[float, ...]:
        if self._filter_parameters is not None:
            return self._filter_parameters
        return _configured_filter_parameters(self.config.get("guiding", {}))

    # ------------------------------------------------------------------
    # Starting activities
    # ------------------------------------------------------------------
    def _grid_constant(self) -> float:
        cfg = self.config.get("calibration", {})
        configured = float(cfg.get("grid_constant", 0.0))
        if configured > 0:
            return configured
        focal_length = float(cfg.get("focal_length", 0.0))
        pixel_size = float(cfg.get("pixel_size", 10e-6))
        guide_rate = float(cfg.get("guide_rate", 0.5))
        grid = grid_constant(focal_length, pixel_size, guide_rate)
        if grid <= 0:
            grid = GridConstant(focal_length, pixel_size, guide_rate)(30.0)
        return grid

    def start_calibration(self, tracker: Optional[Tracker] = None, grid: Optional[float] = None) -> None:
        """Start a calibration run in the background.

        Raises:
            AlreadyRunning: if another activity is running.
            BadState:       if the guider is in the Failed state.
        """
        cfg = self.config.get("calibration", {})
        process = CalibrationProcess(
            self.context,
            grid if grid is not None else self._grid_constant(),
            grid_range=int(cfg.get("grid_range", 1)),
            settle_time=float(cfg.get("settle_time", 0.0)),
            tracker=tracker,
        )
        self._launch(process, ProcessState.CALIBRATING)

    def start_guiding(self, tracker: Optional[Tracker] = None, **overrides) -> None:
        """Start guiding with the current calibration.

        Keyword arguments override the ``guiding`` config section.

        Raises:
            AlreadyRunning: if another activity is running.
            BadState:       without a calibration or in the Failed state.
        """
        cfg = dict(self.config.get("guiding", {}))
        cfg.update(overrides)
        guider_cfg = self.config.get("guider", {})
        process = TrackingProcess(
            self.context,
            self._model,
            tracker=tracker,
            interval=float(cfg.get("interval", 10.0)),
            gain=float(cfg.get("gain", 1.0)),
            mode=cfg.get("mode", "pulse"),
            sequential=bool(cfg.get("sequential", False)),
            stepped=bool(cfg.get("stepped", False)),
            control=cfg.get("filter", "kalman"),
            filter_parameters=(
                self._filter_parameters
                if self._filter_parameters is not None
                else _configured_filter_parameters(cfg)
            ),
            driving_interval=float(cfg.get("driving_interval", 1.0)),
            max_tracking_failures=int(guider_cfg.get("max_tracking_failures", 3)),
            duration=float(cfg.get("duration", 0.0)),
        )
        self._launch(process, ProcessState.GUIDING)

    def start_backlash(self, tracker: Optional[Tracker] = None, **overrides) -> None:
        """Start a backlash characterisation run.

        Raises:
            AlreadyRunning: if another activity is running.
            BadState:       in the Failed state.
        """
        cfg = dict(self.config.get("backlash", {}))
        cfg.update(overrides)
        direction = cfg.get("direction", BacklashDirection.DEC)
        if not isinstance(direction, BacklashDirection):
            direction = BacklashDirection(str(direction).upper())
        process = BacklashProcess(
            self.context,
            direction=direction,
            interval=float(cfg.get("interval", 5.0)),
            last_points=int(cfg.get("last_points", 0)),
            max_points=int(cfg.get("max_points", 0)),
            settle_time=float(cfg.get("settle_time", 0.0)),
            tracker=tracker,
        )
        self._launch(process, ProcessState.BACKLASH_TESTING)

    def _launch(self, process: BasicProcess, activity: ProcessState) -> None:
        worker = ProcessThread(
            lambda thread: self._run(process, activity, thread),
            name=f"{self.name}-{process.name}",
        )
        with self._lock:
            old = self._machine.state
            self._machine.start(activity, self._calibrated)
            self.last_error = None
            self._process = process
            self._worker = worker
            worker.start()
        self._notify(old, activity)

    def _run(self, process: BasicProcess, activity: ProcessState, thread: ProcessThread) -> None:
        error: Optional[BaseException] = None
        completed = False
        try:
            process.main(thread)
            completed = True
        except Cancelled:
            logger.info("%s: %s cancelled", self.name, process.name)
        except Exception as exc:
            error = exc
            logger.critical("%s: %s failed: %s", self.name, process.name, exc, exc_info=True)

        with self._changed:
            old = self._machine.state
            if error is not None:
                self.last_error = error
                self._machine.fail()
            else:
                if isinstance(process, CalibrationProcess) and completed:
                    self._model = process.model
                    self._calibrated = True
                if isinstance(process, BacklashProcess):
                    self.last_backlash = process.result
                self._machine.finish(completed, self._calibrated)
            new = self._machine.state
            self._changed.notify_all()
        self._notify(old, new, error)

    def _notify(self, old: ProcessState, new: ProcessState, error: Optional[BaseException] = None) -> None:
        if old != new or error is not None:
            self.context.events.emit(StateChanged(old, new, error))

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------
    def stop(self) -> None:
        """Ask the running activity to end; a no-op when nothing runs."""
        with self._lock:
            if not self._machine.state.active or self._worker is None:
                logger.debug("%s: stop requested in state %s, nothing to do",
                             self.name, self._machine.state.value)
                return
            worker = self._worker
        logger.info("%s: stopping %s", self.name, self._process.name)
        worker.stop()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until no activity is running.

        Returns:
            ``False`` if *timeout* expired first.  The activity keeps
            running in that case.
        """
        with self._changed:
            if not self._changed.wait_for(lambda: not self._machine.state.active, timeout):
                return False
            worker = self._worker
        if worker is not None:
            worker.wait()
        return True

    def reset(self) -> None:
        """Leave the Failed state."""
        with self._lock:
            old = self._machine.state
            self._machine.reset()
            new = self._machine.state
        self._notify(old, new)
